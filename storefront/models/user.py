from typing import Optional
from pydantic import Field
from .base import TimeStampedModel, new_id

class Buyer(TimeStampedModel):
    """Discord user known to the platform"""
    buyer_id: str = Field(default_factory=new_id)
    discord_id: str
    username: str
    email: Optional[str] = None
