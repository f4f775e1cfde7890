from typing import Optional
from pydantic import Field
from .base import TimeStampedModel, new_id

class Review(TimeStampedModel):
    review_id: str = Field(default_factory=new_id)
    order_id: str
    server_id: str
    buyer_id: str
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = None
