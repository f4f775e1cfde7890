from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import Field
from .base import TimeStampedModel, new_id

class SubscriptionTier(str, Enum):
    FREE = "FREE"
    STARTER = "STARTER"
    PRO = "PRO"
    BUSINESS = "BUSINESS"
    ENTERPRISE = "ENTERPRISE"

class Server(TimeStampedModel):
    """A Discord guild registered as a shop"""
    server_id: str = Field(default_factory=new_id)
    discord_guild_id: str
    shop_name: str
    owner_id: str
    description: Optional[str] = None
    subscription_tier: SubscriptionTier = SubscriptionTier.FREE
    commission_rate: Decimal = Decimal("5.0")  # percent
    stripe_secret_key: Optional[str] = None
    is_active: bool = True
