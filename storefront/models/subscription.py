from datetime import datetime
from enum import Enum
from pydantic import Field
from .base import TimeStampedModel, new_id

class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"

class RoleSubscription(TimeStampedModel):
    """Timed Discord role handed out by a ROLE product"""
    subscription_id: str = Field(default_factory=new_id)
    order_id: str
    buyer_id: str
    product_id: str
    server_id: str
    guild_id: str
    role_id: str
    discord_user_id: str
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    current_period_start: datetime
    current_period_end: datetime
