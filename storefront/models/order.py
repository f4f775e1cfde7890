from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union
from pydantic import BaseModel, Field
from .base import TimeStampedModel, new_id

class OrderStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

class NotificationChannel(str, Enum):
    DIRECT_MESSAGE = "direct_message"
    EMAIL = "email"

class FileDelivery(BaseModel):
    kind: Literal["FILE"] = "FILE"
    file_url: str

class SerialAssignment(BaseModel):
    kind: Literal["SERIAL_POOL"] = "SERIAL_POOL"
    serial: str

class RoleGrant(BaseModel):
    kind: Literal["ROLE"] = "ROLE"
    guild_id: str
    role_id: str
    duration_days: Optional[int] = None
    expires_at: Optional[datetime] = None

DeliveredItem = Annotated[
    Union[FileDelivery, SerialAssignment, RoleGrant],
    Field(discriminator="kind"),
]

class DeliveryRecord(BaseModel):
    """What was handed out for an order and how the buyer was told"""
    item: DeliveredItem
    channels: List[NotificationChannel] = []

class Order(TimeStampedModel):
    """One purchase attempt, keyed by its payment intent"""
    order_id: str = Field(default_factory=new_id)
    server_id: str
    product_id: str
    buyer_id: str
    payment_intent_id: str
    status: OrderStatus = OrderStatus.PENDING
    amount: Decimal
    commission_amount: Decimal
    delivered: bool = False
    delivered_at: Optional[datetime] = None
    delivery_data: Optional[DeliveryRecord] = None
    review_token: str
    delivery_token: str

    @property
    def is_final(self) -> bool:
        return self.status != OrderStatus.PENDING

class PurchaseIntent(BaseModel):
    """Returned to the buyer's client to confirm the payment"""
    order_id: str
    payment_intent_id: str
    client_secret: str
