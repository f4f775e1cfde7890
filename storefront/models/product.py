from decimal import Decimal
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union
from pydantic import BaseModel, Field
from .base import TimeStampedModel, new_id

LIFETIME = -1

class ProductType(str, Enum):
    FILE = "FILE"
    SERIAL_POOL = "SERIAL_POOL"
    ROLE = "ROLE"

class FilePayload(BaseModel):
    kind: Literal["FILE"] = "FILE"
    file_url: Optional[str] = None

class SerialPoolPayload(BaseModel):
    kind: Literal["SERIAL_POOL"] = "SERIAL_POOL"
    # Unassigned serials only; assigned ones live on the order
    serials: List[str] = []

class RolePayload(BaseModel):
    kind: Literal["ROLE"] = "ROLE"
    role_id: Optional[str] = None
    duration_days: Optional[int] = None  # None or -1 = lifetime
    auto_renew: bool = False
    grace_period_days: Optional[int] = None

    @property
    def is_lifetime(self) -> bool:
        return self.duration_days is None or self.duration_days == LIFETIME

ProductPayload = Annotated[
    Union[FilePayload, SerialPoolPayload, RolePayload],
    Field(discriminator="kind"),
]

class Product(TimeStampedModel):
    """Digital product sold in a shop"""
    product_id: str = Field(default_factory=new_id)
    server_id: str
    name: str
    description: Optional[str] = None
    price: Decimal
    stock: Optional[int] = None  # None = unlimited
    sales_count: int = 0
    is_active: bool = True
    payload: ProductPayload

    @property
    def type(self) -> ProductType:
        return ProductType(self.payload.kind)

    @property
    def tracks_stock(self) -> bool:
        return self.stock is not None

    @property
    def in_stock(self) -> bool:
        return self.stock is None or self.stock > 0
