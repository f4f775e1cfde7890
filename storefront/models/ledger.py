from decimal import Decimal
from pydantic import Field
from .base import TimeStampedModel, new_id

class LedgerEntry(TimeStampedModel):
    """Accounting record written once per completed order"""
    entry_id: str = Field(default_factory=new_id)
    order_id: str
    server_id: str
    amount: Decimal
    commission_amount: Decimal
