from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Tuple
from ..models.ledger import LedgerEntry
from ..models.order import DeliveryRecord, Order, OrderStatus
from ..models.product import Product
from ..models.review import Review
from ..models.server import Server
from ..models.subscription import RoleSubscription
from ..models.user import Buyer


class Store(ABC):
    """Persistence contract for the order core.

    Implementations must make the following operations atomic: the
    PENDING -> final status transitions (completion together with its
    stock, sales and ledger bookkeeping), the serial claim, and the
    uniqueness of payment intent ids, of reviews per order and of role
    subscriptions per order.
    """

    # Shops and buyers

    @abstractmethod
    async def get_server(self, server_id: str) -> Optional[Server]:
        pass

    @abstractmethod
    async def get_server_by_guild(self, discord_guild_id: str) -> Optional[Server]:
        pass

    @abstractmethod
    async def save_server(self, server: Server) -> Server:
        pass

    @abstractmethod
    async def get_buyer(self, buyer_id: str) -> Optional[Buyer]:
        pass

    @abstractmethod
    async def get_buyer_by_discord_id(self, discord_id: str) -> Optional[Buyer]:
        pass

    @abstractmethod
    async def save_buyer(self, buyer: Buyer) -> Buyer:
        pass

    # Catalog

    @abstractmethod
    async def get_product(self, product_id: str) -> Optional[Product]:
        pass

    @abstractmethod
    async def list_products(self, server_id: str, active_only: bool = True) -> List[Product]:
        pass

    @abstractmethod
    async def save_product(self, product: Product) -> Product:
        """Insert or update.

        Serials are only written on insert; updating a serial pool product
        leaves its pool and stock as they are.
        """
        pass

    @abstractmethod
    async def delete_product(self, product_id: str) -> bool:
        pass

    @abstractmethod
    async def add_serials(self, product_id: str, serials: List[str]) -> Optional[Product]:
        """Append serials to the pool and recompute stock.

        Stock becomes the pool size minus the COMPLETED orders of the product
        that have not claimed their serial yet, never below zero.
        """
        pass

    @abstractmethod
    async def claim_serial(self, order_id: str, product_id: str) -> Optional[str]:
        """Pop one serial from the pool and bind it to the order.

        Idempotent per order: if the order already holds a serial, that serial
        is returned and the pool is left untouched. Returns None when the
        pool is empty.
        """
        pass

    # Orders

    @abstractmethod
    async def create_order(self, order: Order) -> Order:
        """Raises InvalidRequest if the payment intent already has an order"""
        pass

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_order_by_payment_intent(self, payment_intent_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_order_by_review_token(self, token: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_order_by_delivery_token(self, token: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def list_orders(self, server_id: Optional[str] = None,
                          buyer_id: Optional[str] = None) -> List[Order]:
        pass

    @abstractmethod
    async def transition_order(self, payment_intent_id: str,
                               status: OrderStatus) -> Optional[Order]:
        """Move a PENDING order to a final status.

        Returns the updated order, or None if no PENDING order matched.
        """
        pass

    @abstractmethod
    async def complete_order(self, payment_intent_id: str) -> Optional[Tuple[Order, bool]]:
        """Settle a paid PENDING order.

        In one atomic step: status becomes COMPLETED, the product's
        sales_count goes up by one, tracked stock goes down by one (never
        below zero) and a ledger entry for the order is appended. Returns
        the order and whether the stock covered the sale (False means the
        last unit was already sold), or None if no PENDING order matched.
        """
        pass

    @abstractmethod
    async def record_delivery(self, order_id: str, record: DeliveryRecord) -> Optional[Order]:
        """Persist delivery_data without marking the order delivered"""
        pass

    @abstractmethod
    async def mark_delivered(self, order_id: str, record: DeliveryRecord) -> Optional[Order]:
        """Flip delivered for a COMPLETED, undelivered order; None otherwise"""
        pass

    # Ledger

    @abstractmethod
    async def append_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        pass

    @abstractmethod
    async def list_ledger_entries(self, server_id: str,
                                  since: Optional[datetime] = None,
                                  until: Optional[datetime] = None) -> List[LedgerEntry]:
        pass

    # Reviews

    @abstractmethod
    async def create_review(self, review: Review) -> Review:
        """Raises InvalidRequest if the order already has a review"""
        pass

    @abstractmethod
    async def get_review_by_order(self, order_id: str) -> Optional[Review]:
        pass

    @abstractmethod
    async def list_reviews(self, server_id: str) -> List[Review]:
        pass

    # Role subscriptions

    @abstractmethod
    async def save_role_subscription(self, subscription: RoleSubscription) -> RoleSubscription:
        pass

    @abstractmethod
    async def get_role_subscription_by_order(self, order_id: str) -> Optional[RoleSubscription]:
        pass

    @abstractmethod
    async def list_due_role_subscriptions(self, now: datetime) -> List[RoleSubscription]:
        """ACTIVE subscriptions whose period ended at or before now"""
        pass
