import asyncio
from datetime import datetime
from typing import Dict, List, Optional, Tuple
from ..exceptions import InvalidRequest
from ..models.base import utcnow
from ..models.ledger import LedgerEntry
from ..models.order import DeliveryRecord, Order, OrderStatus, SerialAssignment
from ..models.product import Product, SerialPoolPayload
from ..models.review import Review
from ..models.server import Server
from ..models.subscription import RoleSubscription, SubscriptionStatus
from ..models.user import Buyer
from .store import Store


class MemoryStore(Store):
    """In-process store guarded by a single asyncio lock.

    Used for tests and local runs. Every read returns a copy, so callers
    can only change state through the store methods.
    """

    def __init__(self):
        self._servers: Dict[str, Server] = {}
        self._buyers: Dict[str, Buyer] = {}
        self._products: Dict[str, Product] = {}
        self._orders: Dict[str, Order] = {}
        self._ledger: List[LedgerEntry] = []
        self._reviews: Dict[str, Review] = {}
        self._subscriptions: Dict[str, RoleSubscription] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _copy(model):
        return model.model_copy(deep=True) if model is not None else None

    async def get_server(self, server_id: str) -> Optional[Server]:
        async with self._lock:
            return self._copy(self._servers.get(server_id))

    async def get_server_by_guild(self, discord_guild_id: str) -> Optional[Server]:
        async with self._lock:
            for server in self._servers.values():
                if server.discord_guild_id == discord_guild_id:
                    return self._copy(server)
            return None

    async def save_server(self, server: Server) -> Server:
        async with self._lock:
            self._servers[server.server_id] = self._copy(server)
            return self._copy(server)

    async def get_buyer(self, buyer_id: str) -> Optional[Buyer]:
        async with self._lock:
            return self._copy(self._buyers.get(buyer_id))

    async def get_buyer_by_discord_id(self, discord_id: str) -> Optional[Buyer]:
        async with self._lock:
            for buyer in self._buyers.values():
                if buyer.discord_id == discord_id:
                    return self._copy(buyer)
            return None

    async def save_buyer(self, buyer: Buyer) -> Buyer:
        async with self._lock:
            self._buyers[buyer.buyer_id] = self._copy(buyer)
            return self._copy(buyer)

    async def get_product(self, product_id: str) -> Optional[Product]:
        async with self._lock:
            return self._copy(self._products.get(product_id))

    async def list_products(self, server_id: str, active_only: bool = True) -> List[Product]:
        async with self._lock:
            return [
                self._copy(p) for p in self._products.values()
                if p.server_id == server_id and (p.is_active or not active_only)
            ]

    async def save_product(self, product: Product) -> Product:
        async with self._lock:
            stored = self._copy(product)
            existing = self._products.get(product.product_id)
            if existing:
                stored.sales_count = existing.sales_count
            if existing and isinstance(existing.payload, SerialPoolPayload):
                stored.payload = self._copy(existing.payload)
                stored.stock = existing.stock
            stored.updated_at = utcnow()
            self._products[product.product_id] = stored
            return self._copy(stored)

    async def delete_product(self, product_id: str) -> bool:
        async with self._lock:
            return self._products.pop(product_id, None) is not None

    async def add_serials(self, product_id: str, serials: List[str]) -> Optional[Product]:
        async with self._lock:
            product = self._products.get(product_id)
            if not product or not isinstance(product.payload, SerialPoolPayload):
                return None
            product.payload.serials.extend(serials)
            awaiting = sum(
                1 for o in self._orders.values()
                if o.product_id == product_id
                and o.status == OrderStatus.COMPLETED
                and o.delivery_data is None
            )
            product.stock = max(len(product.payload.serials) - awaiting, 0)
            product.updated_at = utcnow()
            return self._copy(product)

    async def claim_serial(self, order_id: str, product_id: str) -> Optional[str]:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                return None
            if order.delivery_data and isinstance(order.delivery_data.item, SerialAssignment):
                return order.delivery_data.item.serial

            product = self._products.get(product_id)
            if not product or not isinstance(product.payload, SerialPoolPayload):
                return None
            if not product.payload.serials:
                return None

            serial = product.payload.serials.pop(0)
            order.delivery_data = DeliveryRecord(item=SerialAssignment(serial=serial))
            order.updated_at = utcnow()
            return serial

    async def create_order(self, order: Order) -> Order:
        async with self._lock:
            if any(o.payment_intent_id == order.payment_intent_id for o in self._orders.values()):
                raise InvalidRequest(f"Order already exists for payment intent {order.payment_intent_id}")
            self._orders[order.order_id] = self._copy(order)
            return self._copy(order)

    async def get_order(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            return self._copy(self._orders.get(order_id))

    async def _find_order(self, **criteria) -> Optional[Order]:
        async with self._lock:
            for order in self._orders.values():
                if all(getattr(order, k) == v for k, v in criteria.items()):
                    return self._copy(order)
            return None

    async def get_order_by_payment_intent(self, payment_intent_id: str) -> Optional[Order]:
        return await self._find_order(payment_intent_id=payment_intent_id)

    async def get_order_by_review_token(self, token: str) -> Optional[Order]:
        return await self._find_order(review_token=token)

    async def get_order_by_delivery_token(self, token: str) -> Optional[Order]:
        return await self._find_order(delivery_token=token)

    async def list_orders(self, server_id: Optional[str] = None,
                          buyer_id: Optional[str] = None) -> List[Order]:
        async with self._lock:
            orders = [
                self._copy(o) for o in self._orders.values()
                if (server_id is None or o.server_id == server_id)
                and (buyer_id is None or o.buyer_id == buyer_id)
            ]
            return sorted(orders, key=lambda o: o.created_at, reverse=True)

    async def transition_order(self, payment_intent_id: str,
                               status: OrderStatus) -> Optional[Order]:
        async with self._lock:
            for order in self._orders.values():
                if order.payment_intent_id == payment_intent_id:
                    if order.status != OrderStatus.PENDING:
                        return None
                    order.status = status
                    order.updated_at = utcnow()
                    return self._copy(order)
            return None

    async def complete_order(self, payment_intent_id: str) -> Optional[Tuple[Order, bool]]:
        async with self._lock:
            order = next(
                (o for o in self._orders.values() if o.payment_intent_id == payment_intent_id), None
            )
            if order is None or order.status != OrderStatus.PENDING:
                return None

            entry = LedgerEntry(
                order_id=order.order_id,
                server_id=order.server_id,
                amount=order.amount,
                commission_amount=order.commission_amount
            )

            in_stock = True
            product = self._products.get(order.product_id)
            if product:
                product.sales_count += 1
                if product.stock is not None:
                    in_stock = product.stock > 0
                    product.stock = max(product.stock - 1, 0)

            order.status = OrderStatus.COMPLETED
            order.updated_at = utcnow()
            self._ledger.append(entry)
            return self._copy(order), in_stock

    async def record_delivery(self, order_id: str, record: DeliveryRecord) -> Optional[Order]:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                return None
            order.delivery_data = self._copy(record)
            order.updated_at = utcnow()
            return self._copy(order)

    async def mark_delivered(self, order_id: str, record: DeliveryRecord) -> Optional[Order]:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.delivered or order.status != OrderStatus.COMPLETED:
                return None
            order.delivery_data = self._copy(record)
            order.delivered = True
            order.delivered_at = utcnow()
            order.updated_at = order.delivered_at
            return self._copy(order)

    async def append_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        async with self._lock:
            self._ledger.append(self._copy(entry))
            return self._copy(entry)

    async def list_ledger_entries(self, server_id: str,
                                  since: Optional[datetime] = None,
                                  until: Optional[datetime] = None) -> List[LedgerEntry]:
        async with self._lock:
            return [
                self._copy(e) for e in self._ledger
                if e.server_id == server_id
                and (since is None or e.created_at >= since)
                and (until is None or e.created_at < until)
            ]

    async def create_review(self, review: Review) -> Review:
        async with self._lock:
            if review.order_id in self._reviews:
                raise InvalidRequest("A review already exists for this order")
            self._reviews[review.order_id] = self._copy(review)
            return self._copy(review)

    async def get_review_by_order(self, order_id: str) -> Optional[Review]:
        async with self._lock:
            return self._copy(self._reviews.get(order_id))

    async def list_reviews(self, server_id: str) -> List[Review]:
        async with self._lock:
            reviews = [self._copy(r) for r in self._reviews.values() if r.server_id == server_id]
            return sorted(reviews, key=lambda r: r.created_at, reverse=True)

    async def save_role_subscription(self, subscription: RoleSubscription) -> RoleSubscription:
        async with self._lock:
            if any(s.order_id == subscription.order_id and s.subscription_id != subscription.subscription_id
                   for s in self._subscriptions.values()):
                raise InvalidRequest(f"Order {subscription.order_id} already has a role subscription")
            self._subscriptions[subscription.subscription_id] = self._copy(subscription)
            return self._copy(subscription)

    async def get_role_subscription_by_order(self, order_id: str) -> Optional[RoleSubscription]:
        async with self._lock:
            for subscription in self._subscriptions.values():
                if subscription.order_id == order_id:
                    return self._copy(subscription)
            return None

    async def list_due_role_subscriptions(self, now: datetime) -> List[RoleSubscription]:
        async with self._lock:
            return [
                self._copy(s) for s in self._subscriptions.values()
                if s.status == SubscriptionStatus.ACTIVE and s.current_period_end <= now
            ]
