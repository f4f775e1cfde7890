import asyncio
import logging
import weakref
from datetime import timedelta
from typing import List
from ..config import Config
from ..database.store import Store
from ..exceptions import (DeliveryFailed, MisconfiguredProduct, NotFound, OutOfStock,
                          PartialDeliveryFailure)
from ..models.base import utcnow
from ..models.order import (DeliveryRecord, FileDelivery, NotificationChannel, Order,
                            OrderStatus, RoleGrant, SerialAssignment)
from ..models.product import FilePayload, Product, RolePayload, SerialPoolPayload
from ..models.server import Server
from ..models.user import Buyer
from ..utils.messages import Messages
from .discord_service import DirectMessagesBlocked, DiscordError
from .email_service import EmailError

class DeliveryService:
    """Hands the purchased resource to the buyer, once per completed order.

    The consumed resource (serial, role grant, file link) is written to the
    order before any notification is sent. A later call for the same order
    reuses it, so retrying after a notification failure only re-notifies.
    """

    def __init__(self, store: Store, discord, email, subscriptions=None,
                 timeout: float = Config.EXTERNAL_CALL_TIMEOUT):
        self.store = store
        self.discord = discord
        self.email = email
        self.subscriptions = subscriptions
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, order_id: str) -> asyncio.Lock:
        lock = self._locks.get(order_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[order_id] = lock
        return lock

    async def deliver(self, order_id: str) -> Order:
        async with self._lock_for(order_id):
            order = await self.store.get_order(order_id)
            if not order:
                raise NotFound("Order not found")
            if order.delivered:
                return order
            if order.status != OrderStatus.COMPLETED:
                raise DeliveryFailed(f"Order {order_id} is {order.status.value}; only completed orders are delivered")

            product = await self.store.get_product(order.product_id)
            if not product:
                raise MisconfiguredProduct(f"Product {order.product_id} of order {order_id} no longer exists")
            buyer = await self.store.get_buyer(order.buyer_id)
            if not buyer:
                raise DeliveryFailed(f"Buyer {order.buyer_id} of order {order_id} not found")
            server = await self.store.get_server(order.server_id)
            if not server:
                raise DeliveryFailed(f"Shop {order.server_id} of order {order_id} not found")

            if order.delivery_data is None:
                record = await self._fulfil(order, product, buyer, server)
                order = await self.store.record_delivery(order_id, record)
            else:
                self.logger.info(f"Order {order_id} already holds its {order.delivery_data.item.kind} item, re-notifying")

            item = order.delivery_data.item
            if isinstance(item, RoleGrant) and self.subscriptions is not None:
                await self.subscriptions.start(order, buyer, item)

            channels = await self._notify(order, product, buyer, server)
            if not channels:
                self.logger.error(
                    f"Order {order_id}: {order.delivery_data.item.kind} item consumed but buyer "
                    f"{buyer.discord_id} could not be notified; notify manually"
                )
                raise PartialDeliveryFailure(
                    f"Order {order_id} was fulfilled but the buyer could not be notified",
                    order_id=order_id,
                    item=order.delivery_data.item
                )

            record = order.delivery_data.model_copy(update={'channels': channels})
            delivered = await self.store.mark_delivered(order_id, record)
            if delivered is None:
                return await self.store.get_order(order_id)

            self.logger.info(f"Order {order_id} delivered via {', '.join(c.value for c in channels)}")
            return delivered

    async def _fulfil(self, order: Order, product: Product, buyer: Buyer,
                      server: Server) -> DeliveryRecord:
        payload = product.payload

        if isinstance(payload, FilePayload):
            if not payload.file_url:
                raise MisconfiguredProduct(f"No file configured for product {product.product_id}")
            return DeliveryRecord(item=FileDelivery(file_url=payload.file_url))

        if isinstance(payload, SerialPoolPayload):
            serial = await self.store.claim_serial(order.order_id, product.product_id)
            if serial is None:
                raise OutOfStock(f"No serial left for product {product.product_id}")
            return DeliveryRecord(item=SerialAssignment(serial=serial))

        if isinstance(payload, RolePayload):
            return DeliveryRecord(item=await self._grant_role(order, payload, buyer, server))

        raise MisconfiguredProduct(f"Unsupported product type for {product.product_id}")

    async def _grant_role(self, order: Order, payload: RolePayload, buyer: Buyer,
                          server: Server) -> RoleGrant:
        if not payload.role_id:
            raise MisconfiguredProduct(f"No Discord role configured for product {order.product_id}")

        duration = None if payload.is_lifetime else payload.duration_days
        try:
            await asyncio.wait_for(
                self.discord.assign_role(server.discord_guild_id, buyer.discord_id,
                                         payload.role_id, duration),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            raise DeliveryFailed(f"Role assignment for order {order.order_id} timed out")
        except DiscordError as e:
            raise DeliveryFailed(f"Role assignment for order {order.order_id} failed: {e}")

        return RoleGrant(
            guild_id=server.discord_guild_id,
            role_id=payload.role_id,
            duration_days=duration,
            expires_at=utcnow() + timedelta(days=duration) if duration else None
        )

    async def _notify(self, order: Order, product: Product, buyer: Buyer,
                      server: Server) -> List[NotificationChannel]:
        """Direct message first, e-mail only when the DM did not go through"""
        notice = Messages.delivery_notice(order, product, server.shop_name)

        try:
            await asyncio.wait_for(
                self.discord.send_direct_notice(buyer.discord_id, notice.body),
                timeout=self.timeout
            )
            return [NotificationChannel.DIRECT_MESSAGE]
        except DirectMessagesBlocked:
            self.logger.info(f"{buyer.discord_id} does not accept DMs, falling back to email")
        except (DiscordError, asyncio.TimeoutError) as e:
            self.logger.warning(f"DM for order {order.order_id} failed: {e!r}")

        if not buyer.email:
            self.logger.warning(f"No email on file for buyer {buyer.buyer_id}")
            return []

        try:
            await asyncio.wait_for(
                self.email.send_email_notice(buyer.email, notice.subject, notice.body),
                timeout=self.timeout
            )
            return [NotificationChannel.EMAIL]
        except (EmailError, asyncio.TimeoutError) as e:
            self.logger.warning(f"Email for order {order.order_id} failed: {e!r}")
            return []
