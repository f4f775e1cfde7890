import asyncio
import logging
from typing import Any, Dict, Optional, Set
from ..config import Config
from ..database.store import Store
from ..exceptions import NotFound, ShopError
from ..models.order import FileDelivery, Order, OrderStatus, PurchaseIntent, SerialAssignment
from ..utils.formatters import to_minor_units
from ..utils.security import generate_order_token
from .delivery_service import DeliveryService
from .payment_service import GatewayRegistry, PaymentEvent, PaymentEventType, verify_notification
from .product_service import ProductService

class OrderService:
    """Drives an order from payment intent to delivery.

    PENDING is the only non-final status. The PENDING -> COMPLETED/FAILED
    move is a conditional store update, so replayed or concurrent webhook
    deliveries for the same intent have an effect at most once.
    """

    def __init__(self, store: Store, gateways: GatewayRegistry, delivery: DeliveryService,
                 webhook_secret: str = Config.STRIPE_WEBHOOK_SECRET,
                 currency: str = Config.CURRENCY):
        self.store = store
        self.gateways = gateways
        self.delivery = delivery
        self.webhook_secret = webhook_secret
        self.currency = currency
        self.logger = logging.getLogger(__name__)
        self._delivery_tasks: Set[asyncio.Task] = set()

    async def initiate_purchase(self, product_id: str, buyer_id: str) -> PurchaseIntent:
        """Create a payment intent and its PENDING order; stock is left alone"""
        product = await self.store.get_product(product_id)
        if not product:
            raise NotFound("Product not found")
        ProductService.check_purchasable(product)

        buyer = await self.store.get_buyer(buyer_id)
        if not buyer:
            raise NotFound("Buyer not found")
        server = await self.store.get_server(product.server_id)
        if not server:
            raise NotFound("Server not found")

        gateway = self.gateways.get(server)
        intent = await gateway.create_payment_intent(
            amount=to_minor_units(product.price),
            currency=self.currency,
            metadata={
                'server_id': server.server_id,
                'buyer_id': buyer.buyer_id,
                'product_id': product.product_id,
                'product_type': product.type.value,
            }
        )

        order = await self.store.create_order(Order(
            server_id=server.server_id,
            product_id=product.product_id,
            buyer_id=buyer.buyer_id,
            payment_intent_id=intent.id,
            amount=product.price,
            commission_amount=product.price * server.commission_rate / 100,
            review_token=generate_order_token(),
            delivery_token=generate_order_token()
        ))

        self.logger.info(f"Order {order.order_id} created for intent {intent.id} ({product.name})")
        return PurchaseIntent(
            order_id=order.order_id,
            payment_intent_id=intent.id,
            client_secret=intent.client_secret
        )

    async def handle_payment_notification(self, raw_payload: bytes,
                                          signature: Optional[str]) -> PaymentEvent:
        """Apply a signed webhook.

        Raises SignatureInvalid when the payload cannot be authenticated.
        Once authenticated, processing errors are logged and not raised so
        the processor is not asked to resend an event it already delivered.
        """
        event = verify_notification(raw_payload, signature, self.webhook_secret)

        try:
            if event.type == PaymentEventType.SUCCEEDED:
                await self._payment_succeeded(event.payment_intent_id)
            elif event.type == PaymentEventType.FAILED:
                await self._payment_failed(event.payment_intent_id)
            else:
                self.logger.debug(f"Ignoring {event.raw_type} event {event.event_id}")
        except Exception as e:
            self.logger.error(f"Processing {event.raw_type} event {event.event_id} failed: {e}", exc_info=True)

        return event

    async def _payment_succeeded(self, payment_intent_id: str):
        order = await self.store.get_order_by_payment_intent(payment_intent_id)
        if not order:
            self.logger.warning(f"Payment succeeded for unknown intent {payment_intent_id}")
            return
        if order.is_final:
            self.logger.info(f"Order {order.order_id} already {order.status.value}, ignoring replay")
            return

        completed = await self.store.complete_order(payment_intent_id)
        if not completed:
            return
        order, in_stock = completed

        if not in_stock:
            self.logger.warning(f"Product {order.product_id} oversold by order {order.order_id}: stock was already 0")

        self.logger.info(f"Order {order.order_id} completed ({order.amount})")
        self._schedule_delivery(order.order_id)

    async def _payment_failed(self, payment_intent_id: str):
        order = await self.store.transition_order(payment_intent_id, OrderStatus.FAILED)
        if order:
            self.logger.info(f"Order {order.order_id} failed at payment")

    def _schedule_delivery(self, order_id: str):
        task = asyncio.create_task(self._deliver_in_background(order_id))
        self._delivery_tasks.add(task)
        task.add_done_callback(self._delivery_tasks.discard)

    async def _deliver_in_background(self, order_id: str):
        try:
            await self.delivery.deliver(order_id)
        except ShopError as e:
            self.logger.warning(f"Delivery of order {order_id} failed: {e.message}")
        except Exception as e:
            self.logger.error(f"Delivery of order {order_id} crashed: {e}", exc_info=True)

    async def drain(self):
        """Wait for scheduled deliveries to settle"""
        while self._delivery_tasks:
            await asyncio.gather(*list(self._delivery_tasks), return_exceptions=True)

    async def get_order(self, order_id: str) -> Order:
        order = await self.store.get_order(order_id)
        if not order:
            raise NotFound("Order not found")
        return order

    async def get_delivery(self, token: str) -> Dict[str, Any]:
        """Public view of what an order delivered, looked up by its delivery token"""
        order = await self.store.get_order_by_delivery_token(token)
        if not order:
            raise NotFound("Delivery not found or invalid token")

        product = await self.store.get_product(order.product_id)
        server = await self.store.get_server(order.server_id)
        item = order.delivery_data.item if order.delivery_data else None

        return {
            'order_id': order.order_id[:8],
            'product_name': product.name if product else None,
            'product_type': item.kind if item else (product.type.value if product else None),
            'shop_name': server.shop_name if server else None,
            'amount': order.amount,
            'delivered': order.delivered,
            'delivered_at': order.delivered_at,
            'serials': [item.serial] if isinstance(item, SerialAssignment) else None,
            'file_url': item.file_url if isinstance(item, FileDelivery) else None,
        }
