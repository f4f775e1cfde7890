import asyncio
import logging
import signal
from typing import Optional
from .api.server import ShopApi
from .config import Config
from .database.database import Database, PostgresStore
from .database.store import Store
from .services.buyer_service import BuyerService
from .services.delivery_service import DeliveryService
from .services.discord_service import DiscordClient
from .services.email_service import EmailSender
from .services.order_service import OrderService
from .services.payment_service import GatewayRegistry
from .services.product_service import ProductService
from .services.report_service import ReportService
from .services.review_service import ReviewService
from .services.server_service import ServerService
from .services.subscription_service import RoleSubscriptionService

class StorefrontApp:
    """Wires the store, the external clients and the services together"""

    def __init__(self, store: Store, discord=None, email=None,
                 gateways: Optional[GatewayRegistry] = None):
        self.logger = logging.getLogger(__name__)
        self.store = store
        self.discord = discord if discord is not None else DiscordClient()
        self.email = email if email is not None else EmailSender()
        self.gateways = gateways if gateways is not None else GatewayRegistry()

        self.servers = ServerService(store, self.gateways)
        self.products = ProductService(store)
        self.buyers = BuyerService(store)
        self.subscriptions = RoleSubscriptionService(store, self.discord)
        self.delivery = DeliveryService(store, self.discord, self.email, self.subscriptions)
        self.orders = OrderService(store, self.gateways, self.delivery)
        self.reviews = ReviewService(store)
        self.reports = ReportService(store)
        self.api = ShopApi(self.orders, self.delivery, self.reviews, self.buyers)

        self._sweeper: Optional[asyncio.Task] = None

    async def _sweep_subscriptions(self, interval: float):
        while True:
            try:
                await self.subscriptions.expire_due()
            except Exception as e:
                self.logger.error(f"Role subscription sweep failed: {e}", exc_info=True)
            await asyncio.sleep(interval)

    async def start(self, sweep_interval: float = 3600):
        await self.api.start()
        self._sweeper = asyncio.create_task(self._sweep_subscriptions(sweep_interval))

    async def stop(self):
        if self._sweeper:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self.api.stop()
        await self.orders.drain()

async def run():
    """Run against PostgreSQL until SIGINT/SIGTERM"""
    logger = logging.getLogger(__name__)
    Config.validate()

    db = Database()
    await db.connect()
    app = StorefrontApp(PostgresStore(db))

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        await app.start()
        logger.info("Storefront running")
        await stop_event.wait()
    finally:
        logger.info("Shutting down...")
        await app.stop()
        await db.close()
