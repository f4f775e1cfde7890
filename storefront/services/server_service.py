import logging
from decimal import Decimal
from typing import Any, Dict, Optional
from ..config import Config
from ..database.store import Store
from ..exceptions import Forbidden, InvalidRequest, NotFound
from ..models.order import OrderStatus
from ..models.server import Server, SubscriptionTier

class ServerService:
    """Shops: registration, ownership and subscription tiers"""

    def __init__(self, store: Store, gateways=None):
        self.store = store
        self.gateways = gateways
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def commission_rate_for(tier: SubscriptionTier) -> Decimal:
        return Config.COMMISSION_RATES[tier.value]

    async def register_server(self, discord_guild_id: str, shop_name: str, owner_id: str,
                              description: Optional[str] = None) -> Server:
        if await self.store.get_server_by_guild(discord_guild_id):
            raise InvalidRequest("Server already registered")

        server = await self.store.save_server(Server(
            discord_guild_id=discord_guild_id,
            shop_name=shop_name,
            owner_id=owner_id,
            description=description,
            subscription_tier=SubscriptionTier.FREE,
            commission_rate=self.commission_rate_for(SubscriptionTier.FREE)
        ))
        self.logger.info(f"Shop '{shop_name}' registered for guild {discord_guild_id}")
        return server

    async def get_server(self, server_id: str) -> Server:
        server = await self.store.get_server(server_id)
        if not server:
            raise NotFound("Server not found")
        return server

    async def get_owned_server(self, server_id: str, owner_id: str) -> Server:
        server = await self.get_server(server_id)
        if server.owner_id != owner_id:
            raise Forbidden("You do not own this server")
        return server

    async def change_tier(self, server_id: str, tier: SubscriptionTier) -> Server:
        """Switch tier; only orders created afterwards use the new commission rate"""
        server = await self.get_server(server_id)
        server.subscription_tier = tier
        server.commission_rate = self.commission_rate_for(tier)
        server = await self.store.save_server(server)
        self.logger.info(f"Shop {server_id} moved to {tier.value} ({server.commission_rate}%)")
        return server

    async def set_stripe_key(self, server_id: str, owner_id: str,
                             secret_key: Optional[str]) -> Server:
        server = await self.get_owned_server(server_id, owner_id)
        server.stripe_secret_key = secret_key or None
        server = await self.store.save_server(server)
        if self.gateways is not None:
            self.gateways.evict(server_id)
        return server

    async def get_stats(self, server_id: str) -> Dict[str, Any]:
        server = await self.get_server(server_id)
        completed = [
            o for o in await self.store.list_orders(server_id=server_id)
            if o.status == OrderStatus.COMPLETED
        ]
        products = await self.store.list_products(server_id, active_only=False)

        return {
            'total_revenue': sum((o.amount for o in completed), Decimal("0")),
            'total_commission': sum((o.commission_amount for o in completed), Decimal("0")),
            'total_orders': len(completed),
            'total_products': len(products),
            'active_products': sum(1 for p in products if p.is_active),
            'subscription_tier': server.subscription_tier.value,
            'commission_rate': server.commission_rate,
        }
