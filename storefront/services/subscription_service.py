import logging
from datetime import datetime
from typing import List, Optional
from ..database.store import Store
from ..models.base import utcnow
from ..models.order import Order, RoleGrant
from ..models.subscription import RoleSubscription, SubscriptionStatus
from ..models.user import Buyer
from .discord_service import DiscordError

class RoleSubscriptionService:
    """Timed Discord roles: recorded on delivery, removed once they lapse"""

    def __init__(self, store: Store, discord):
        self.store = store
        self.discord = discord
        self.logger = logging.getLogger(__name__)

    async def start(self, order: Order, buyer: Buyer, grant: RoleGrant) -> Optional[RoleSubscription]:
        """Track a timed grant; calling it again for the same order returns the existing one"""
        if grant.expires_at is None:
            return None

        existing = await self.store.get_role_subscription_by_order(order.order_id)
        if existing:
            return existing

        subscription = await self.store.save_role_subscription(RoleSubscription(
            order_id=order.order_id,
            buyer_id=buyer.buyer_id,
            product_id=order.product_id,
            server_id=order.server_id,
            guild_id=grant.guild_id,
            role_id=grant.role_id,
            discord_user_id=buyer.discord_id,
            current_period_start=utcnow(),
            current_period_end=grant.expires_at
        ))
        self.logger.info(f"Role {grant.role_id} for {buyer.discord_id} runs until {grant.expires_at.isoformat()}")
        return subscription

    async def expire_due(self, now: Optional[datetime] = None) -> List[RoleSubscription]:
        """Remove lapsed roles; failed removals stay ACTIVE for the next sweep"""
        now = now or utcnow()
        expired = []

        for subscription in await self.store.list_due_role_subscriptions(now):
            try:
                await self.discord.remove_role(
                    subscription.guild_id, subscription.discord_user_id, subscription.role_id
                )
            except DiscordError as e:
                # Member or role already gone
                if e.status != 404:
                    self.logger.warning(f"Could not remove role for subscription {subscription.subscription_id}: {e}")
                    continue

            subscription.status = SubscriptionStatus.EXPIRED
            subscription.updated_at = now
            expired.append(await self.store.save_role_subscription(subscription))

        if expired:
            self.logger.info(f"{len(expired)} role subscriptions expired")
        return expired
