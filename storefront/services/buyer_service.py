import logging
from typing import List, Optional
from ..database.store import Store
from ..exceptions import NotFound
from ..models.order import Order
from ..models.user import Buyer

class BuyerService:
    def __init__(self, store: Store):
        self.store = store
        self.logger = logging.getLogger(__name__)

    async def register_buyer(self, discord_id: str, username: str,
                             email: Optional[str] = None) -> Buyer:
        """Register or refresh a buyer, keyed by Discord user id"""
        buyer = await self.store.get_buyer_by_discord_id(discord_id)
        if buyer:
            buyer.username = username
            if email:
                buyer.email = email
            return await self.store.save_buyer(buyer)

        buyer = await self.store.save_buyer(Buyer(discord_id=discord_id, username=username, email=email))
        self.logger.info(f"Buyer {buyer.buyer_id} registered for Discord user {discord_id}")
        return buyer

    async def get_buyer(self, buyer_id: str) -> Buyer:
        buyer = await self.store.get_buyer(buyer_id)
        if not buyer:
            raise NotFound("Buyer not found")
        return buyer

    async def get_buyer_orders(self, buyer_id: str) -> List[Order]:
        return await self.store.list_orders(buyer_id=buyer_id)
