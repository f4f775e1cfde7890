import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional
from ..database.store import Store
from ..exceptions import InvalidRequest, NotFound
from ..models.order import Order, OrderStatus
from ..models.review import Review

class ReviewService:
    def __init__(self, store: Store):
        self.store = store
        self.logger = logging.getLogger(__name__)

    async def _order_for_token(self, token: str) -> Order:
        order = await self.store.get_order_by_review_token(token)
        if not order:
            raise NotFound("Invalid review token")
        return order

    async def create_review(self, token: str, rating: int, comment: Optional[str] = None) -> Review:
        """Leave the single review an order is entitled to"""
        if not isinstance(rating, int) or isinstance(rating, bool) or not 1 <= rating <= 5:
            raise InvalidRequest("Rating must be between 1 and 5")

        order = await self._order_for_token(token)
        if order.status != OrderStatus.COMPLETED:
            raise InvalidRequest("Only paid orders can be reviewed")

        review = await self.store.create_review(Review(
            order_id=order.order_id,
            server_id=order.server_id,
            buyer_id=order.buyer_id,
            rating=rating,
            comment=(comment or "").strip() or None
        ))
        self.logger.info(f"Review {review.review_id} ({rating}/5) left for shop {order.server_id}")
        return review

    async def get_review_info(self, token: str) -> Dict[str, Any]:
        order = await self._order_for_token(token)
        product = await self.store.get_product(order.product_id)
        server = await self.store.get_server(order.server_id)
        review = await self.store.get_review_by_order(order.order_id)

        return {
            'order_id': order.order_id[:8],
            'product_name': product.name if product else None,
            'shop_name': server.shop_name if server else None,
            'amount': order.amount,
            'has_review': review is not None,
            'review': review,
        }

    async def get_server_reviews(self, server_id: str) -> Dict[str, Any]:
        reviews = await self.store.list_reviews(server_id)

        total = len(reviews)
        average = Decimal("0")
        if total:
            average = (Decimal(sum(r.rating for r in reviews)) / total).quantize(
                Decimal("0.1"), rounding=ROUND_HALF_UP
            )

        return {
            'reviews': reviews,
            'stats': {
                'total_reviews': total,
                'average_rating': average,
                'rating_distribution': {
                    star: sum(1 for r in reviews if r.rating == star) for star in range(5, 0, -1)
                },
            },
        }
