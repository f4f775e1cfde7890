import logging
from typing import Any, Dict, Optional
from aiohttp import web
from pydantic_core import to_jsonable_python
from ..config import Config
from ..exceptions import InvalidRequest, ShopError
from ..services.buyer_service import BuyerService
from ..services.delivery_service import DeliveryService
from ..services.order_service import OrderService
from ..services.review_service import ReviewService
from ..utils.security import api_key_matches

logger = logging.getLogger(__name__)

API_KEY_HEADER = "x-bot-api-key"

def json_response(data: Any, status: int = 200) -> web.Response:
    return web.json_response(to_jsonable_python(data), status=status)

async def read_json(request: web.Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise InvalidRequest("invalid json body")
    if not isinstance(body, dict):
        raise InvalidRequest("json body must be an object")
    return body

def require(body: Dict[str, Any], *fields: str):
    missing = [f for f in fields if not body.get(f)]
    if missing:
        raise InvalidRequest(f"{', '.join(missing)} required")

class ShopApi:
    """HTTP boundary: Stripe webhook, bot endpoints and public token pages.

    Bot endpoints need the shared key in the x-bot-api-key header; the
    webhook authenticates through its Stripe signature instead.
    """

    def __init__(self, orders: OrderService, delivery: DeliveryService,
                 reviews: ReviewService, buyers: BuyerService,
                 api_key: str = Config.BOT_API_KEY,
                 host: str = Config.API_HOST, port: int = Config.API_PORT):
        self.orders = orders
        self.delivery = delivery
        self.reviews = reviews
        self.buyers = buyers
        self.api_key = api_key
        self.host = host
        self.port = port

        self.app = web.Application(
            middlewares=[
                self._error_middleware,
                self._auth_middleware,
            ]
        )
        self.app.router.add_get("/health", self.health)
        self.app.router.add_post("/payments/webhook", self.payment_webhook)
        self.app.router.add_post("/payments/intents", self.create_payment_intent)
        self.app.router.add_post("/buyers", self.register_buyer)
        self.app.router.add_get("/orders/{order_id}", self.get_order)
        self.app.router.add_post("/orders/{order_id}/deliver", self.deliver_order)
        self.app.router.add_get("/delivery/{token}", self.get_delivery)
        self.app.router.add_get("/reviews/{token}", self.get_review_info)
        self.app.router.add_post("/reviews/{token}", self.create_review)
        self.app.router.add_get("/servers/{server_id}/reviews", self.get_server_reviews)

        self.runner: Optional[web.AppRunner] = None

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler):
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except ShopError as exc:
            logger.info(f"{request.method} {request.path} rejected: {exc.message}")
            return json_response({"ok": False, "message": exc.message}, status=exc.status_code)
        except Exception as exc:
            logger.exception(f"API error on {request.path}: {exc}")
            return json_response({"ok": False, "message": "internal server error"}, status=500)

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler):
        protected = (
            request.path in {"/payments/intents", "/buyers"}
            or request.path.startswith("/orders/")
        )
        if not protected:
            return await handler(request)

        received_key = request.headers.get(API_KEY_HEADER, "").strip()
        if not api_key_matches(received_key, self.api_key):
            return json_response({"ok": False, "message": "Invalid or missing bot API key"}, status=401)

        return await handler(request)

    async def start(self) -> None:
        if self.runner is not None:
            return

        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, self.host, self.port)
        await site.start()
        logger.info(f"API listening on {self.host}:{self.port}")

    async def stop(self) -> None:
        if self.runner is None:
            return

        await self.runner.cleanup()
        self.runner = None
        logger.info("API stopped")

    async def health(self, request: web.Request):
        return json_response({"ok": True})

    async def payment_webhook(self, request: web.Request):
        payload = await request.read()
        event = await self.orders.handle_payment_notification(
            payload, request.headers.get("Stripe-Signature")
        )
        return json_response({"ok": True, "received": True, "type": event.raw_type})

    async def create_payment_intent(self, request: web.Request):
        body = await read_json(request)
        require(body, "product_id", "buyer_id")
        intent = await self.orders.initiate_purchase(body["product_id"], body["buyer_id"])
        return json_response({"ok": True, **intent.model_dump()}, status=201)

    async def register_buyer(self, request: web.Request):
        body = await read_json(request)
        require(body, "discord_id", "username")
        buyer = await self.buyers.register_buyer(
            str(body["discord_id"]), body["username"], body.get("email")
        )
        return json_response({"ok": True, "buyer": buyer})

    async def get_order(self, request: web.Request):
        order = await self.orders.get_order(request.match_info["order_id"])
        return json_response({"ok": True, "order": order.model_dump(exclude={"review_token", "delivery_token"})})

    async def deliver_order(self, request: web.Request):
        order = await self.delivery.deliver(request.match_info["order_id"])
        return json_response({
            "ok": True,
            "order_id": order.order_id,
            "delivered": order.delivered,
            "delivered_at": order.delivered_at,
            "delivery_data": order.delivery_data,
        })

    async def get_delivery(self, request: web.Request):
        delivery = await self.orders.get_delivery(request.match_info["token"])
        return json_response({"ok": True, "delivery": delivery})

    async def get_review_info(self, request: web.Request):
        info = await self.reviews.get_review_info(request.match_info["token"])
        return json_response({"ok": True, **info})

    async def create_review(self, request: web.Request):
        body = await read_json(request)
        rating = body.get("rating")
        if rating is None:
            raise InvalidRequest("rating required")
        review = await self.reviews.create_review(request.match_info["token"], rating, body.get("comment"))
        return json_response({"ok": True, "review": review}, status=201)

    async def get_server_reviews(self, request: web.Request):
        result = await self.reviews.get_server_reviews(request.match_info["server_id"])
        return json_response({"ok": True, **result})
