import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional
import stripe
from ..config import Config
from ..exceptions import GatewayError, SignatureInvalid, Unavailable
from ..models.server import Server

logger = logging.getLogger(__name__)

class PaymentEventType(str, Enum):
    SUCCEEDED = "payment_succeeded"
    FAILED = "payment_failed"
    IGNORED = "ignored"

STRIPE_EVENT_TYPES = {
    "payment_intent.succeeded": PaymentEventType.SUCCEEDED,
    "payment_intent.payment_failed": PaymentEventType.FAILED,
}

@dataclass
class PaymentEvent:
    """A verified notification from the payment processor"""
    event_id: str
    type: PaymentEventType
    payment_intent_id: Optional[str]
    raw_type: str

@dataclass
class CreatedIntent:
    id: str
    client_secret: str

def verify_notification(raw_payload: bytes, signature: Optional[str],
                        secret: str) -> PaymentEvent:
    """Authenticate a webhook payload and reduce it to a PaymentEvent.

    Raises SignatureInvalid when the signature header is missing, does not
    match the payload, or the payload is not a Stripe event.
    """
    if not signature:
        raise SignatureInvalid("Missing Stripe-Signature header")

    try:
        event = stripe.Webhook.construct_event(raw_payload, signature, secret)
    except stripe.SignatureVerificationError as e:
        raise SignatureInvalid(f"Webhook signature verification failed: {e}")
    except ValueError as e:
        raise SignatureInvalid(f"Invalid webhook payload: {e}")

    raw_type = event.get("type", "")
    event_type = STRIPE_EVENT_TYPES.get(raw_type, PaymentEventType.IGNORED)
    payment_intent_id = None
    if event_type != PaymentEventType.IGNORED:
        data_object = (event.get("data") or {}).get("object") or {}
        payment_intent_id = data_object.get("id")
        if not payment_intent_id:
            logger.warning(f"{raw_type} event {event.get('id')} carries no payment intent id, ignoring")
            event_type = PaymentEventType.IGNORED

    return PaymentEvent(
        event_id=event.get("id"),
        type=event_type,
        payment_intent_id=payment_intent_id,
        raw_type=raw_type
    )

class StripeGateway:
    """Payment intents for one Stripe account"""

    def __init__(self, secret_key: str, timeout: float = Config.EXTERNAL_CALL_TIMEOUT):
        self.secret_key = secret_key
        self.timeout = timeout

    async def create_payment_intent(self, amount: int, currency: str,
                                    metadata: Dict[str, str]) -> CreatedIntent:
        """Create an intent for `amount` minor units"""
        try:
            intent = await asyncio.wait_for(
                asyncio.to_thread(
                    stripe.PaymentIntent.create,
                    amount=amount,
                    currency=currency,
                    metadata=metadata,
                    automatic_payment_methods={
                        "enabled": True,
                        "allow_redirects": "never"
                    },
                    api_key=self.secret_key
                ),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            raise GatewayError("Payment processor did not answer in time")
        except stripe.StripeError as e:
            logger.error(f"Stripe rejected payment intent: {e}")
            raise GatewayError(f"Payment processor error: {e.user_message or e}")

        return CreatedIntent(id=intent.id, client_secret=intent.client_secret)

class GatewayRegistry:
    """Per-shop Stripe gateways, bounded and evictable.

    A shop with its own secret key gets its own gateway; every other shop
    shares the platform key.
    """

    def __init__(self, default_key: str = Config.STRIPE_SECRET_KEY,
                 max_size: int = Config.GATEWAY_CACHE_SIZE,
                 timeout: float = Config.EXTERNAL_CALL_TIMEOUT):
        self.default_key = default_key
        self.max_size = max_size
        self.timeout = timeout
        self._gateways: "OrderedDict[str, StripeGateway]" = OrderedDict()

    def get(self, server: Server) -> StripeGateway:
        secret_key = server.stripe_secret_key or self.default_key
        if not secret_key:
            raise Unavailable("Payments are not configured for this shop")

        gateway = self._gateways.get(server.server_id)
        if gateway is not None and gateway.secret_key == secret_key:
            self._gateways.move_to_end(server.server_id)
            return gateway

        gateway = StripeGateway(secret_key, self.timeout)
        self._gateways[server.server_id] = gateway
        self._gateways.move_to_end(server.server_id)
        while len(self._gateways) > self.max_size:
            self._gateways.popitem(last=False)
        return gateway

    def evict(self, server_id: str):
        """Forget a shop's gateway, e.g. after its key changed"""
        self._gateways.pop(server_id, None)

    def __len__(self):
        return len(self._gateways)
