import hashlib
import hmac
import itertools
import json
import time
from decimal import Decimal
import pytest
from storefront.app import StorefrontApp
from storefront.database.memory import MemoryStore
from storefront.models.product import FilePayload, Product, RolePayload, SerialPoolPayload
from storefront.models.server import Server
from storefront.models.user import Buyer
from storefront.services.payment_service import GatewayRegistry

WEBHOOK_SECRET = "whsec_test_secret"


class FakeDiscord:
    """Records role changes and DMs; set the *_error attributes to make calls fail"""

    def __init__(self):
        self.assigned = []
        self.removed = []
        self.messages = []
        self.role_error = None
        self.remove_error = None
        self.dm_error = None

    async def assign_role(self, guild_id, user_id, role_id, duration_days=None):
        if self.role_error:
            raise self.role_error
        self.assigned.append((guild_id, user_id, role_id, duration_days))

    async def remove_role(self, guild_id, user_id, role_id):
        if self.remove_error:
            raise self.remove_error
        self.removed.append((guild_id, user_id, role_id))

    async def send_direct_notice(self, user_id, content):
        if self.dm_error:
            raise self.dm_error
        self.messages.append((user_id, content))


class FakeEmail:
    def __init__(self):
        self.sent = []
        self.error = None

    async def send_email_notice(self, address, subject, body):
        if self.error:
            raise self.error
        self.sent.append((address, subject, body))


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def discord():
    return FakeDiscord()


@pytest.fixture
def email():
    return FakeEmail()


@pytest.fixture
def stripe_create(mocker):
    """Patch PaymentIntent.create to hand out pi_test_1, pi_test_2, ..."""
    counter = itertools.count(1)

    def create(**kwargs):
        n = next(counter)
        intent = mocker.Mock()
        intent.id = f"pi_test_{n}"
        intent.client_secret = f"pi_test_{n}_secret_abc"
        return intent

    return mocker.patch("stripe.PaymentIntent.create", side_effect=create)


@pytest.fixture
def app(store, discord, email, stripe_create):
    app = StorefrontApp(
        store,
        discord=discord,
        email=email,
        gateways=GatewayRegistry(default_key="sk_test_platform", max_size=8, timeout=1.0)
    )
    app.orders.webhook_secret = WEBHOOK_SECRET
    app.delivery.timeout = 0.2
    return app


@pytest.fixture
def sign_event():
    """Build a Stripe webhook body and a valid Stripe-Signature header for it"""

    def sign(event_type, payment_intent_id, secret=WEBHOOK_SECRET, event_id=None, data=None):
        payload = json.dumps({
            "id": event_id or f"evt_{payment_intent_id}_{event_type}",
            "object": "event",
            "type": event_type,
            "data": data if data is not None else {"object": {"id": payment_intent_id, "object": "payment_intent"}},
        })
        timestamp = int(time.time())
        signature = hmac.new(
            secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256
        ).hexdigest()
        return payload.encode(), f"t={timestamp},v1={signature}"

    return sign


@pytest.fixture
async def server(store):
    return await store.save_server(Server(
        discord_guild_id="guild-1",
        shop_name="Pixel Shop",
        owner_id="owner-1",
        commission_rate=Decimal("5.0")
    ))


@pytest.fixture
async def buyer(store):
    return await store.save_buyer(Buyer(discord_id="user-1", username="alice", email="alice@example.com"))


@pytest.fixture
def make_product(store, server):
    async def make(kind="FILE", price="9.99", stock=None, **payload):
        if kind == "FILE":
            body = FilePayload(file_url=payload.get("file_url", "https://cdn.example.com/guide.pdf"))
        elif kind == "SERIAL_POOL":
            body = SerialPoolPayload(serials=payload.get("serials", []))
        else:
            body = RolePayload(**payload)
        return await store.save_product(Product(
            server_id=server.server_id,
            name=f"{kind.title()} product",
            price=Decimal(price),
            stock=stock,
            payload=body
        ))

    return make


@pytest.fixture
def pay(app, sign_event):
    """Run a purchase and confirm it with a signed payment_intent.succeeded webhook"""

    async def pay(product_id, buyer_id, drain=True):
        intent = await app.orders.initiate_purchase(product_id, buyer_id)
        payload, signature = sign_event("payment_intent.succeeded", intent.payment_intent_id)
        await app.orders.handle_payment_notification(payload, signature)
        if drain:
            await app.orders.drain()
        return intent

    return pay
