import asyncio
import logging
from decimal import Decimal
import pytest
import stripe
from storefront.exceptions import (GatewayError, NotFound, OutOfStock, SignatureInvalid,
                                   Unavailable)
from storefront.models.order import OrderStatus
from storefront.models.server import SubscriptionTier
from storefront.services.payment_service import PaymentEventType


async def test_purchase_payment_and_delivery_of_a_file(app, store, discord, make_product, buyer, sign_event):
    product = await make_product("FILE", price="9.99", stock=1)

    intent = await app.orders.initiate_purchase(product.product_id, buyer.buyer_id)
    order = await store.get_order(intent.order_id)
    assert order.status == OrderStatus.PENDING
    assert order.amount == Decimal("9.99")
    assert order.commission_amount == Decimal("0.4995")
    assert (await store.get_product(product.product_id)).stock == 1

    payload, signature = sign_event("payment_intent.succeeded", intent.payment_intent_id)
    event = await app.orders.handle_payment_notification(payload, signature)
    assert event.type == PaymentEventType.SUCCEEDED

    order = await store.get_order(intent.order_id)
    assert order.status == OrderStatus.COMPLETED
    assert (await store.get_product(product.product_id)).stock == 0

    entries = await store.list_ledger_entries(order.server_id)
    assert len(entries) == 1
    assert entries[0].amount == Decimal("9.99")
    assert entries[0].commission_amount == Decimal("0.4995")

    await app.orders.drain()
    order = await store.get_order(intent.order_id)
    assert order.delivered
    assert order.delivered_at is not None
    assert order.delivery_data.item.file_url == "https://cdn.example.com/guide.pdf"
    assert discord.messages[0][0] == buyer.discord_id
    assert order.review_token in discord.messages[0][1]


async def test_purchase_sends_minor_units_and_metadata(app, stripe_create, make_product, buyer, server):
    product = await make_product("FILE", price="9.99")

    await app.orders.initiate_purchase(product.product_id, buyer.buyer_id)

    kwargs = stripe_create.call_args.kwargs
    assert kwargs["amount"] == 999
    assert kwargs["currency"] == app.orders.currency
    assert kwargs["api_key"] == "sk_test_platform"
    assert kwargs["automatic_payment_methods"] == {"enabled": True, "allow_redirects": "never"}
    assert kwargs["metadata"]["server_id"] == server.server_id
    assert kwargs["metadata"]["product_type"] == "FILE"


async def test_purchase_uses_the_shop_stripe_key(app, store, stripe_create, make_product, buyer, server):
    server.stripe_secret_key = "sk_test_shop"
    await store.save_server(server)
    product = await make_product("FILE")

    await app.orders.initiate_purchase(product.product_id, buyer.buyer_id)

    assert stripe_create.call_args.kwargs["api_key"] == "sk_test_shop"


async def test_sold_out_product_cannot_be_purchased(app, store, pay, make_product, buyer):
    product = await make_product("FILE", stock=1)
    await pay(product.product_id, buyer.buyer_id)

    with pytest.raises(OutOfStock):
        await app.orders.initiate_purchase(product.product_id, buyer.buyer_id)

    assert len(await store.list_orders(buyer_id=buyer.buyer_id)) == 1


async def test_inactive_or_missing_product_is_rejected(app, store, stripe_create, make_product, buyer):
    product = await make_product("FILE")
    product.is_active = False
    await store.save_product(product)

    with pytest.raises(Unavailable):
        await app.orders.initiate_purchase(product.product_id, buyer.buyer_id)
    with pytest.raises(NotFound):
        await app.orders.initiate_purchase("missing", buyer.buyer_id)

    stripe_create.assert_not_called()
    assert await store.list_orders() == []


async def test_gateway_failure_creates_no_order(app, store, stripe_create, make_product, buyer):
    stripe_create.side_effect = stripe.APIConnectionError("connection refused")
    product = await make_product("FILE")

    with pytest.raises(GatewayError):
        await app.orders.initiate_purchase(product.product_id, buyer.buyer_id)

    assert await store.list_orders() == []


async def test_payment_failed_marks_order_failed_only(app, store, discord, make_product, buyer, sign_event):
    product = await make_product("FILE", stock=3)
    intent = await app.orders.initiate_purchase(product.product_id, buyer.buyer_id)

    payload, signature = sign_event("payment_intent.payment_failed", intent.payment_intent_id)
    await app.orders.handle_payment_notification(payload, signature)
    await app.orders.drain()

    order = await store.get_order(intent.order_id)
    assert order.status == OrderStatus.FAILED
    assert not order.delivered
    product = await store.get_product(product.product_id)
    assert product.stock == 3
    assert product.sales_count == 0
    assert await store.list_ledger_entries(order.server_id) == []
    assert discord.messages == []


async def test_failed_order_ignores_a_later_success(app, store, make_product, buyer, sign_event):
    product = await make_product("FILE", stock=2)
    intent = await app.orders.initiate_purchase(product.product_id, buyer.buyer_id)

    await app.orders.handle_payment_notification(*sign_event("payment_intent.payment_failed", intent.payment_intent_id))
    await app.orders.handle_payment_notification(*sign_event("payment_intent.succeeded", intent.payment_intent_id))
    await app.orders.drain()

    assert (await store.get_order(intent.order_id)).status == OrderStatus.FAILED
    assert (await store.get_product(product.product_id)).stock == 2


async def test_replayed_success_event_has_no_extra_effect(app, store, discord, make_product, buyer, sign_event):
    product = await make_product("FILE", stock=5)
    intent = await app.orders.initiate_purchase(product.product_id, buyer.buyer_id)
    payload, signature = sign_event("payment_intent.succeeded", intent.payment_intent_id)

    await app.orders.handle_payment_notification(payload, signature)
    await app.orders.drain()
    await app.orders.handle_payment_notification(payload, signature)
    await app.orders.drain()

    product = await store.get_product(product.product_id)
    assert product.stock == 4
    assert product.sales_count == 1
    assert len(await store.list_ledger_entries(product.server_id)) == 1
    assert len(discord.messages) == 1


async def test_concurrent_duplicate_events_complete_once(app, store, discord, make_product, buyer, sign_event):
    product = await make_product("FILE", stock=5)
    intent = await app.orders.initiate_purchase(product.product_id, buyer.buyer_id)
    payload, signature = sign_event("payment_intent.succeeded", intent.payment_intent_id)

    await asyncio.gather(*[app.orders.handle_payment_notification(payload, signature) for _ in range(5)])
    await app.orders.drain()

    product = await store.get_product(product.product_id)
    assert product.stock == 4
    assert product.sales_count == 1
    assert len(await store.list_ledger_entries(product.server_id)) == 1
    assert len(discord.messages) == 1


async def test_stock_and_sales_count_follow_completed_purchases(app, store, pay, make_product, buyer):
    product = await make_product("FILE", stock=10)

    for _ in range(4):
        await pay(product.product_id, buyer.buyer_id)

    product = await store.get_product(product.product_id)
    assert product.stock == 6
    assert product.sales_count == 4


async def test_commission_is_fixed_when_the_order_is_created(app, store, pay, make_product, buyer, server, sign_event):
    product = await make_product("FILE", price="20.00")
    intent = await app.orders.initiate_purchase(product.product_id, buyer.buyer_id)

    await app.servers.change_tier(server.server_id, SubscriptionTier.PRO)
    await app.orders.handle_payment_notification(*sign_event("payment_intent.succeeded", intent.payment_intent_id))

    order = await store.get_order(intent.order_id)
    assert order.commission_amount == Decimal("1.00")
    entries = await store.list_ledger_entries(server.server_id)
    assert entries[0].commission_amount == Decimal("1.00")

    later = await pay(product.product_id, buyer.buyer_id)
    assert (await store.get_order(later.order_id)).commission_amount == Decimal("0.40")


async def test_invalid_signature_is_rejected_without_effect(app, store, make_product, buyer, sign_event):
    product = await make_product("FILE", stock=1)
    intent = await app.orders.initiate_purchase(product.product_id, buyer.buyer_id)
    payload, _ = sign_event("payment_intent.succeeded", intent.payment_intent_id)
    _, forged = sign_event("payment_intent.succeeded", intent.payment_intent_id, secret="whsec_other")

    with pytest.raises(SignatureInvalid):
        await app.orders.handle_payment_notification(payload, forged)
    with pytest.raises(SignatureInvalid):
        await app.orders.handle_payment_notification(payload, None)

    assert (await store.get_order(intent.order_id)).status == OrderStatus.PENDING


async def test_unknown_intent_and_other_events_are_acknowledged(app, store, sign_event):
    event = await app.orders.handle_payment_notification(*sign_event("payment_intent.succeeded", "pi_unknown"))
    assert event.payment_intent_id == "pi_unknown"

    event = await app.orders.handle_payment_notification(*sign_event("charge.refunded", "ch_123"))
    assert event.type == PaymentEventType.IGNORED
    assert await store.list_orders() == []


async def test_delivery_failure_does_not_undo_completion(app, store, make_product, buyer, pay):
    product = await make_product("FILE", file_url=None)

    intent = await pay(product.product_id, buyer.buyer_id)

    order = await store.get_order(intent.order_id)
    assert order.status == OrderStatus.COMPLETED
    assert not order.delivered


async def test_delivery_lookup_by_token(app, store, make_product, buyer, pay):
    product = await make_product("SERIAL_POOL", serials=["KEY-1"])
    intent = await pay(product.product_id, buyer.buyer_id)
    order = await store.get_order(intent.order_id)

    delivery = await app.orders.get_delivery(order.delivery_token)

    assert delivery["serials"] == ["KEY-1"]
    assert delivery["shop_name"] == "Pixel Shop"
    assert delivery["delivered"] is True
    with pytest.raises(NotFound):
        await app.orders.get_delivery("not-a-token")


async def test_store_failure_while_completing_leaves_the_event_replayable(app, store, discord, make_product,
                                                                         buyer, sign_event, mocker):
    product = await make_product("FILE", stock=5)
    intent = await app.orders.initiate_purchase(product.product_id, buyer.buyer_id)
    payload, signature = sign_event("payment_intent.succeeded", intent.payment_intent_id)

    complete_order = store.complete_order
    attempts = []

    async def flaky_complete_order(payment_intent_id):
        attempts.append(payment_intent_id)
        if len(attempts) == 1:
            raise ConnectionError("connection reset by peer")
        return await complete_order(payment_intent_id)

    mocker.patch.object(store, "complete_order", side_effect=flaky_complete_order)

    await app.orders.handle_payment_notification(payload, signature)
    await app.orders.drain()

    order = await store.get_order(intent.order_id)
    assert order.status == OrderStatus.PENDING
    assert (await store.get_product(product.product_id)).stock == 5
    assert await store.list_ledger_entries(order.server_id) == []
    assert discord.messages == []

    await app.orders.handle_payment_notification(payload, signature)
    await app.orders.drain()

    order = await store.get_order(intent.order_id)
    assert order.status == OrderStatus.COMPLETED
    assert order.delivered
    product = await store.get_product(product.product_id)
    assert product.stock == 4
    assert product.sales_count == 1
    assert len(await store.list_ledger_entries(order.server_id)) == 1
    assert len(discord.messages) == 1


async def test_last_serial_paid_twice_is_oversold_and_second_delivery_fails(app, store, discord, make_product,
                                                                           buyer, sign_event, caplog):
    product = await make_product("SERIAL_POOL", serials=["ONLY-KEY"], stock=1)
    first = await app.orders.initiate_purchase(product.product_id, buyer.buyer_id)
    second = await app.orders.initiate_purchase(product.product_id, buyer.buyer_id)

    with caplog.at_level(logging.WARNING):
        for intent in (first, second):
            await app.orders.handle_payment_notification(
                *sign_event("payment_intent.succeeded", intent.payment_intent_id)
            )
            await app.orders.drain()

    assert f"Product {product.product_id} oversold by order {second.order_id}" in caplog.text

    product = await store.get_product(product.product_id)
    assert product.stock == 0
    assert product.sales_count == 2
    assert product.payload.serials == []
    assert len(await store.list_ledger_entries(product.server_id)) == 2

    delivered = await store.get_order(first.order_id)
    assert delivered.delivered
    assert delivered.delivery_data.item.serial == "ONLY-KEY"

    stranded = await store.get_order(second.order_id)
    assert stranded.status == OrderStatus.COMPLETED
    assert not stranded.delivered
    assert stranded.delivery_data is None
    assert len(discord.messages) == 1

    with pytest.raises(OutOfStock):
        await app.delivery.deliver(second.order_id)
