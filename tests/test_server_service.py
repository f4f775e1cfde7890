from decimal import Decimal
import pytest
from storefront.exceptions import Forbidden, InvalidRequest, NotFound
from storefront.models.server import SubscriptionTier


async def test_register_server_starts_on_free_tier(app):
    server = await app.servers.register_server("guild-9", "Nine Shop", "owner-9")

    assert server.subscription_tier == SubscriptionTier.FREE
    assert server.commission_rate == Decimal("5.0")
    with pytest.raises(InvalidRequest):
        await app.servers.register_server("guild-9", "Other", "owner-10")


@pytest.mark.parametrize("tier,rate", [
    (SubscriptionTier.STARTER, "3.5"),
    (SubscriptionTier.PRO, "2.0"),
    (SubscriptionTier.BUSINESS, "1.0"),
    (SubscriptionTier.ENTERPRISE, "0.5"),
])
async def test_change_tier_sets_commission_rate(app, server, tier, rate):
    updated = await app.servers.change_tier(server.server_id, tier)

    assert updated.subscription_tier == tier
    assert updated.commission_rate == Decimal(rate)


async def test_changing_stripe_key_evicts_cached_gateway(app, server):
    app.gateways.get(server)
    assert len(app.gateways) == 1

    with pytest.raises(Forbidden):
        await app.servers.set_stripe_key(server.server_id, "intruder", "sk_test_x")

    updated = await app.servers.set_stripe_key(server.server_id, "owner-1", "sk_test_shop")
    assert updated.stripe_secret_key == "sk_test_shop"
    assert len(app.gateways) == 0


async def test_stats_count_completed_orders(app, server, buyer, make_product, pay):
    product = await make_product("FILE", price="10.00")
    await make_product("FILE", price="3.00")
    await pay(product.product_id, buyer.buyer_id)
    await pay(product.product_id, buyer.buyer_id)
    await app.orders.initiate_purchase(product.product_id, buyer.buyer_id)

    stats = await app.servers.get_stats(server.server_id)

    assert stats["total_orders"] == 2
    assert stats["total_revenue"] == Decimal("20.00")
    assert stats["total_commission"] == Decimal("1.00")
    assert stats["total_products"] == 2
    assert stats["active_products"] == 2

    with pytest.raises(NotFound):
        await app.servers.get_stats("missing")
