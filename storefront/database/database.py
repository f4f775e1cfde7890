import json
import asyncpg
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from ..config import Config
from ..exceptions import InvalidRequest
from ..models.ledger import LedgerEntry
from ..models.order import DeliveryRecord, Order, OrderStatus, SerialAssignment
from ..models.product import Product, ProductType
from ..models.review import Review
from ..models.server import Server
from ..models.subscription import RoleSubscription, SubscriptionStatus
from ..models.user import Buyer
from .store import Store

class Database:
    """Owns the asyncpg pool and applies SQL migrations"""

    def __init__(self, dsn: Optional[str] = None):
        self.dsn = dsn or Config.DATABASE_URL
        self.pool: Optional[asyncpg.Pool] = None
        self.logger = logging.getLogger(__name__)

    async def connect(self):
        """Open the pool and bring the schema up to date"""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=Config.DB_MIN_POOL_SIZE,
                max_size=Config.DB_MAX_POOL_SIZE,
                init=self._init_connection
            )

            await self._run_migrations()

            self.logger.info("Database connection established")
        except Exception as e:
            self.logger.error(f"Database connection failed: {e}")
            raise

    async def close(self):
        if self.pool:
            await self.pool.close()
            self.logger.info("Database connection closed")

    @staticmethod
    async def _init_connection(conn: asyncpg.Connection):
        await conn.set_type_codec(
            'jsonb', encoder=json.dumps, decoder=json.loads, schema='pg_catalog'
        )

    async def _run_migrations(self):
        try:
            migrations_path = Path(__file__).parent / "migrations"

            async with self.pool.acquire() as conn:
                await conn.execute("""
                    CREATE TABLE IF NOT EXISTS migrations (
                        id SERIAL PRIMARY KEY,
                        name VARCHAR(255) NOT NULL,
                        applied_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
                    )
                """)

                for migration_file in sorted(migrations_path.glob("*.sql")):
                    migration_name = migration_file.name

                    is_applied = await conn.fetchval(
                        "SELECT COUNT(*) FROM migrations WHERE name = $1",
                        migration_name
                    )

                    if not is_applied:
                        async with conn.transaction():
                            await conn.execute(migration_file.read_text())
                            await conn.execute(
                                "INSERT INTO migrations (name) VALUES ($1)",
                                migration_name
                            )

                        self.logger.info(f"Migration {migration_name} applied")

        except Exception as e:
            self.logger.error(f"Running migrations failed: {e}")
            raise


PRODUCT_SELECT = """
    SELECT p.*,
        COALESCE((
            SELECT array_agg(s.value ORDER BY s.serial_id)
            FROM product_serials s
            WHERE s.product_id = p.product_id
        ), '{}') AS serials
    FROM products p
"""


class PostgresStore(Store):
    """Store backed by PostgreSQL through asyncpg"""

    def __init__(self, db: Database):
        self.db = db

    @staticmethod
    def _product_from_row(row) -> Product:
        data = dict(row)
        serials = list(data.pop('serials') or [])
        payload = dict(data['payload'])
        if payload.get('kind') == ProductType.SERIAL_POOL.value:
            payload['serials'] = serials
        data['payload'] = payload
        return Product(**data)

    @staticmethod
    def _order_from_row(row) -> Order:
        return Order(**dict(row))

    @staticmethod
    def _dump(model) -> Optional[Dict[str, Any]]:
        return model.model_dump(mode='json') if model is not None else None

    # Shops and buyers

    async def get_server(self, server_id: str) -> Optional[Server]:
        async with self.db.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM servers WHERE server_id = $1", server_id)
            return Server(**dict(row)) if row else None

    async def get_server_by_guild(self, discord_guild_id: str) -> Optional[Server]:
        async with self.db.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM servers WHERE discord_guild_id = $1", discord_guild_id)
            return Server(**dict(row)) if row else None

    async def save_server(self, server: Server) -> Server:
        async with self.db.pool.acquire() as conn:
            row = await conn.fetchrow("""
                INSERT INTO servers (
                    server_id, discord_guild_id, shop_name, owner_id, description,
                    subscription_tier, commission_rate, stripe_secret_key, is_active, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                ON CONFLICT (server_id)
                DO UPDATE SET
                    shop_name = EXCLUDED.shop_name,
                    description = EXCLUDED.description,
                    subscription_tier = EXCLUDED.subscription_tier,
                    commission_rate = EXCLUDED.commission_rate,
                    stripe_secret_key = EXCLUDED.stripe_secret_key,
                    is_active = EXCLUDED.is_active,
                    updated_at = CURRENT_TIMESTAMP
                RETURNING *
            """,
                server.server_id,
                server.discord_guild_id,
                server.shop_name,
                server.owner_id,
                server.description,
                server.subscription_tier.value,
                server.commission_rate,
                server.stripe_secret_key,
                server.is_active,
                server.created_at
            )
            return Server(**dict(row))

    async def get_buyer(self, buyer_id: str) -> Optional[Buyer]:
        async with self.db.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM buyers WHERE buyer_id = $1", buyer_id)
            return Buyer(**dict(row)) if row else None

    async def get_buyer_by_discord_id(self, discord_id: str) -> Optional[Buyer]:
        async with self.db.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM buyers WHERE discord_id = $1", discord_id)
            return Buyer(**dict(row)) if row else None

    async def save_buyer(self, buyer: Buyer) -> Buyer:
        async with self.db.pool.acquire() as conn:
            row = await conn.fetchrow("""
                INSERT INTO buyers (buyer_id, discord_id, username, email, created_at)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (buyer_id)
                DO UPDATE SET
                    username = EXCLUDED.username,
                    email = EXCLUDED.email,
                    updated_at = CURRENT_TIMESTAMP
                RETURNING *
            """, buyer.buyer_id, buyer.discord_id, buyer.username, buyer.email, buyer.created_at)
            return Buyer(**dict(row))

    # Catalog

    async def get_product(self, product_id: str) -> Optional[Product]:
        async with self.db.pool.acquire() as conn:
            row = await conn.fetchrow(PRODUCT_SELECT + " WHERE p.product_id = $1", product_id)
            return self._product_from_row(row) if row else None

    async def list_products(self, server_id: str, active_only: bool = True) -> List[Product]:
        query = PRODUCT_SELECT + " WHERE p.server_id = $1"
        if active_only:
            query += " AND p.is_active = true"
        query += " ORDER BY p.created_at DESC"

        async with self.db.pool.acquire() as conn:
            rows = await conn.fetch(query, server_id)
            return [self._product_from_row(r) for r in rows]

    async def save_product(self, product: Product) -> Product:
        payload = self._dump(product.payload)
        serials = payload.pop('serials', None)

        async with self.db.pool.acquire() as conn:
            async with conn.transaction():
                inserted = await conn.fetchval("""
                    INSERT INTO products (
                        product_id, server_id, name, description, price,
                        stock, sales_count, is_active, payload, created_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                    ON CONFLICT (product_id)
                    DO UPDATE SET
                        name = EXCLUDED.name,
                        description = EXCLUDED.description,
                        price = EXCLUDED.price,
                        stock = CASE WHEN products.payload->>'kind' = 'SERIAL_POOL'
                            THEN products.stock ELSE EXCLUDED.stock END,
                        is_active = EXCLUDED.is_active,
                        payload = EXCLUDED.payload,
                        updated_at = CURRENT_TIMESTAMP
                    RETURNING (xmax = 0) AS inserted
                """,
                    product.product_id,
                    product.server_id,
                    product.name,
                    product.description,
                    product.price,
                    product.stock,
                    product.sales_count,
                    product.is_active,
                    payload,
                    product.created_at
                )

                # The pool is only seeded here; later changes go through add_serials/claim_serial
                if inserted and serials:
                    await conn.executemany(
                        "INSERT INTO product_serials (product_id, value) VALUES ($1, $2)",
                        [(product.product_id, s) for s in serials]
                    )

                row = await conn.fetchrow(PRODUCT_SELECT + " WHERE p.product_id = $1", product.product_id)
                return self._product_from_row(row)

    async def delete_product(self, product_id: str) -> bool:
        async with self.db.pool.acquire() as conn:
            result = await conn.execute("DELETE FROM products WHERE product_id = $1", product_id)
            return result == "DELETE 1"

    async def add_serials(self, product_id: str, serials: List[str]) -> Optional[Product]:
        async with self.db.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow("""
                    SELECT payload FROM products
                    WHERE product_id = $1
                    FOR UPDATE
                """, product_id)
                if not row or row['payload'].get('kind') != ProductType.SERIAL_POOL.value:
                    return None

                await conn.executemany(
                    "INSERT INTO product_serials (product_id, value) VALUES ($1, $2)",
                    [(product_id, s) for s in serials]
                )
                await conn.execute("""
                    UPDATE products
                    SET stock = GREATEST(
                            (SELECT COUNT(*) FROM product_serials WHERE product_id = $1)
                            - (SELECT COUNT(*) FROM orders
                               WHERE product_id = $1 AND status = $2 AND delivery_data IS NULL),
                            0
                        ),
                        updated_at = CURRENT_TIMESTAMP
                    WHERE product_id = $1
                """, product_id, OrderStatus.COMPLETED.value)

                row = await conn.fetchrow(PRODUCT_SELECT + " WHERE p.product_id = $1", product_id)
                return self._product_from_row(row)

    async def claim_serial(self, order_id: str, product_id: str) -> Optional[str]:
        async with self.db.pool.acquire() as conn:
            async with conn.transaction():
                order_row = await conn.fetchrow("""
                    SELECT delivery_data FROM orders
                    WHERE order_id = $1
                    FOR UPDATE
                """, order_id)
                if order_row is None:
                    return None

                if order_row['delivery_data']:
                    existing = DeliveryRecord(**order_row['delivery_data'])
                    if isinstance(existing.item, SerialAssignment):
                        return existing.item.serial

                # SKIP LOCKED lets concurrent claims take different rows
                serial = await conn.fetchval("""
                    DELETE FROM product_serials
                    WHERE serial_id = (
                        SELECT serial_id FROM product_serials
                        WHERE product_id = $1
                        ORDER BY serial_id
                        LIMIT 1
                        FOR UPDATE SKIP LOCKED
                    )
                    RETURNING value
                """, product_id)
                if serial is None:
                    return None

                record = DeliveryRecord(item=SerialAssignment(serial=serial))
                await conn.execute("""
                    UPDATE orders
                    SET delivery_data = $2,
                        updated_at = CURRENT_TIMESTAMP
                    WHERE order_id = $1
                """, order_id, self._dump(record))

                return serial

    # Orders

    async def create_order(self, order: Order) -> Order:
        try:
            async with self.db.pool.acquire() as conn:
                row = await conn.fetchrow("""
                    INSERT INTO orders (
                        order_id, server_id, product_id, buyer_id, payment_intent_id,
                        status, amount, commission_amount, review_token, delivery_token, created_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                    RETURNING *
                """,
                    order.order_id,
                    order.server_id,
                    order.product_id,
                    order.buyer_id,
                    order.payment_intent_id,
                    order.status.value,
                    order.amount,
                    order.commission_amount,
                    order.review_token,
                    order.delivery_token,
                    order.created_at
                )
                return self._order_from_row(row)
        except asyncpg.UniqueViolationError:
            raise InvalidRequest(f"Order already exists for payment intent {order.payment_intent_id}")

    async def _fetch_order(self, column: str, value: str) -> Optional[Order]:
        async with self.db.pool.acquire() as conn:
            row = await conn.fetchrow(f"SELECT * FROM orders WHERE {column} = $1", value)
            return self._order_from_row(row) if row else None

    async def get_order(self, order_id: str) -> Optional[Order]:
        return await self._fetch_order('order_id', order_id)

    async def get_order_by_payment_intent(self, payment_intent_id: str) -> Optional[Order]:
        return await self._fetch_order('payment_intent_id', payment_intent_id)

    async def get_order_by_review_token(self, token: str) -> Optional[Order]:
        return await self._fetch_order('review_token', token)

    async def get_order_by_delivery_token(self, token: str) -> Optional[Order]:
        return await self._fetch_order('delivery_token', token)

    async def list_orders(self, server_id: Optional[str] = None,
                          buyer_id: Optional[str] = None) -> List[Order]:
        query = "SELECT * FROM orders WHERE 1=1"
        params = []
        param_index = 1

        if server_id is not None:
            query += f" AND server_id = ${param_index}"
            params.append(server_id)
            param_index += 1

        if buyer_id is not None:
            query += f" AND buyer_id = ${param_index}"
            params.append(buyer_id)
            param_index += 1

        query += " ORDER BY created_at DESC"

        async with self.db.pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
            return [self._order_from_row(r) for r in rows]

    async def transition_order(self, payment_intent_id: str,
                               status: OrderStatus) -> Optional[Order]:
        async with self.db.pool.acquire() as conn:
            row = await conn.fetchrow("""
                UPDATE orders
                SET status = $2,
                    updated_at = CURRENT_TIMESTAMP
                WHERE payment_intent_id = $1 AND status = $3
                RETURNING *
            """, payment_intent_id, status.value, OrderStatus.PENDING.value)
            return self._order_from_row(row) if row else None

    async def complete_order(self, payment_intent_id: str) -> Optional[Tuple[Order, bool]]:
        async with self.db.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow("""
                    UPDATE orders
                    SET status = $2,
                        updated_at = CURRENT_TIMESTAMP
                    WHERE payment_intent_id = $1 AND status = $3
                    RETURNING *
                """, payment_intent_id, OrderStatus.COMPLETED.value, OrderStatus.PENDING.value)
                if row is None:
                    return None
                order = self._order_from_row(row)

                stock_row = await conn.fetchrow("""
                    WITH previous AS (
                        SELECT stock FROM products
                        WHERE product_id = $1
                        FOR UPDATE
                    )
                    UPDATE products p
                    SET sales_count = p.sales_count + 1,
                        stock = CASE WHEN p.stock IS NULL THEN NULL ELSE GREATEST(p.stock - 1, 0) END,
                        updated_at = CURRENT_TIMESTAMP
                    FROM previous
                    WHERE p.product_id = $1
                    RETURNING previous.stock AS previous_stock
                """, order.product_id)

                entry = LedgerEntry(
                    order_id=order.order_id,
                    server_id=order.server_id,
                    amount=order.amount,
                    commission_amount=order.commission_amount
                )
                await conn.execute("""
                    INSERT INTO ledger_entries (
                        entry_id, order_id, server_id, amount, commission_amount, created_at
                    ) VALUES ($1, $2, $3, $4, $5, $6)
                """,
                    entry.entry_id,
                    entry.order_id,
                    entry.server_id,
                    entry.amount,
                    entry.commission_amount,
                    entry.created_at
                )

                in_stock = (stock_row is None or stock_row['previous_stock'] is None
                            or stock_row['previous_stock'] > 0)
                return order, in_stock

    async def record_delivery(self, order_id: str, record: DeliveryRecord) -> Optional[Order]:
        async with self.db.pool.acquire() as conn:
            row = await conn.fetchrow("""
                UPDATE orders
                SET delivery_data = $2,
                    updated_at = CURRENT_TIMESTAMP
                WHERE order_id = $1
                RETURNING *
            """, order_id, self._dump(record))
            return self._order_from_row(row) if row else None

    async def mark_delivered(self, order_id: str, record: DeliveryRecord) -> Optional[Order]:
        async with self.db.pool.acquire() as conn:
            row = await conn.fetchrow("""
                UPDATE orders
                SET delivered = TRUE,
                    delivered_at = CURRENT_TIMESTAMP,
                    delivery_data = $2,
                    updated_at = CURRENT_TIMESTAMP
                WHERE order_id = $1 AND status = $3 AND NOT delivered
                RETURNING *
            """, order_id, self._dump(record), OrderStatus.COMPLETED.value)
            return self._order_from_row(row) if row else None

    # Ledger

    async def append_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        async with self.db.pool.acquire() as conn:
            row = await conn.fetchrow("""
                INSERT INTO ledger_entries (
                    entry_id, order_id, server_id, amount, commission_amount, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6)
                RETURNING *
            """,
                entry.entry_id,
                entry.order_id,
                entry.server_id,
                entry.amount,
                entry.commission_amount,
                entry.created_at
            )
            return LedgerEntry(**dict(row))

    async def list_ledger_entries(self, server_id: str,
                                  since: Optional[datetime] = None,
                                  until: Optional[datetime] = None) -> List[LedgerEntry]:
        query = "SELECT * FROM ledger_entries WHERE server_id = $1"
        params = [server_id]
        param_index = 2

        if since is not None:
            query += f" AND created_at >= ${param_index}"
            params.append(since)
            param_index += 1

        if until is not None:
            query += f" AND created_at < ${param_index}"
            params.append(until)
            param_index += 1

        query += " ORDER BY created_at"

        async with self.db.pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
            return [LedgerEntry(**dict(r)) for r in rows]

    # Reviews

    async def create_review(self, review: Review) -> Review:
        try:
            async with self.db.pool.acquire() as conn:
                row = await conn.fetchrow("""
                    INSERT INTO reviews (
                        review_id, order_id, server_id, buyer_id, rating, comment, created_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                    RETURNING *
                """,
                    review.review_id,
                    review.order_id,
                    review.server_id,
                    review.buyer_id,
                    review.rating,
                    review.comment,
                    review.created_at
                )
                return Review(**dict(row))
        except asyncpg.UniqueViolationError:
            raise InvalidRequest("A review already exists for this order")

    async def get_review_by_order(self, order_id: str) -> Optional[Review]:
        async with self.db.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM reviews WHERE order_id = $1", order_id)
            return Review(**dict(row)) if row else None

    async def list_reviews(self, server_id: str) -> List[Review]:
        async with self.db.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM reviews
                WHERE server_id = $1
                ORDER BY created_at DESC
            """, server_id)
            return [Review(**dict(r)) for r in rows]

    # Role subscriptions

    async def save_role_subscription(self, subscription: RoleSubscription) -> RoleSubscription:
        try:
            async with self.db.pool.acquire() as conn:
                row = await conn.fetchrow("""
                    INSERT INTO role_subscriptions (
                        subscription_id, order_id, buyer_id, product_id, server_id,
                        guild_id, role_id, discord_user_id, status,
                        current_period_start, current_period_end, created_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                    ON CONFLICT (subscription_id)
                    DO UPDATE SET
                        status = EXCLUDED.status,
                        current_period_start = EXCLUDED.current_period_start,
                        current_period_end = EXCLUDED.current_period_end,
                        updated_at = CURRENT_TIMESTAMP
                    RETURNING *
                """,
                    subscription.subscription_id,
                    subscription.order_id,
                    subscription.buyer_id,
                    subscription.product_id,
                    subscription.server_id,
                    subscription.guild_id,
                    subscription.role_id,
                    subscription.discord_user_id,
                    subscription.status.value,
                    subscription.current_period_start,
                    subscription.current_period_end,
                    subscription.created_at
                )
                return RoleSubscription(**dict(row))
        except asyncpg.UniqueViolationError:
            raise InvalidRequest(f"Order {subscription.order_id} already has a role subscription")

    async def get_role_subscription_by_order(self, order_id: str) -> Optional[RoleSubscription]:
        async with self.db.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM role_subscriptions WHERE order_id = $1", order_id)
            return RoleSubscription(**dict(row)) if row else None

    async def list_due_role_subscriptions(self, now: datetime) -> List[RoleSubscription]:
        async with self.db.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM role_subscriptions
                WHERE status = $1 AND current_period_end <= $2
                ORDER BY current_period_end
            """, SubscriptionStatus.ACTIVE.value, now)
            return [RoleSubscription(**dict(r)) for r in rows]
