import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional
from ..database.store import Store
from ..exceptions import Forbidden, InvalidRequest, NotFound, OutOfStock, Unavailable
from ..models.product import LIFETIME, Product, ProductPayload, RolePayload, SerialPoolPayload

EDITABLE_FIELDS = {'name', 'description', 'price', 'stock', 'is_active'}
PAYLOAD_FIELDS = {
    'FILE': {'file_url'},
    'SERIAL_POOL': set(),
    'ROLE': {'role_id', 'duration_days', 'auto_renew', 'grace_period_days'},
}

def validate_role_payload(payload: RolePayload):
    """Reject role policies that cannot be honoured"""
    duration = payload.duration_days

    if duration is not None and duration != LIFETIME and duration <= 0:
        raise InvalidRequest("Role duration must be positive, or -1 for lifetime")

    if payload.is_lifetime and payload.auto_renew:
        raise InvalidRequest("A lifetime role cannot auto-renew")

    if payload.auto_renew and (duration is None or duration <= 0):
        raise InvalidRequest("Auto-renewing roles need a duration in days")

    if payload.grace_period_days is not None:
        if not payload.auto_renew:
            raise InvalidRequest("A grace period only applies to auto-renewing roles")
        if not 1 <= payload.grace_period_days <= 30:
            raise InvalidRequest("Grace period must be between 1 and 30 days")

class ProductService:
    def __init__(self, store: Store):
        self.store = store
        self.logger = logging.getLogger(__name__)

    async def _check_owner(self, server_id: str, owner_id: str):
        server = await self.store.get_server(server_id)
        if not server or server.owner_id != owner_id:
            raise Forbidden("You do not own this server")

    @staticmethod
    def _validate(product: Product):
        if product.price <= 0:
            raise InvalidRequest("Price must be greater than zero")
        if product.stock is not None and product.stock < 0:
            raise InvalidRequest("Stock cannot be negative")
        if isinstance(product.payload, RolePayload):
            validate_role_payload(product.payload)

    async def create_product(self, server_id: str, owner_id: str, name: str, price: Decimal,
                             payload: ProductPayload, description: Optional[str] = None,
                             stock: Optional[int] = None) -> Product:
        """Add a product to a shop; a serial pool's stock is the size of its pool"""
        await self._check_owner(server_id, owner_id)

        if isinstance(payload, SerialPoolPayload):
            stock = len(payload.serials)

        product = Product(
            server_id=server_id,
            name=name,
            description=description,
            price=Decimal(str(price)),
            stock=stock,
            payload=payload
        )
        self._validate(product)

        product = await self.store.save_product(product)
        self.logger.info(f"Product {product.product_id} ({product.type.value}) created in shop {server_id}")
        return product

    async def get_product(self, product_id: str) -> Product:
        product = await self.store.get_product(product_id)
        if not product:
            raise NotFound("Product not found")
        return product

    async def list_products(self, server_id: str, active_only: bool = True) -> List[Product]:
        return await self.store.list_products(server_id, active_only)

    async def update_product(self, product_id: str, owner_id: str,
                             changes: Dict[str, Any]) -> Product:
        product = await self.get_product(product_id)
        await self._check_owner(product.server_id, owner_id)

        payload_fields = PAYLOAD_FIELDS[product.type.value]
        unknown = set(changes) - EDITABLE_FIELDS - payload_fields
        if unknown:
            raise InvalidRequest(f"Cannot change {', '.join(sorted(unknown))}")

        if 'stock' in changes and isinstance(product.payload, SerialPoolPayload):
            raise InvalidRequest("Stock of a serial pool follows its serials")

        data = product.model_dump()
        data.update({k: v for k, v in changes.items() if k in EDITABLE_FIELDS})
        data['payload'].update({k: v for k, v in changes.items() if k in payload_fields})
        if 'price' in changes:
            data['price'] = Decimal(str(changes['price']))

        updated = Product(**data)
        self._validate(updated)
        return await self.store.save_product(updated)

    async def delete_product(self, product_id: str, owner_id: str):
        product = await self.get_product(product_id)
        await self._check_owner(product.server_id, owner_id)
        await self.store.delete_product(product_id)
        self.logger.info(f"Product {product_id} deleted from shop {product.server_id}")

    async def add_serials(self, product_id: str, owner_id: str, serials: List[str]) -> Product:
        product = await self.get_product(product_id)
        await self._check_owner(product.server_id, owner_id)

        if not isinstance(product.payload, SerialPoolPayload):
            raise InvalidRequest("Only serial pool products hold serials")

        cleaned = [s.strip() for s in serials if s and s.strip()]
        if not cleaned:
            raise InvalidRequest("No serials given")

        updated = await self.store.add_serials(product_id, cleaned)
        self.logger.info(f"{len(cleaned)} serials added to product {product_id}")
        return updated

    @staticmethod
    def check_purchasable(product: Product):
        if not product.is_active:
            raise Unavailable("This product is not available")
        if not product.in_stock:
            raise OutOfStock("This product is out of stock")

