from dataclasses import dataclass
from ..config import Config
from ..models.order import FileDelivery, Order, RoleGrant, SerialAssignment
from ..models.product import Product
from ..utils.formatters import format_price, format_role_duration

@dataclass
class Notice:
    """Channel-neutral content of a delivery notification"""
    subject: str
    body: str

class Messages:
    @staticmethod
    def review_link(order: Order) -> str:
        return f"{Config.FRONTEND_URL}/review/{order.review_token}"

    @staticmethod
    def delivery_link(order: Order) -> str:
        return f"{Config.FRONTEND_URL}/delivery/{order.delivery_token}"

    @classmethod
    def delivery_notice(cls, order: Order, product: Product, shop_name: str) -> Notice:
        """Describe what the buyer received"""
        item = order.delivery_data.item
        lines = [
            f"✅ Purchase confirmed: {product.name}",
            f"Shop: {shop_name}",
            f"Amount: {format_price(order.amount)}",
            "",
        ]

        if isinstance(item, FileDelivery):
            lines.append(f"📄 Download your file: {item.file_url}")
        elif isinstance(item, SerialAssignment):
            lines.append(f"🔑 Your key: {item.serial}")
            lines.append("Keep it safe and do not share it with anyone.")
            lines.append(f"You can view it again at {cls.delivery_link(order)}")
        elif isinstance(item, RoleGrant):
            lines.append(f"👑 The role has been added to your account ({format_role_duration(item.duration_days)}).")

        lines.append("")
        lines.append(f"⭐ Tell us how it went: {cls.review_link(order)}")

        return Notice(
            subject=f"Order confirmed - {shop_name}",
            body="\n".join(lines)
        )
