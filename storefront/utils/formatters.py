from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
import pytz
from ..config import Config
from ..models.product import LIFETIME

def format_price(amount: Decimal, currency: str = Config.CURRENCY) -> str:
    return f"{amount:,.2f} {currency.upper()}"

def format_datetime(dt: datetime) -> str:
    """Render a timestamp in the shop timezone"""
    shop_tz = pytz.timezone(Config.TIMEZONE)
    if dt.tzinfo is None:
        dt = pytz.utc.localize(dt)
    return dt.astimezone(shop_tz).strftime("%Y-%m-%d %H:%M:%S")

def to_minor_units(amount: Decimal) -> int:
    """9.99 -> 999, rounding half up"""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

def format_role_duration(duration_days: Optional[int], auto_renew: bool = False) -> str:
    if duration_days is None or duration_days == LIFETIME:
        return "Permanent (lifetime)"

    text = "1 day" if duration_days == 1 else f"{duration_days} days"
    return f"{text} (renews automatically)" if auto_renew else text
