from typing import Dict, Any
from datetime import date, datetime, time, timedelta
import pytz
from decimal import Decimal
from ..config import Config
from ..database.store import Store

class ReportService:
    """Sales reports per shop, built from the ledger"""

    def __init__(self, store: Store, timezone: str = Config.TIMEZONE):
        self.store = store
        self.tz = pytz.timezone(timezone)

    def _today(self) -> date:
        return datetime.now(self.tz).date()

    async def get_daily_report(self, server_id: str) -> Dict[str, Any]:
        today = self._today()
        return await self._generate_report(server_id, today, today)

    async def get_weekly_report(self, server_id: str) -> Dict[str, Any]:
        today = self._today()
        start_date = today - timedelta(days=7)
        return await self._generate_report(server_id, start_date, today)

    async def get_monthly_report(self, server_id: str) -> Dict[str, Any]:
        today = self._today()
        start_date = today.replace(day=1)
        return await self._generate_report(server_id, start_date, today)

    def _bounds(self, start_date: date, end_date: date):
        """Local calendar days -> [since, until) in UTC"""
        since = self.tz.localize(datetime.combine(start_date, time.min))
        until = self.tz.localize(datetime.combine(end_date + timedelta(days=1), time.min))
        return since.astimezone(pytz.utc), until.astimezone(pytz.utc)

    async def _generate_report(self, server_id: str, start_date: date,
                               end_date: date) -> Dict[str, Any]:
        since, until = self._bounds(start_date, end_date)
        entries = await self.store.list_ledger_entries(server_id, since=since, until=until)

        total_income = sum((e.amount for e in entries), Decimal("0"))
        total_commission = sum((e.commission_amount for e in entries), Decimal("0"))

        daily: Dict[str, Dict[str, Any]] = {}
        for entry in entries:
            day = entry.created_at.astimezone(self.tz).date().isoformat()
            bucket = daily.setdefault(day, {'orders': 0, 'income': Decimal("0")})
            bucket['orders'] += 1
            bucket['income'] += entry.amount

        return {
            'server_id': server_id,
            'start_date': start_date,
            'end_date': end_date,
            'total_orders': len(entries),
            'total_income': total_income,
            'total_commission': total_commission,
            'net_income': total_income - total_commission,
            'daily': dict(sorted(daily.items())),
        }

    def format_report(self, report: Dict[str, Any]) -> str:
        """Plain-text rendering for owner notifications"""
        lines = [
            f"📊 Sales report {report['start_date']} → {report['end_date']}",
            f"Orders: {report['total_orders']}",
            f"Income: {report['total_income']:.2f}",
            f"Commission: {report['total_commission']:.2f}",
            f"Net: {report['net_income']:.2f}",
        ]
        for day, bucket in report['daily'].items():
            lines.append(f"  {day}: {bucket['orders']} orders, {bucket['income']:.2f}")
        return "\n".join(lines)
