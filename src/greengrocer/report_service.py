"""Sales and inventory reports for the owner dashboard.

Revenue figures only count delivered orders; order counts cover every
status.  Date ranges are inclusive calendar days on the order time.
"""

from __future__ import annotations

import logging
import sqlite3
from collections import defaultdict
from datetime import date
from typing import Any, Dict, List, Tuple

from greengrocer.coupon_service import add_months
from greengrocer.dao import OrderDAO, ProductDAO, RatingDAO
from greengrocer.metrics import LOW_STOCK_PRODUCTS
from greengrocer.models import ORDER_STATUSES, PRODUCT_TYPES, STATUS_DELIVERED, Order, round_money

logger = logging.getLogger(__name__)


class ReportService:
    def __init__(self, order_dao: OrderDAO | None = None, product_dao: ProductDAO | None = None,
                 rating_dao: RatingDAO | None = None) -> None:
        self.order_dao = order_dao or OrderDAO()
        self.product_dao = product_dao or ProductDAO()
        self.rating_dao = rating_dao or RatingDAO()

    def _delivered_between(self, start: date, end: date) -> List[Order]:
        try:
            orders = self.order_dao.find_by_date_range(start, end)
        except sqlite3.Error as e:
            logger.error("Report query failed", extra={"extra": {"start": str(start), "end": str(end), "error": str(e)}})
            return []
        return [o for o in orders if o.is_delivered]

    def revenue_by_date(self, start: date, end: date) -> Dict[date, float]:
        revenue: Dict[date, float] = defaultdict(float)
        for order in self._delivered_between(start, end):
            revenue[order.order_time.date()] += order.total_cost
        return {day: round_money(v) for day, v in sorted(revenue.items())}

    def total_revenue(self, start: date, end: date) -> float:
        try:
            return round_money(self.order_dao.total_revenue(start, end))
        except sqlite3.Error as e:
            logger.error("Revenue query failed", extra={"extra": {"error": str(e)}})
            return 0.0

    def order_count_by_status(self) -> Dict[str, int]:
        counts = {status: 0 for status in ORDER_STATUSES}
        try:
            for status in ORDER_STATUSES:
                counts[status] = self.order_dao.count_by_status(status)
        except sqlite3.Error as e:
            logger.error("Status count query failed", extra={"extra": {"error": str(e)}})
        return counts

    def top_selling_products(self, limit: int = 5) -> List[Tuple[str, float, float]]:
        """``(product_name, kg_sold, revenue)`` over all delivered orders, by kg descending."""
        quantities: Dict[str, float] = defaultdict(float)
        revenues: Dict[str, float] = defaultdict(float)
        try:
            for order in self.order_dao.find_by_status(STATUS_DELIVERED):
                for item in self.order_dao.get_items(order.id):
                    quantities[item.product_name] += item.quantity
                    revenues[item.product_name] += item.total_price
        except sqlite3.Error as e:
            logger.error("Top products query failed", extra={"extra": {"error": str(e)}})
            return []
        ranked = sorted(quantities.items(), key=lambda kv: (-kv[1], kv[0]))[:limit]
        return [(name, round(qty, 2), round_money(revenues[name])) for name, qty in ranked]

    def sales_by_product(self, start: date, end: date) -> Dict[str, float]:
        """Kilograms sold per product name."""
        sales: Dict[str, float] = defaultdict(float)
        try:
            for order in self._delivered_between(start, end):
                for item in self.order_dao.get_items(order.id):
                    sales[item.product_name] += item.quantity
        except sqlite3.Error as e:
            logger.error("Sales by product query failed", extra={"extra": {"error": str(e)}})
            return {}
        return {name: round(qty, 2) for name, qty in sales.items()}

    def revenue_by_product_type(self, start: date, end: date) -> Dict[str, float]:
        revenue = {ptype: 0.0 for ptype in PRODUCT_TYPES}
        type_cache: Dict[int, str | None] = {}
        try:
            for order in self._delivered_between(start, end):
                for item in self.order_dao.get_items(order.id):
                    if item.product_id not in type_cache:
                        product = self.product_dao.get_product(item.product_id)
                        type_cache[item.product_id] = product.type if product else None
                    ptype = type_cache[item.product_id]
                    if ptype is not None:
                        revenue[ptype] = revenue.get(ptype, 0.0) + item.total_price
        except sqlite3.Error as e:
            logger.error("Revenue by type query failed", extra={"extra": {"error": str(e)}})
        return {k: round_money(v) for k, v in revenue.items()}

    def monthly_revenue(self, today: date | None = None) -> Dict[str, float]:
        """Revenue per ``YYYY-MM`` for the last 12 months including this one."""
        today = today or date.today()
        first_month = add_months(today.replace(day=1), -11)
        months = {add_months(first_month, i).strftime("%Y-%m"): 0.0 for i in range(12)}
        for order in self._delivered_between(first_month, today):
            key = order.order_time.strftime("%Y-%m")
            if key in months:
                months[key] += order.total_cost
        return {k: round_money(v) for k, v in months.items()}

    def daily_order_counts(self, start: date, end: date) -> Dict[date, int]:
        counts: Dict[date, int] = defaultdict(int)
        try:
            for order in self.order_dao.find_by_date_range(start, end):
                counts[order.order_time.date()] += 1
        except sqlite3.Error as e:
            logger.error("Daily count query failed", extra={"extra": {"error": str(e)}})
        return dict(sorted(counts.items()))

    def average_order_value(self, start: date, end: date) -> float:
        delivered = self._delivered_between(start, end)
        if not delivered:
            return 0.0
        return round_money(sum(o.total_cost for o in delivered) / len(delivered))

    def hourly_order_distribution(self, start: date, end: date) -> Dict[int, int]:
        distribution = {hour: 0 for hour in range(24)}
        try:
            for order in self.order_dao.find_by_date_range(start, end):
                distribution[order.order_time.hour] += 1
        except sqlite3.Error as e:
            logger.error("Hourly distribution query failed", extra={"extra": {"error": str(e)}})
        return distribution

    def dashboard_statistics(self, today: date | None = None) -> Dict[str, Any]:
        today = today or date.today()
        month_start = today.replace(day=1)
        return {
            "today_revenue": self.total_revenue(today, today),
            "month_revenue": self.total_revenue(month_start, today),
            "order_counts": self.order_count_by_status(),
            "average_order_value": self.average_order_value(month_start, today),
        }

    def inventory_report(self) -> List[Dict[str, Any]]:
        try:
            products = self.product_dao.list_products()
        except sqlite3.Error as e:
            logger.error("Inventory query failed", extra={"extra": {"error": str(e)}})
            return []
        report = []
        for p in products:
            low = p.stock <= p.threshold
            report.append({
                "id": p.id,
                "name": p.name,
                "type": p.type,
                "stock": p.stock,
                "threshold": p.threshold,
                "price": p.price,
                "is_low_stock": low,
                "status": "LOW STOCK" if low else "OK",
            })
        LOW_STOCK_PRODUCTS.set(sum(1 for row in report if row["is_low_stock"]))
        return report

    def carrier_performance(self) -> List[Dict[str, Any]]:
        try:
            rows = self.rating_dao.performance_summary()
        except sqlite3.Error as e:
            logger.error("Carrier performance query failed", extra={"extra": {"error": str(e)}})
            return []
        return [
            {
                "carrier_id": r["carrier_id"],
                "carrier_name": r["carrier_name"],
                "average_rating": round(float(r["average_rating"]), 2),
                "total_ratings": r["total_ratings"],
                "latest_comment": r["latest_comment"],
                "latest_order_id": r["latest_order_id"],
            }
            for r in rows
        ]
