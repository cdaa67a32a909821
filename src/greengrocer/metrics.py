"""In‑process metrics rendered in the Prometheus text exposition format.

Counters, gauges and histograms register themselves in a module level
registry when constructed.  Services update the module constants defined
at the bottom of this file; :func:`generate_metrics_text` renders all of
them, which the CLI exposes from the owner menu.
"""

from collections import defaultdict
from threading import Lock
from typing import Dict, Iterable, List, Tuple

LabelKey = Tuple[str, ...]


class Metric:
    """Base class holding the name, help text and label schema."""

    kind = "untyped"

    def __init__(self, name: str, description: str, label_names: Iterable[str] = ()):
        self.name = name
        self.description = description
        self.label_names = list(label_names)
        self._lock = Lock()
        _METRIC_REGISTRY.append(self)

    def _key(self, labels: Dict[str, str]) -> LabelKey:
        return tuple(str(labels.get(k, "")) for k in self.label_names)

    def _render_labels(self, key: LabelKey, extra: str = "") -> str:
        pairs = [f'{n}="{v}"' for n, v in zip(self.label_names, key)]
        if extra:
            pairs.append(extra)
        return "{" + ",".join(pairs) + "}" if pairs else ""

    def _header(self) -> List[str]:
        return [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.kind}"]

    def samples(self) -> List[str]:
        raise NotImplementedError

    def to_prometheus(self) -> List[str]:
        with self._lock:
            return self._header() + self.samples()


class Counter(Metric):
    """Monotonic counter; ``ORDERS_PLACED_TOTAL.inc(product_type="fruit")``."""

    kind = "counter"

    def __init__(self, name: str, description: str, label_names: Iterable[str] = ()):
        super().__init__(name, description, label_names)
        self._values: Dict[LabelKey, float] = defaultdict(float)

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        if amount < 0:
            raise ValueError("Counters can only increase")
        key = self._key(labels)
        with self._lock:
            self._values[key] += amount

    def value(self, **labels: str) -> float:
        with self._lock:
            return self._values.get(self._key(labels), 0.0)

    def samples(self) -> List[str]:
        return [f"{self.name}{self._render_labels(k)} {v}" for k, v in self._values.items()]


class Gauge(Metric):
    """Point‑in‑time value that may go up or down."""

    kind = "gauge"

    def __init__(self, name: str, description: str, label_names: Iterable[str] = ()):
        super().__init__(name, description, label_names)
        self._values: Dict[LabelKey, float] = {}

    def set(self, value: float, **labels: str) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = float(value)

    def value(self, **labels: str) -> float:
        with self._lock:
            return self._values.get(self._key(labels), 0.0)

    def samples(self) -> List[str]:
        return [f"{self.name}{self._render_labels(k)} {v}" for k, v in self._values.items()]


class Histogram(Metric):
    """Bucketed observations; values above the last bound land in ``+Inf``."""

    kind = "histogram"

    def __init__(
        self,
        name: str,
        description: str,
        label_names: Iterable[str] = (),
        buckets: Iterable[float] = (0.01, 0.05, 0.1, 0.5, 1.0, 5.0),
    ):
        super().__init__(name, description, label_names)
        self.buckets = sorted(float(b) for b in buckets)
        # Per label key: non-cumulative count for each bucket
        self._counts: Dict[LabelKey, List[int]] = defaultdict(lambda: [0] * len(self.buckets))
        self._sums: Dict[LabelKey, float] = defaultdict(float)
        self._totals: Dict[LabelKey, int] = defaultdict(int)

    def observe(self, value: float, **labels: str) -> None:
        key = self._key(labels)
        with self._lock:
            for idx, upper in enumerate(self.buckets):
                if value <= upper:
                    self._counts[key][idx] += 1
                    break
            self._totals[key] += 1
            self._sums[key] += float(value)

    def count(self, **labels: str) -> int:
        with self._lock:
            return self._totals.get(self._key(labels), 0)

    def samples(self) -> List[str]:
        lines: List[str] = []
        for key, total in self._totals.items():
            cumulative = 0
            for idx, upper in enumerate(self.buckets):
                cumulative += self._counts[key][idx]
                bound = self._render_labels(key, 'le="' + str(upper) + '"')
                lines.append(f"{self.name}_bucket{bound} {cumulative}")
            inf_bound = self._render_labels(key, 'le="+Inf"')
            lines.append(f"{self.name}_bucket{inf_bound} {total}")
            lines.append(f"{self.name}_sum{self._render_labels(key)} {self._sums[key]}")
            lines.append(f"{self.name}_count{self._render_labels(key)} {total}")
        return lines


_METRIC_REGISTRY: List[Metric] = []


def generate_metrics_text() -> bytes:
    """Render every registered metric."""
    lines: List[str] = []
    for metric in _METRIC_REGISTRY:
        lines.extend(metric.to_prometheus())
    return "\n".join(lines).encode("utf-8")


# -----------------------------------------------------------------------------
# Application metrics
# -----------------------------------------------------------------------------

ORDERS_PLACED_TOTAL = Counter(
    name="orders_placed_total",
    description="Orders successfully placed by customers",
)

ORDER_STATUS_CHANGES_TOTAL = Counter(
    name="order_status_changes_total",
    description="Order status transitions, labelled by target status",
    label_names=["status"],
)

CHECKOUT_ERROR_TOTAL = Counter(
    name="checkout_error_total",
    description="Checkout attempts rejected, labelled by reason",
    label_names=["type"],
)

CHECKOUT_DURATION_SECONDS = Histogram(
    name="checkout_duration_seconds",
    description="Time spent validating and persisting an order",
    buckets=[0.01, 0.05, 0.1, 0.2, 0.5, 1.0, 2.0],
)

COUPONS_REDEEMED_TOTAL = Counter(
    name="coupons_redeemed_total",
    description="Coupons applied to placed orders",
)

MESSAGES_SENT_TOTAL = Counter(
    name="messages_sent_total",
    description="Messages sent, labelled by sender role",
    label_names=["role"],
)

LOW_STOCK_PRODUCTS = Gauge(
    name="low_stock_products",
    description="Products at or below their stock threshold at the last inventory report",
)
