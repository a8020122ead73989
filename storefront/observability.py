import json
import logging
import time
from collections import defaultdict
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any

_request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)

logger = logging.getLogger("storefront.orders")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", _request_id_ctx.get()),
            "order_ref": getattr(record, "order_ref", None),
            "actor": getattr(record, "actor", None),
        }
        fields = getattr(record, "fields", None)
        if fields:
            payload["fields"] = fields
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_logging(level: int = logging.INFO) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)


def _label_key(labels: dict[str, Any]) -> str:
    return ",".join(f"{key}={labels[key]}" for key in sorted(labels))


@dataclass
class MetricsSnapshot:
    counters: dict[str, int]
    timings: dict[str, dict[str, float]]
    labeled: dict[str, dict[str, int]] = field(default_factory=dict)


class MetricsStore:
    """Process-local counters and timings.

    Counters may carry labels (``reason=AMOUNT_MISMATCH``). The unlabeled
    total is always kept alongside the per-label breakdown.
    """

    def __init__(self) -> None:
        self._counters: dict[str, int] = defaultdict(int)
        self._labeled: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._timings: dict[str, list[float]] = defaultdict(list)

    def increment(self, name: str, amount: int = 1, **labels: Any) -> None:
        self._counters[name] += amount
        if labels:
            self._labeled[name][_label_key(labels)] += amount

    def counter(self, name: str, **labels: Any) -> int:
        if not labels:
            return self._counters.get(name, 0)
        return self._labeled.get(name, {}).get(_label_key(labels), 0)

    def observe(self, name: str, value_s: float) -> None:
        self._timings[name].append(value_s)

    def reset(self) -> None:
        self._counters.clear()
        self._labeled.clear()
        self._timings.clear()

    def snapshot(self) -> MetricsSnapshot:
        timings: dict[str, dict[str, float]] = {}
        for key, values in self._timings.items():
            if not values:
                continue
            timings[key] = {
                "count": float(len(values)),
                "total_s": sum(values),
                "max_s": max(values),
            }
        return MetricsSnapshot(
            counters=dict(self._counters),
            timings=timings,
            labeled={name: dict(entries) for name, entries in self._labeled.items()},
        )


metrics_store = MetricsStore()



def set_request_id(request_id: str) -> None:
    _request_id_ctx.set(request_id)


def get_request_id() -> str | None:
    return _request_id_ctx.get()


def log_event(
    message: str,
    *,
    level: int = logging.INFO,
    order_ref: str | None = None,
    actor: str | None = None,
    exc_info: bool = False,
    **fields: Any,
) -> None:
    logger.log(
        level,
        message,
        exc_info=exc_info,
        extra={
            "request_id": get_request_id(),
            "order_ref": order_ref,
            "actor": actor,
            "fields": fields or None,
        },
    )


class observe_timing:
    def __init__(self, metric_name: str) -> None:
        self.metric_name = metric_name
        self._start = 0.0

    def __enter__(self) -> "observe_timing":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        elapsed = time.perf_counter() - self._start
        metrics_store.observe(self.metric_name, elapsed)
