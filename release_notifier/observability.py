import json
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, push_to_gateway

_RESERVED_ATTRS = frozenset((
    "args", "msg", "levelname", "levelno", "pathname", "filename",
    "module", "exc_info", "exc_text", "stack_info", "lineno",
    "funcName", "created", "msecs", "relativeCreated", "thread",
    "threadName", "processName", "process", "name", "taskName",
))


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload = {
            "level": record.levelname,
            "time": int(time.time()),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        # attach extras
        for k, v in record.__dict__.items():
            if k.startswith("_") or k in _RESERVED_ATTRS:
                continue
            payload[k] = v
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO", fmt: str = "text") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    root = logging.getLogger()
    if fmt.lower() == "json":
        for h in list(root.handlers):
            h.setFormatter(JsonFormatter())


@dataclass
class Metrics:
    pushgateway: Optional[str] = None
    job: str = "release_notifier"
    grouping_key: Dict[str, str] = field(default_factory=dict)
    registry: CollectorRegistry = field(default_factory=CollectorRegistry)

    def __post_init__(self) -> None:
        self.cycles = Counter(
            "release_notifier_cycles_total", "Notification cycles by outcome",
            labelnames=("outcome",), registry=self.registry,
        )
        self.deliveries = Counter(
            "release_notifier_deliveries_total", "Per-recipient deliveries by outcome",
            labelnames=("outcome",), registry=self.registry,
        )
        self.release_fetches = Counter(
            "release_notifier_release_fetches_total", "Release lookups by result",
            labelnames=("result",), registry=self.registry,
        )
        self.cycle_seconds = Histogram(
            "release_notifier_cycle_seconds", "Duration of a notification cycle",
            buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300), registry=self.registry,
        )

    def inc_cycle(self, outcome: str) -> None:
        self.cycles.labels(outcome).inc()

    def inc_delivery(self, outcome: str) -> None:
        self.deliveries.labels(outcome).inc()

    def inc_release_fetch(self, result: str) -> None:
        self.release_fetches.labels(result).inc()

    def push(self) -> None:
        if not self.pushgateway:
            return
        try:
            push_to_gateway(self.pushgateway, job=self.job, registry=self.registry, grouping_key=self.grouping_key)
        except Exception:
            logging.getLogger(__name__).debug("pushgateway failed", exc_info=True)

    # Lightweight timer context manager
    def timer(self):
        class _T:
            def __init__(self, outer: "Metrics"):
                self.outer = outer
                self.start = 0.0

            def __enter__(self):
                self.start = time.perf_counter()
                return self

            def __exit__(self, exc_type, exc, tb):
                self.outer.cycle_seconds.observe(max(0.0, time.perf_counter() - self.start))

        return _T(self)
