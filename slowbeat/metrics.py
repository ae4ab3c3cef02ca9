"""Thread-safe per-backend counters for the collector."""

import logging
import threading
import time

logger = logging.getLogger(__name__)

COUNTERS = ("cycles", "skipped", "errors", "entries", "published")


class CollectorMetrics:
    """Counts collection cycles, skips, errors and events per backend."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._backends: dict[str, dict[str, int]] = {}
        self._error_kinds: dict[str, int] = {}
        self._start_time = time.monotonic()

    def _counters(self, address: str) -> dict[str, int]:
        counters = self._backends.get(address)
        if counters is None:
            counters = dict.fromkeys(COUNTERS, 0)
            self._backends[address] = counters
        return counters

    def increment(self, address: str, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters(address)[name] += amount

    def record_cycle(self, address: str) -> None:
        self.increment(address, "cycles")

    def record_skipped(self, address: str) -> None:
        self.increment(address, "skipped")

    def record_error(self, address: str, exc: BaseException) -> None:
        kind = type(exc).__name__
        with self._lock:
            self._counters(address)["errors"] += 1
            self._error_kinds[kind] = self._error_kinds.get(kind, 0) + 1

    def record_entries(self, address: str, read: int, published: int) -> None:
        with self._lock:
            counters = self._counters(address)
            counters["entries"] += read
            counters["published"] += published

    def snapshot(self) -> dict:
        """Point-in-time copy of every counter plus uptime."""
        with self._lock:
            backends = {address: dict(c) for address, c in self._backends.items()}
            totals = dict.fromkeys(COUNTERS, 0)
            for counters in backends.values():
                for name, value in counters.items():
                    totals[name] += value
            return {
                "backends": backends,
                "totals": totals,
                "error_kinds": dict(self._error_kinds),
                "uptime_seconds": round(time.monotonic() - self._start_time, 1),
            }

    def log_snapshot(self) -> None:
        snap = self.snapshot()
        totals = snap["totals"]
        logger.info(
            "[metrics] cycles=%d skipped=%d errors=%d entries=%d published=%d uptime=%.0fs",
            totals["cycles"],
            totals["skipped"],
            totals["errors"],
            totals["entries"],
            totals["published"],
            snap["uptime_seconds"],
        )
