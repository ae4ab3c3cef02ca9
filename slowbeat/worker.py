"""Per-backend collection cycle: acquire, fetch and clear, normalize, publish."""

import enum
import logging
import threading

from redis.exceptions import RedisError

from slowbeat.errors import CollectorError, ProtocolError
from slowbeat.metrics import CollectorMetrics
from slowbeat.normalizer import DEFAULT_SOURCE, normalize
from slowbeat.slowlog import fetch_and_clear

logger = logging.getLogger(__name__)


class WorkerState(enum.Enum):
    IDLE = "idle"
    ACQUIRING = "acquiring"
    READING = "reading"
    NORMALIZING = "normalizing"
    PUBLISHING = "publishing"
    ERROR = "error"


class CollectionWorker:
    """Runs collection cycles for one backend, never more than one at a time.

    ``claim()`` takes the in-flight gate without blocking; the cycle started
    with ``run_claimed()`` releases it when it finishes, whatever happens.
    """

    def __init__(
        self,
        address: str,
        pool,
        sink,
        source: str = DEFAULT_SOURCE,
        metrics: CollectorMetrics | None = None,
    ):
        self.address = address
        self._pool = pool
        self._sink = sink
        self._source = source
        self._metrics = metrics or CollectorMetrics()
        self._gate = threading.Lock()
        self.state = WorkerState.IDLE

    @property
    def busy(self) -> bool:
        return self._gate.locked()

    def claim(self) -> bool:
        """Mark a cycle as in flight. False if one is already running."""
        return self._gate.acquire(blocking=False)

    def run_claimed(self) -> int:
        """Run one cycle for a claimed gate. Returns the number of events published."""
        try:
            self._metrics.record_cycle(self.address)
            return self._collect()
        finally:
            self.state = WorkerState.IDLE
            self._gate.release()

    def collect_once(self) -> int | None:
        """Claim and run a cycle in the calling thread. None if the backend is busy."""
        if not self.claim():
            return None
        return self.run_claimed()

    def _fail(self, stage: str, exc: BaseException) -> int:
        self.state = WorkerState.ERROR
        self._metrics.record_error(self.address, exc)
        logger.error("%s: %s failed: %s", self.address, stage, exc)
        return 0

    def _collect(self) -> int:
        self.state = WorkerState.ACQUIRING
        try:
            conn = self._pool.acquire()
        except CollectorError as exc:
            return self._fail("connection", exc)

        self.state = WorkerState.READING
        try:
            entries = fetch_and_clear(conn)
        except ProtocolError as exc:
            if exc.broken:
                self._pool.invalidate(conn)
            else:
                self._pool.release(conn)
            return self._fail("slowlog exchange", exc)
        except (RedisError, OSError) as exc:
            self._pool.invalidate(conn)
            return self._fail("slowlog exchange", exc)
        except Exception:
            self._pool.invalidate(conn)
            raise
        self._pool.release(conn)

        logger.info("%s: read %d slowlog entries", self.address, len(entries))
        published = 0
        for entry in entries:
            self.state = WorkerState.NORMALIZING
            try:
                event = normalize(entry, self.address, self._source)
            except Exception:
                logger.exception("%s: skipping unreadable slowlog entry %r", self.address, entry)
                continue
            self.state = WorkerState.PUBLISHING
            self._sink.publish(event)
            published += 1

        self._metrics.record_entries(self.address, len(entries), published)
        return published
