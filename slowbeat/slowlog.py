"""Atomic SLOWLOG GET + SLOWLOG RESET exchange and reply parsing."""

import enum
import logging
from dataclasses import dataclass, field

from redis.exceptions import RedisError, ResponseError

from slowbeat.errors import ProtocolError
from slowbeat.models import RawLogEntry

logger = logging.getLogger(__name__)

FETCH_COMMANDS = (("SLOWLOG", "GET"), ("SLOWLOG", "RESET"))


class FetchStatus(enum.Enum):
    OK = "ok"
    GET_FAILED = "get_failed"
    RESET_FAILED = "reset_failed"


@dataclass
class FetchResult:
    status: FetchStatus
    entries: list[RawLogEntry] = field(default_factory=list)
    error: Exception | None = None
    broken: bool = False

    @property
    def ok(self) -> bool:
        return self.status is FetchStatus.OK


def _to_str(value) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if value is None:
        return ""
    return str(value)


def _to_args(value) -> list[str]:
    if not isinstance(value, (list, tuple)):
        raise TypeError("arguments are not a sequence")
    return [_to_str(arg) for arg in value]


def _field(record, index: int, convert, default):
    if index >= len(record):
        return default
    try:
        return convert(record[index])
    except (TypeError, ValueError):
        return default


def parse_entry(record) -> RawLogEntry:
    """Best-effort conversion of one record; missing fields keep their defaults.

    Layout: [id, timestamp, duration, [args...], client_addr, client_name].
    The last two fields are absent on older servers.
    """
    return RawLogEntry(
        slow_id=_field(record, 0, int, 0),
        timestamp=_field(record, 1, int, 0),
        duration=_field(record, 2, int, 0),
        args=_field(record, 3, _to_args, []),
        client_addr=_field(record, 4, _to_str, ""),
        client_name=_field(record, 5, _to_str, ""),
    )


def parse_entries(reply) -> list[RawLogEntry]:
    """Parse a SLOWLOG GET reply. Raises ValueError on an unexpected shape."""
    if not isinstance(reply, (list, tuple)):
        raise ValueError(f"expected a list of records, got {type(reply).__name__}")
    entries = []
    for record in reply:
        if not isinstance(record, (list, tuple)):
            raise ValueError(f"expected a record list, got {type(record).__name__}")
        entries.append(parse_entry(record))
    return entries


def _read(conn):
    """Read one reply. Returns (reply, error, broken)."""
    try:
        return conn.read_response(), None, False
    except ResponseError as exc:
        return None, exc, False
    except (RedisError, OSError, UnicodeDecodeError) as exc:
        return None, exc, True


def exchange(conn) -> FetchResult:
    """Send GET and RESET in one write, then read both replies.

    The RESET reply is always consumed so the connection stays in step with
    the server, even when the GET reply is an error or cannot be parsed.
    """
    try:
        conn.send_packed_command(conn.pack_commands(FETCH_COMMANDS))
    except (RedisError, OSError) as exc:
        return FetchResult(FetchStatus.GET_FAILED, error=exc, broken=True)

    get_reply, get_error, get_broken = _read(conn)
    _, reset_error, reset_broken = _read(conn)
    broken = get_broken or reset_broken

    if get_error is not None:
        return FetchResult(FetchStatus.GET_FAILED, error=get_error, broken=broken)
    try:
        entries = parse_entries(get_reply)
    except ValueError as exc:
        return FetchResult(FetchStatus.GET_FAILED, error=exc, broken=broken)

    # Entries that were not cleared stay on the server for the next cycle.
    if reset_error is not None:
        return FetchResult(FetchStatus.RESET_FAILED, error=reset_error, broken=broken)
    return FetchResult(FetchStatus.OK, entries=entries, broken=broken)


def fetch_and_clear(conn) -> list[RawLogEntry]:
    """Return every current slowlog entry and clear the log.

    Raises ProtocolError when either half of the exchange failed.
    """
    result = exchange(conn)
    if not result.ok:
        raise ProtocolError(
            result.status,
            f"slowlog exchange failed ({result.status.value}): {result.error}",
            broken=result.broken,
        )
    logger.debug("Fetched %d slowlog entries", len(result.entries))
    return result.entries
