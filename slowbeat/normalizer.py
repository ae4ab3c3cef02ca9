"""Turn raw slowlog records into normalized events.

``normalize`` never raises: anything it cannot interpret falls back to an
empty string, zero, or the Unix epoch.
"""

import json
from datetime import datetime, timezone

from slowbeat.models import EPOCH, NormalizedEvent, RawLogEntry

DEFAULT_SOURCE = "slowbeat"


def log_time(timestamp: int) -> datetime:
    """Interpret unix seconds as a UTC instant."""
    try:
        return datetime.fromtimestamp(timestamp, tz=timezone.utc)
    except (OverflowError, OSError, TypeError, ValueError):
        return EPOCH


def split_client(client_addr: str) -> tuple[str, str]:
    """Split ``ip:port`` on the last colon. No colon yields two empty strings."""
    host, sep, port = (client_addr or "").rpartition(":")
    if not sep:
        return "", ""
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host, port


def extra_args(args: list[str]) -> str:
    """JSON array of everything after the key, or "" when there is nothing."""
    if len(args) < 3:
        return ""
    return json.dumps(list(args[2:]), separators=(",", ":"), ensure_ascii=False)


def normalize(
    entry: RawLogEntry,
    address: str,
    source: str = DEFAULT_SOURCE,
    now: datetime | None = None,
) -> NormalizedEvent:
    args = entry.args or []
    client_ip, client_port = split_client(entry.client_addr)
    return NormalizedEvent(
        type=source,
        timestamp=now or datetime.now(timezone.utc),
        log_timestamp=log_time(entry.timestamp),
        slow_id=entry.slow_id,
        cmd=args[0] if len(args) >= 1 else "",
        key=args[1] if len(args) >= 2 else "",
        args=extra_args(args),
        duration=entry.duration,
        ip_port=address,
        client_ip=client_ip,
        client_port=client_port,
        client_name=entry.client_name or "",
    )
