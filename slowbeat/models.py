"""Slowlog record and event models."""

from dataclasses import dataclass, field
from datetime import datetime, timezone

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class RawLogEntry:
    """One SLOWLOG GET record as returned by the backend."""

    slow_id: int = 0
    timestamp: int = 0
    duration: int = 0
    args: list[str] = field(default_factory=list)
    client_addr: str = ""
    client_name: str = ""


@dataclass
class NormalizedEvent:
    type: str = ""
    timestamp: datetime = EPOCH
    log_timestamp: datetime = EPOCH
    slow_id: int = 0
    cmd: str = ""
    key: str = ""
    args: str = ""
    duration: int = 0
    ip_port: str = ""
    client_ip: str = ""
    client_port: str = ""
    client_name: str = ""

    def to_dict(self) -> dict:
        """Render the event with its published field names."""
        return {
            "type": self.type,
            "@timestamp": self.timestamp.isoformat(),
            "@log_timestamp": self.log_timestamp.isoformat(),
            "slow_id": self.slow_id,
            "cmd": self.cmd,
            "key": self.key,
            "args": self.args,
            "duration": self.duration,
            "ip_port": self.ip_port,
            "clientip": self.client_ip,
            "clientport": self.client_port,
            "clientname": self.client_name,
        }
