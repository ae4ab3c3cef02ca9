"""Publish sinks for normalized events.

Every sink is safe to share between worker threads and treats delivery as
best effort: transport failures are logged, never raised from ``publish``.
"""

import json
import logging
import socket
import sys
import threading
import time
from typing import Protocol, runtime_checkable

from slowbeat.errors import ConfigError
from slowbeat.models import NormalizedEvent

logger = logging.getLogger(__name__)


@runtime_checkable
class EventSink(Protocol):
    def publish(self, event: NormalizedEvent) -> None: ...

    def close(self) -> None: ...


def format_event(event: NormalizedEvent) -> str:
    """Serialize an event to compact JSON (no trailing newline)."""
    return json.dumps(event.to_dict(), separators=(",", ":"), ensure_ascii=False)


class StdoutSink:
    """Writes one JSON line per event to a text stream."""

    def __init__(self, stream=None):
        self._stream = stream or sys.stdout
        self._lock = threading.Lock()

    def publish(self, event: NormalizedEvent) -> None:
        line = format_event(event) + "\n"
        with self._lock:
            self._stream.write(line)
            self._stream.flush()

    def close(self) -> None:
        with self._lock:
            self._stream.flush()


class FileSink:
    """Appends one JSON line per event to a file."""

    def __init__(self, path: str):
        self._path = path
        self._lock = threading.Lock()
        self._file = open(path, "a", encoding="utf-8")

    def publish(self, event: NormalizedEvent) -> None:
        line = format_event(event) + "\n"
        with self._lock:
            if self._file.closed:
                logger.warning("Event dropped, %s is closed", self._path)
                return
            try:
                self._file.write(line)
                self._file.flush()
            except OSError as exc:
                logger.error("Failed to write event to %s: %s", self._path, exc)

    def close(self) -> None:
        with self._lock:
            if not self._file.closed:
                self._file.close()


class UDPSink:
    """Sends each event as one JSON datagram.

    An event that does not fit in a single datagram is dropped, never split,
    so every datagram on the wire is a complete document. Transient send
    errors are retried a few times with a short pause.
    """

    MAX_DATAGRAM = 65507

    def __init__(self, host: str, port: int, max_retries: int = 3, retry_delay: float = 0.05):
        self._address = (host, port)
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._lock = threading.Lock()
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)

    def publish(self, event: NormalizedEvent) -> bool:
        """Send one event. Returns True if the datagram left the socket."""
        payload = format_event(event).encode("utf-8")
        if len(payload) > self.MAX_DATAGRAM:
            logger.warning(
                "Dropping slowlog %d from %s: %d bytes exceeds datagram limit",
                event.slow_id,
                event.ip_port,
                len(payload),
            )
            return False

        last_error = None
        for attempt in range(1, self._max_retries + 2):
            try:
                with self._lock:
                    self._sock.sendto(payload, self._address)
                return True
            except OSError as exc:
                last_error = exc
                logger.debug("UDP send of slowlog %d failed (attempt %d): %s", event.slow_id, attempt, exc)
                if attempt <= self._max_retries:
                    time.sleep(self._retry_delay * attempt)
        logger.error(
            "Dropping slowlog %d from %s after %d attempts: %s",
            event.slow_id,
            event.ip_port,
            self._max_retries + 1,
            last_error,
        )
        return False

    def close(self) -> None:
        with self._lock:
            self._sock.close()


def create_sink(output: dict) -> EventSink:
    """Build the sink described by the ``output`` config section."""
    kind = (output or {}).get("type", "stdout")
    if kind == "stdout":
        return StdoutSink()
    if kind == "file":
        path = output.get("path")
        if not path:
            raise ConfigError("output.path is required for the file sink")
        return FileSink(path)
    if kind == "udp":
        try:
            port = int(output.get("port", 9999))
            max_retries = int(output.get("max_retries", 3))
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid udp output setting: {exc}") from exc
        if not 0 < port < 65536:
            raise ConfigError(f"output.port out of range: {port}")
        return UDPSink(output.get("host", "localhost"), port, max(max_retries, 0))
    raise ConfigError(f"Unknown output type {kind!r}")
