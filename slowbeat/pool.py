"""Per-backend Redis connection pool.

Connections are dialed lazily. Every fresh connection is authenticated by the
client handshake and then gets the slowlog settings pushed in one MULTI/EXEC
transaction before it is handed out. Idle connections are PINGed before reuse.
"""

import logging
import threading
import time
import types
from collections import deque

import redis
from redis.exceptions import RedisError, ResponseError

from slowbeat.errors import ConfigError, ConfigPushError, ConnectError, PoolExhaustedError

logger = logging.getLogger(__name__)

SLOWER_THAN_KEY = "slowlog-log-slower-than"
MAX_LEN_KEY = "slowlog-max-len"


def parse_address(address: str) -> tuple[str, int]:
    """Split ``host:port``. Raises ConfigError on a malformed address."""
    host, sep, port = address.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ConfigError(f"Invalid backend address {address!r}, expected host:port")
    return host.strip("[]"), int(port)


class BackendPool:
    """Bounded pool of connections to a single backend."""

    def __init__(
        self,
        address: str,
        password: str = "",
        slower_than: int = 0,
        max_len: int = 500,
        max_idle: int = 3,
        max_active: int = 3,
        idle_timeout: float = 240.0,
        connect_timeout: float = 3.0,
        read_timeout: float = 3.0,
        connection_factory=None,
        clock=time.monotonic,
    ):
        self.address = address
        self._host, self._port = parse_address(address)
        self._password = password
        self._slower_than = slower_than
        self._max_len = max_len
        self._max_idle = max_idle
        self._max_active = max_active
        self._idle_timeout = idle_timeout
        self._connect_timeout = connect_timeout
        self._read_timeout = read_timeout
        self._connection_factory = connection_factory or self._new_connection
        self._clock = clock
        self._lock = threading.Lock()
        self._idle: deque = deque()  # (connection, returned_at)
        self._open = 0

    @property
    def idle_count(self) -> int:
        with self._lock:
            return len(self._idle)

    @property
    def open_count(self) -> int:
        with self._lock:
            return self._open

    def _new_connection(self):
        return redis.Connection(
            host=self._host,
            port=self._port,
            password=self._password or None,
            socket_connect_timeout=self._connect_timeout,
            socket_timeout=self._read_timeout,
            protocol=2,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def acquire(self):
        """Hand out a live, configured connection.

        Raises ConnectError, PoolExhaustedError or ConfigPushError.
        """
        while True:
            conn = self._take_idle()
            if conn is None:
                break
            try:
                self._ping(conn)
                return conn
            except (RedisError, OSError) as exc:
                logger.warning("%s: idle connection failed PING, discarding: %s", self.address, exc)
                self._discard(conn)

        with self._lock:
            if self._open >= self._max_active:
                raise PoolExhaustedError(
                    self.address, f"pool exhausted ({self._max_active} connections open)"
                )
            self._open += 1
        try:
            return self._dial()
        except Exception:
            with self._lock:
                self._open -= 1
            raise

    def release(self, conn) -> None:
        """Return a healthy connection to the idle set."""
        with self._lock:
            if len(self._idle) < self._max_idle:
                self._idle.append((conn, self._clock()))
                return
        self._discard(conn)

    def invalidate(self, conn) -> None:
        """Close a connection that must not be reused."""
        self._discard(conn)

    def close(self) -> None:
        """Close every idle connection."""
        with self._lock:
            idle = [conn for conn, _ in self._idle]
            self._idle.clear()
        for conn in idle:
            self._discard(conn)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _take_idle(self):
        """Pop the most recently returned idle connection, pruning expired ones."""
        expired = []
        conn = None
        with self._lock:
            if self._idle_timeout > 0:
                deadline = self._clock() - self._idle_timeout
                while self._idle and self._idle[0][1] <= deadline:
                    expired.append(self._idle.popleft()[0])
            if self._idle:
                conn = self._idle.pop()[0]
        for stale in expired:
            logger.debug("%s: closing expired idle connection", self.address)
            self._discard(stale)
        return conn

    def _discard(self, conn) -> None:
        with self._lock:
            self._open -= 1
        try:
            conn.disconnect()
        except OSError:
            pass

    def _ping(self, conn) -> None:
        conn.send_command("PING")
        conn.read_response()

    def _dial(self):
        conn = self._connection_factory()
        try:
            conn.connect()
        except (RedisError, OSError) as exc:
            logger.error("%s: error connecting: %s", self.address, exc)
            conn.disconnect()
            raise ConnectError(self.address, f"connect failed: {exc}") from exc

        try:
            reply = self._push_settings(conn)
        except ConfigPushError:
            conn.disconnect()
            raise
        except (RedisError, OSError) as exc:
            conn.disconnect()
            raise ConfigPushError(self.address, f"config set failed: {exc}") from exc
        logger.info("%s: config set %s", self.address, reply)
        return conn

    def _settings_commands(self) -> list[tuple]:
        commands = [("MULTI",)]
        if self._slower_than > 0:
            commands.append(("CONFIG", "SET", SLOWER_THAN_KEY, self._slower_than))
        if self._max_len > 0:
            commands.append(("CONFIG", "SET", MAX_LEN_KEY, self._max_len))
        commands.append(("SLOWLOG", "RESET"))
        commands.append(("EXEC",))
        return commands

    def _push_settings(self, conn):
        """Apply slowlog settings and clear the log in a single transaction."""
        commands = self._settings_commands()
        conn.send_packed_command(conn.pack_commands(commands))

        # One reply per command; read them all even after an error.
        errors = []
        reply = None
        for _ in commands:
            try:
                reply = conn.read_response()
            except ResponseError as exc:
                errors.append(exc)
                reply = None
        if isinstance(reply, list):
            errors.extend(item for item in reply if isinstance(item, Exception))
        elif not errors:
            errors.append(ResponseError(f"unexpected EXEC reply {reply!r}"))

        if errors:
            logger.error("%s: error occurred when sending config set: %s", self.address, errors[0])
            raise ConfigPushError(self.address, f"config set rejected: {errors[0]}")
        return reply


def build_pools(config) -> types.MappingProxyType:
    """Build one pool per configured backend, keyed by address.

    Pools dial lazily, so unreachable backends do not prevent startup.
    """
    if not config.backends:
        raise ConfigError("No backends configured")

    pools = {}
    for address in config.backends:
        if address in pools:
            logger.warning("Duplicate backend %s ignored", address)
            continue
        pools[address] = BackendPool(
            address,
            password=config.password,
            slower_than=config.slower_than,
            max_len=config.max_len,
            max_idle=config.max_idle,
            max_active=config.max_active,
            idle_timeout=config.idle_timeout,
            connect_timeout=config.connect_timeout,
            read_timeout=config.read_timeout,
        )
        logger.info("Backend registered: %s", address)
    return types.MappingProxyType(pools)
