"""Shared fakes and fixtures for the slowbeat test suite."""

import socket
import threading

import pytest
import redis

from slowbeat.models import RawLogEntry


class FakeConnection:
    """Stands in for redis.Connection: records commands, replays scripted replies.

    A reply that is an Exception instance is raised from ``read_response``.
    ``block`` (a threading.Event) makes the first read wait until it is set.
    """

    def __init__(self, replies=None, connect_error=None, block=None):
        self.replies = list(replies or [])
        self.connect_error = connect_error
        self.block = block
        self.sent: list[tuple] = []
        self.reads = 0
        self.connected = False
        self.disconnects = 0

    def connect(self):
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    def disconnect(self):
        self.connected = False
        self.disconnects += 1

    def pack_commands(self, commands):
        return [tuple(command) for command in commands]

    def send_packed_command(self, packed, check_health=True):
        self.sent.extend(packed)

    def send_command(self, *args, **kwargs):
        self.sent.append(args)

    def read_response(self):
        if self.block is not None:
            self.block.wait(timeout=5)
        self.reads += 1
        if not self.replies:
            raise redis.ConnectionError("no scripted reply")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def handshake_replies(settings: int = 2) -> list:
    """Replies to MULTI, ``settings`` CONFIG SETs, SLOWLOG RESET and EXEC."""
    return ["OK"] + ["QUEUED"] * (settings + 1) + [["OK"] * (settings + 1)]


class FakeFactory:
    """Connection factory handing out pre-built FakeConnections in order."""

    def __init__(self, *connections):
        self.connections = list(connections)
        self.created: list[FakeConnection] = []

    def __call__(self):
        conn = self.connections.pop(0)
        self.created.append(conn)
        return conn


class RecordingSink:
    def __init__(self):
        self.events = []
        self.closed = False
        self._lock = threading.Lock()

    def publish(self, event):
        with self._lock:
            self.events.append(event)

    def close(self):
        self.closed = True


class StaticPool:
    """Pool that always hands out the same connection and records what came back."""

    def __init__(self, conn=None, error=None):
        self.conn = conn
        self.error = error
        self.acquired = 0
        self.released = []
        self.invalidated = []

    def acquire(self):
        self.acquired += 1
        if self.error is not None:
            raise self.error
        return self.conn

    def release(self, conn):
        self.released.append(conn)

    def invalidate(self, conn):
        self.invalidated.append(conn)


class _Status(str):
    """Simple-string reply (``+OK``)."""


class _Error(str):
    """Error reply (``-ERR ...``)."""


def _encode(value) -> bytes:
    if isinstance(value, _Status):
        return b"+" + value.encode() + b"\r\n"
    if isinstance(value, _Error):
        return b"-" + value.encode() + b"\r\n"
    if value is None:
        return b"$-1\r\n"
    if isinstance(value, int):
        return b":%d\r\n" % value
    if isinstance(value, str):
        value = value.encode("utf-8")
    if isinstance(value, bytes):
        return b"$%d\r\n%s\r\n" % (len(value), value)
    return b"*%d\r\n" % len(value) + b"".join(_encode(item) for item in value)


def _parse_request(buf: bytes):
    """Pull one ``*N`` array of bulk strings off ``buf``. Returns (args, rest)."""
    if not buf.startswith(b"*") or b"\r\n" not in buf:
        return None, buf
    header, rest = buf.split(b"\r\n", 1)
    args = []
    for _ in range(int(header[1:])):
        if b"\r\n" not in rest:
            return None, buf
        size_line, rest = rest.split(b"\r\n", 1)
        size = int(size_line[1:])
        if len(rest) < size + 2:
            return None, buf
        args.append(rest[:size])
        rest = rest[size + 2:]
    return args, rest


class FakeRedisServer:
    """Loopback server speaking enough RESP2 to stand in for an old Redis.

    It behaves like a 5.x server: HELLO and CLIENT SETINFO are unknown,
    AUTH takes a single password, MULTI/EXEC queues commands, and SLOWLOG
    GET/RESET work on ``slowlog`` (a list of reply records). Every command
    received is recorded in ``commands`` with its arguments as bytes.
    """

    def __init__(self, password: str = ""):
        self.password = password
        self.slowlog: list = []
        self.settings: dict[str, bytes] = {}
        self.commands: list[tuple] = []
        self._lock = threading.Lock()
        self._shutdown = threading.Event()
        self._clients: list[socket.socket] = []
        self._srv = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._srv.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._srv.settimeout(1.0)
        self._srv.bind(("127.0.0.1", 0))
        self._srv.listen(5)
        self.host, self.port = self._srv.getsockname()
        self.address = f"{self.host}:{self.port}"
        threading.Thread(target=self._accept_loop, daemon=True).start()

    def command_names(self) -> list[str]:
        with self._lock:
            return [args[0].decode().upper() for args in self.commands]

    def drop_clients(self) -> None:
        """Close every client socket, as a server restart would."""
        with self._lock:
            clients, self._clients = self._clients, []
        for conn in clients:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            conn.close()

    def stop(self) -> None:
        self._shutdown.set()
        self.drop_clients()

    def _accept_loop(self):
        while not self._shutdown.is_set():
            try:
                conn, _ = self._srv.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            with self._lock:
                self._clients.append(conn)
            threading.Thread(target=self._handle, args=(conn,), daemon=True).start()
        self._srv.close()

    def _handle(self, conn):
        buf = b""
        session = {"authed": not self.password, "queued": None}
        conn.settimeout(1.0)
        while not self._shutdown.is_set():
            try:
                data = conn.recv(4096)
            except socket.timeout:
                continue
            except OSError:
                break
            if not data:
                break
            buf += data
            while True:
                args, buf = _parse_request(buf)
                if args is None:
                    break
                with self._lock:
                    self.commands.append(tuple(args))
                try:
                    conn.sendall(_encode(self._dispatch(session, args)))
                except OSError:
                    return
        conn.close()

    def _dispatch(self, session, args):
        name = args[0].decode().upper()
        if name == "HELLO":
            return _Error("ERR unknown command 'HELLO'")
        if name == "AUTH":
            if len(args) != 2 or args[1].decode() != self.password:
                return _Error("ERR invalid password")
            session["authed"] = True
            return _Status("OK")
        if not session["authed"]:
            return _Error("NOAUTH Authentication required.")
        if name == "MULTI":
            session["queued"] = []
            return _Status("OK")
        if name == "EXEC":
            queued, session["queued"] = session["queued"] or [], None
            return [self._execute(queued_args) for queued_args in queued]
        if session["queued"] is not None:
            session["queued"].append(args)
            return _Status("QUEUED")
        return self._execute(args)

    def _execute(self, args):
        name = args[0].decode().upper()
        sub = args[1].decode().upper() if len(args) > 1 else ""
        if name == "PING":
            return _Status("PONG")
        if name == "CLIENT":
            return _Error(f"ERR Unknown subcommand or wrong number of arguments for '{sub}'")
        if name == "CONFIG" and sub == "SET" and len(args) == 4:
            with self._lock:
                self.settings[args[2].decode()] = args[3]
            return _Status("OK")
        if name == "SLOWLOG" and sub == "GET":
            with self._lock:
                return list(self.slowlog)
        if name == "SLOWLOG" and sub == "RESET":
            with self._lock:
                self.slowlog = []
            return _Status("OK")
        return _Error(f"ERR unknown command '{args[0].decode()}'")


@pytest.fixture()
def sample_record() -> list:
    return [14, 1700000000, 1500, ["SET", "k1", "v1", "EX"], "10.0.0.5:5555", "worker-1"]


@pytest.fixture()
def sample_entry() -> RawLogEntry:
    return RawLogEntry(
        slow_id=14,
        timestamp=1700000000,
        duration=1500,
        args=["SET", "k1", "v1", "EX"],
        client_addr="10.0.0.5:5555",
        client_name="worker-1",
    )


@pytest.fixture()
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def redis_server():
    server = FakeRedisServer()
    yield server
    server.stop()
