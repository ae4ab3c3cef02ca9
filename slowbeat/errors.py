"""Exception hierarchy for the slowlog collector."""


class CollectorError(Exception):
    """Base class for all collector errors."""


class ConfigError(CollectorError):
    """Configuration is missing or invalid. Fatal at startup."""


class ConnectError(CollectorError):
    """Dialing or authenticating against a backend failed."""

    def __init__(self, address: str, message: str):
        super().__init__(f"{address}: {message}")
        self.address = address


class PoolExhaustedError(ConnectError):
    """The pool already has its maximum number of open connections."""


class ConfigPushError(CollectorError):
    """The one-time slowlog settings transaction was rejected."""

    def __init__(self, address: str, message: str):
        super().__init__(f"{address}: {message}")
        self.address = address


class ProtocolError(CollectorError):
    """The SLOWLOG GET / SLOWLOG RESET exchange did not complete cleanly.

    ``status`` is the tagged outcome of the exchange and ``broken`` tells the
    caller whether the connection can still be reused.
    """

    def __init__(self, status, message: str, broken: bool = False):
        super().__init__(message)
        self.status = status
        self.broken = broken
