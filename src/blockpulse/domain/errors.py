from __future__ import annotations


class BlockpulseError(Exception):
    """Root of every error raised by blockpulse."""


class NotFoundError(BlockpulseError):
    """The entity does not exist on chain. Terminal; never retried."""


class TransientTransportError(BlockpulseError):
    """Timeout, refused connection, throttling or a 5xx from the node."""


class RetryExhaustedError(TransientTransportError):
    def __init__(self, method: str, attempts: int, last_error: BaseException | None = None) -> None:
        self.method = method
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{method} failed after {attempts} attempts: {last_error!r}")


class RPCError(BlockpulseError):
    """The node answered with a JSON-RPC error object."""

    def __init__(self, method: str, code: int | None, message: str) -> None:
        self.method = method
        self.code = code
        super().__init__(f"{method} RPC error code={code} message={message}")


class MalformedDataError(BlockpulseError):
    """An RPC payload or stored row did not have the expected shape."""


class CacheUnavailableError(BlockpulseError):
    pass


class IndexUnavailableError(BlockpulseError):
    pass


class StoreUnavailableError(BlockpulseError):
    """A read or write on the chain store failed."""


class InvalidInputError(BlockpulseError, ValueError):
    pass


class UnknownNetworkError(BlockpulseError, KeyError):
    pass
