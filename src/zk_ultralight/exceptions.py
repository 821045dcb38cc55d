"""Exceptions raised by the lock engine.

All exceptions inherit from UltralightError so callers can catch the whole
family at once. Errors are always raised to the immediate caller; the engine
never retries on its own except for the lock negotiation loop itself.

Hierarchy:
    UltralightError
    ├── InvalidArgumentError
    │   └── InvalidPathError
    ├── UltralightConnectionError
    │   ├── ConnectionTimeoutError
    │   ├── SessionError
    │   └── NotConnectedError
    ├── CoordinationServiceError
    ├── NoSuchLockError
    └── LockAlreadyHeldError
"""


class UltralightError(Exception):
    """Base exception for all zk-ultralight errors."""

    pass


class InvalidArgumentError(UltralightError):
    """Raised when a caller passes an argument the engine cannot use."""

    pass


class InvalidPathError(InvalidArgumentError):
    """Raised when a lock name is not an absolute coordination-service path.

    Lock names must begin with "/". The check happens before any call to the
    coordination service.
    """

    def __init__(self, path: str):
        self.path = path
        super().__init__(f'A zookeeper path must begin with "/": {path!r}')


class UltralightConnectionError(UltralightError):
    """Base class for errors about the state of a Connection."""

    pass


class ConnectionTimeoutError(UltralightConnectionError, TimeoutError):
    """Raised when waiting for CONNECTED exceeds the connect timeout.

    Raising this error also forces the Connection into ERROR, so every other
    pending waiter fails with the same instance. The next lock/unlock call
    triggers a fresh connect.
    """

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout}s waiting for connection")


class SessionError(UltralightConnectionError):
    """Raised when the session becomes unusable.

    The underlying session reported read-only mode, expiry, or an
    authentication failure. All pending and future operations fail until a
    fresh connect succeeds.
    """

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Coordination session error: {reason}")


class NotConnectedError(UltralightConnectionError):
    """Raised when the Connection leaves CONNECTED in the middle of an operation."""

    pass


class CoordinationServiceError(UltralightError):
    """Raised when a create/list/exists/remove/mkdir call fails.

    The original client exception, if any, is chained as ``__cause__``.
    """

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(message)


class NoSuchLockError(UltralightError):
    """Raised by unlock() for a name this Connection does not hold."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Don't have lock {name}!")


class LockAlreadyHeldError(UltralightError):
    """Raised by lock() for a name this Connection already holds.

    A second sequential node would otherwise replace the first one in the
    lock table and orphan it until the session ends.
    """

    def __init__(self, name: str, path: str):
        self.name = name
        self.path = path
        super().__init__(f"Lock {name} is already held on {path}")


__all__ = [
    "ConnectionTimeoutError",
    "CoordinationServiceError",
    "InvalidArgumentError",
    "InvalidPathError",
    "LockAlreadyHeldError",
    "NoSuchLockError",
    "NotConnectedError",
    "SessionError",
    "UltralightConnectionError",
    "UltralightError",
]
