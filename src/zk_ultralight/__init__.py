"""zk-ultralight - distributed mutual exclusion on a ZooKeeper-style service."""

from zk_ultralight.connection import Connection, ConnectionState
from zk_ultralight.exceptions import (
    ConnectionTimeoutError,
    CoordinationServiceError,
    InvalidArgumentError,
    InvalidPathError,
    LockAlreadyHeldError,
    NoSuchLockError,
    NotConnectedError,
    SessionError,
    UltralightConnectionError,
    UltralightError,
)
from zk_ultralight.registry import ConnectionRegistry

# Version (managed in pyproject.toml)
__version__ = "0.3.0"

__all__ = [
    "Connection",
    "ConnectionRegistry",
    "ConnectionState",
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
    "__version__",
]
