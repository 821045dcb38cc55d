"""Registry of shared Connections.

Repeated lock requests against the same cluster should reuse one session.
The registry maps a host list to its single Connection, creating entries
lazily, and closes them all on shutdown. It is an ordinary object owned by
the application's composition root rather than module-level state.

Example:
    >>> registry = ConnectionRegistry()
    >>> cxn = registry.get(["127.0.0.1:2181"])
    >>> async with cxn.held("/critical/section", b"vroom"):
    ...     await perform_action()
    >>> await registry.shutdown()  # call prior to exit
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

import structlog

from zk_ultralight.client import ClientFactory
from zk_ultralight.connection import Connection

logger = structlog.get_logger(__name__)


class ConnectionRegistry:
    """Cache of Connections keyed by their comma-joined host list."""

    def __init__(
        self,
        client_factory: ClientFactory | None = None,
        *,
        connect_timeout: float | None = None,
    ):
        """Initialize an empty registry.

        Args:
            client_factory: Passed to every Connection (default: kazoo)
            connect_timeout: Passed to every Connection (default: Connection's)
        """
        self._client_factory = client_factory
        self._connect_timeout = connect_timeout
        self._connections: dict[str, Connection] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, hosts: object) -> bool:
        if isinstance(hosts, str):
            return hosts in self._connections
        if isinstance(hosts, Sequence):
            return ",".join(hosts) in self._connections
        return False

    def get(self, hosts: Sequence[str], session_timeout: float | None = None) -> Connection:
        """Return the Connection for ``hosts``, creating it on first use.

        Args:
            hosts: "host:port" strings; order matters for the cache key
            session_timeout: Only honoured when the Connection is created

        Returns:
            The shared Connection (CLOSED until its first lock/unlock)
        """
        key = ",".join(hosts)
        connection = self._connections.get(key)
        if connection is None:
            logger.debug("registry_create_connection", hosts=key, session_timeout=session_timeout)
            connection = Connection(
                key,
                session_timeout,
                connect_timeout=self._connect_timeout,
                client_factory=self._client_factory,
            )
            self._connections[key] = connection
        return connection

    async def shutdown(self) -> None:
        """Close every Connection. Call prior to exit.

        The registry is emptied first, then all Connections close
        concurrently. Individual close errors are logged and suppressed.
        """
        to_close = list(self._connections.values())
        self._connections = {}
        logger.debug("registry_shutdown", connections=len(to_close))

        results = await asyncio.gather(
            *(connection.close() for connection in to_close),
            return_exceptions=True,
        )
        for connection, result in zip(to_close, results, strict=True):
            if isinstance(result, Exception):
                logger.debug(
                    "Error observed mid-shutdown", hosts=connection.hosts, error=str(result)
                )
