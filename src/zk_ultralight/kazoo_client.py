"""kazoo-backed coordination client.

kazoo runs its own connection thread and reports results through
IAsyncResult objects, watch callbacks and state listeners invoked on that
thread. This adapter marshals all of them onto the asyncio loop that called
connect(), so the lock engine only ever sees loop-thread callbacks.

State mapping:
    KazooState.CONNECTED  -> SessionEvent.CONNECTED
                             (CONNECTED_READ_ONLY when KeeperState.CONNECTED_RO)
    KazooState.SUSPENDED  -> SessionEvent.DISCONNECTED
    KazooState.LOST       -> SessionEvent.AUTH_FAILED when KeeperState.AUTH_FAILED,
                             otherwise SessionEvent.EXPIRED
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import structlog
from kazoo.client import KazooClient
from kazoo.exceptions import KazooException
from kazoo.protocol.states import KazooState, KeeperState

from zk_ultralight.client import NodeStat, SessionEvent, SessionListener, WatchCallback
from zk_ultralight.exceptions import CoordinationServiceError

logger = structlog.get_logger(__name__)


def map_kazoo_state(state: str, keeper_state: str | None) -> SessionEvent:
    """Translate a kazoo listener state into a SessionEvent."""
    if state == KazooState.CONNECTED:
        if keeper_state == KeeperState.CONNECTED_RO:
            return SessionEvent.CONNECTED_READ_ONLY
        return SessionEvent.CONNECTED
    if state == KazooState.SUSPENDED:
        return SessionEvent.DISCONNECTED
    if keeper_state == KeeperState.AUTH_FAILED:
        return SessionEvent.AUTH_FAILED
    return SessionEvent.EXPIRED


class KazooCoordinationClient:
    """CoordinationClient implementation on top of kazoo.KazooClient."""

    def __init__(
        self,
        hosts: str,
        session_timeout: float | None = None,
        *,
        read_only: bool = False,
        kazoo_factory: Callable[..., Any] = KazooClient,
    ):
        """Build (but do not start) a kazoo client.

        Args:
            hosts: Comma-separated host:port list
            session_timeout: Session timeout in seconds (kazoo default when None)
            read_only: Allow connecting to read-only servers
            kazoo_factory: KazooClient constructor, replaceable in tests
        """
        options: dict[str, Any] = {"hosts": hosts, "read_only": read_only}
        if session_timeout:
            options["timeout"] = session_timeout
        self.hosts = hosts
        self._zk = kazoo_factory(**options)
        self._zk.add_listener(self._on_kazoo_state)
        self._listeners: list[SessionListener] = []
        self._loop: asyncio.AbstractEventLoop | None = None
        self._closed = False

    def add_listener(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def connect(self) -> None:
        self._loop = asyncio.get_running_loop()
        logger.debug("kazoo_connect", hosts=self.hosts)
        self._zk.start_async()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        logger.debug("kazoo_close", hosts=self.hosts)
        if self._loop is not None and self._loop.is_running():
            # stop() joins kazoo's connection thread; keep it off the loop.
            self._loop.run_in_executor(None, self._stop)
        else:
            self._stop()

    def _stop(self) -> None:
        try:
            self._zk.stop()
            self._zk.close()
        except KazooException as e:
            logger.debug("kazoo_close_failed", hosts=self.hosts, error=str(e))

    def _on_kazoo_state(self, state: str) -> None:
        # Runs on kazoo's thread.
        if self._closed or self._loop is None:
            return
        event = map_kazoo_state(state, self._zk.client_state)
        self._loop.call_soon_threadsafe(self._dispatch, event)

    def _dispatch(self, event: SessionEvent) -> None:
        if self._closed:
            return
        for listener in list(self._listeners):
            listener(event)

    async def _await(self, operation: str, path: str, start: Callable[[], Any]) -> Any:
        """Run a kazoo *_async call and await its IAsyncResult on the loop."""
        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()

        def settle(value: Any, error: BaseException | None) -> None:
            if future.done():
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(value)

        def on_complete(result: Any) -> None:
            # Runs on kazoo's thread.
            try:
                value, error = result.get(), None
            except Exception as e:
                value, error = None, e
            loop.call_soon_threadsafe(settle, value, error)

        try:
            start().rawlink(on_complete)
            return await future
        except KazooException as e:
            raise CoordinationServiceError(
                f"{operation} failed for {path}: {type(e).__name__}", path=path
            ) from e

    def _watcher(self, callback: WatchCallback) -> Callable[[Any], None]:
        loop = asyncio.get_running_loop()

        def watch(event: Any) -> None:
            # Runs on kazoo's thread.
            loop.call_soon_threadsafe(callback)

        return watch

    async def mkdir_all(self, path: str) -> None:
        await self._await("mkdir_all", path, lambda: self._zk.ensure_path_async(path))

    async def create(
        self,
        path: str,
        payload: bytes = b"",
        *,
        ephemeral: bool = False,
        sequential: bool = False,
    ) -> str:
        return await self._await(
            "create",
            path,
            lambda: self._zk.create_async(
                path, payload, ephemeral=ephemeral, sequence=sequential
            ),
        )

    async def get_children(self, path: str) -> list[str]:
        children = await self._await(
            "get_children", path, lambda: self._zk.get_children_async(path)
        )
        return list(children)

    async def get_children_with_stat(self, path: str) -> tuple[list[str], NodeStat]:
        children, stat = await self._await(
            "get_children",
            path,
            lambda: self._zk.get_children_async(path, include_data=True),
        )
        return list(children), NodeStat(
            ephemeral_owner=stat.ephemeralOwner,
            num_children=stat.numChildren,
        )

    async def exists(self, path: str, watch: WatchCallback | None = None) -> bool:
        kazoo_watch = self._watcher(watch) if watch is not None else None
        stat = await self._await(
            "exists", path, lambda: self._zk.exists_async(path, watch=kazoo_watch)
        )
        return stat is not None

    async def remove(self, path: str) -> None:
        await self._await("remove", path, lambda: self._zk.delete_async(path))


def kazoo_client_factory(hosts: str, session_timeout: float | None) -> KazooCoordinationClient:
    """Default ClientFactory used by Connection and ConnectionRegistry."""
    return KazooCoordinationClient(hosts, session_timeout)


__all__ = ["KazooCoordinationClient", "kazoo_client_factory", "map_kazoo_state"]
