"""Integration tests against a real ZooKeeper ensemble.

Skipped unless ZK_ULTRALIGHT_TEST_HOSTS names a reachable cluster, e.g.:

    docker run -d -p 2181:2181 zookeeper:3.9
    ZK_ULTRALIGHT_TEST_HOSTS=127.0.0.1:2181 pytest -m integration
"""

import asyncio
import os
import uuid

import pytest

from zk_ultralight.connection import ConnectionState
from zk_ultralight.registry import ConnectionRegistry
from zk_ultralight.tree import find_ephemerals, remove_nodes

# Read at import time: the autouse clean_env fixture clears ZK_ULTRALIGHT_ vars.
TEST_HOSTS = os.environ.get("ZK_ULTRALIGHT_TEST_HOSTS")

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not TEST_HOSTS, reason="ZK_ULTRALIGHT_TEST_HOSTS not set"),
]


@pytest.fixture
def lock_name() -> str:
    return f"/zk-ultralight-test/{uuid.uuid4().hex}/section"


@pytest.mark.asyncio
async def test_lock_handoff_between_sessions(lock_name: str) -> None:
    """Two registries stand in for two processes contending for one lock."""
    first = ConnectionRegistry(connect_timeout=10.0)
    second = ConnectionRegistry(connect_timeout=10.0)
    hosts = TEST_HOSTS.split(",")
    a = first.get(hosts, session_timeout=10.0)
    b = second.get(hosts, session_timeout=10.0)
    try:
        node_a = await a.lock(lock_name, b"A")
        pending_b = asyncio.create_task(b.lock(lock_name, b"B"))
        await asyncio.sleep(0.5)
        assert not pending_b.done()

        await a.unlock(lock_name)
        node_b = await asyncio.wait_for(pending_b, 10.0)

        assert node_b > node_a
        assert b.state is ConnectionState.CONNECTED
        assert await find_ephemerals(b.client, [lock_name.rsplit("/", 1)[0]]) == [node_b]

        await b.unlock(lock_name)
    finally:
        await first.shutdown()
        await second.shutdown()


@pytest.mark.asyncio
async def test_cleanup_of_parent_nodes(lock_name: str) -> None:
    registry = ConnectionRegistry(connect_timeout=10.0)
    cxn = registry.get(TEST_HOSTS.split(","))
    parent = lock_name.rsplit("/", 1)[0]
    try:
        async with cxn.held(lock_name):
            pass
        await remove_nodes(cxn.client, [parent])
        assert await cxn.client.exists(parent) is False
    finally:
        await registry.shutdown()
