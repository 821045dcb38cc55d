"""Tree-walk utilities for inspecting and cleaning up lock nodes.

Used by the ``ephemerals``, ``non-ephemerals`` and ``rm-znodes`` commands to
find live lock nodes, spot persistent debris, and bulk-delete nodes. The
service's own ``/zookeeper`` subtree is never visited.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

import structlog

from zk_ultralight.client import CoordinationClient, NodeStat

logger = structlog.get_logger(__name__)

RESERVED_SUBTREE = "/zookeeper"


def _child_path(parent: str, child: str) -> str:
    return parent + child if parent.endswith("/") else f"{parent}/{child}"


async def _walk(
    client: CoordinationClient, roots: Iterable[str]
) -> list[tuple[str, list[str], NodeStat]]:
    """Depth-first walk returning (path, children, stat) for every node."""
    stack = list(roots)
    visited: list[tuple[str, list[str], NodeStat]] = []
    while stack:
        path = stack.pop()
        if RESERVED_SUBTREE in path:
            continue
        children, stat = await client.get_children_with_stat(path)
        visited.append((path, children, stat))
        stack.extend(_child_path(path, child) for child in children)
    logger.debug("tree_walked", nodes=len(visited))
    return visited


async def find_ephemerals(client: CoordinationClient, roots: Iterable[str]) -> list[str]:
    """Paths of every ephemeral node under ``roots``."""
    return [path for path, _, stat in await _walk(client, roots) if stat.ephemeral]


async def find_non_ephemerals(client: CoordinationClient, roots: Iterable[str]) -> list[str]:
    """Paths of every leaf node under ``roots`` that is not ephemeral.

    Interior nodes are skipped: they are the parents lock nodes live under.
    """
    return [
        path
        for path, children, stat in await _walk(client, roots)
        if not children and not stat.ephemeral
    ]


async def remove_nodes(client: CoordinationClient, paths: Iterable[str]) -> None:
    """Delete ``paths`` concurrently.

    Every delete is attempted; the first failure is raised afterwards.
    """
    paths = list(paths)
    results = await asyncio.gather(
        *(client.remove(path) for path in paths),
        return_exceptions=True,
    )
    errors = [(p, r) for p, r in zip(paths, results, strict=True) if isinstance(r, Exception)]
    for path, error in errors:
        logger.error("remove_failed", path=path, error=str(error))
    if errors:
        raise errors[0][1]
    logger.debug("nodes_removed", count=len(paths))
