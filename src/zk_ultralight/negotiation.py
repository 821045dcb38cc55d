"""Pure helpers for the sequential-node lock recipe.

Locking is loosely based on the ZooKeeper lock recipe
(http://zookeeper.apache.org/doc/trunk/recipes.html#sc_recipes_Locks), with
one twist: requests do not negotiate with children *of* the lock node, since
then the lock node itself could not be ephemeral. Instead the sequence
number is appended to the lock name, so ``/critical/section`` is negotiated
by siblings such as ``/critical/section0000000007``.
"""

from __future__ import annotations

from bisect import bisect_left


def split_lock_name(name: str) -> tuple[str, str]:
    """Split a lock name into its parent path (with trailing "/") and base name.

    Example:
        >>> split_lock_name("/critical/section")
        ('/critical/', 'section')
        >>> split_lock_name("/section")
        ('/', 'section')
    """
    cut = name.rfind("/") + 1
    return name[:cut], name[cut:]


def parent_node(lockpath: str) -> str:
    """Node path of a lock's parent; clients reject paths ending in "/"."""
    return lockpath if len(lockpath) <= 1 else lockpath[:-1]


def sequence_suffix(node: str, lockpath: str, basename: str) -> str:
    """The sequence number the service appended to a created lock node."""
    return node[len(lockpath) + len(basename) :]


def sibling_sequences(children: list[str], basename: str) -> list[str]:
    """Sequence suffixes of the children that belong to this lock, sorted.

    The service pads every sequence number to the same width, so string
    ordering is numeric ordering. Children of other locks under the same
    parent (``section-b0000000001`` next to ``section0000000003``) are
    ignored because their remainder is not purely numeric.
    """
    width = len(basename)
    return sorted(
        child[width:]
        for child in children
        if child.startswith(basename) and child[width:].isdigit()
    )


def predecessor(sequences: list[str], own: str) -> str | None:
    """Sequence immediately below ``own``, or None if own is first or missing."""
    index = bisect_left(sequences, own)
    if index == len(sequences) or sequences[index] != own or index == 0:
        return None
    return sequences[index - 1]


__all__ = [
    "parent_node",
    "predecessor",
    "sequence_suffix",
    "sibling_sequences",
    "split_lock_name",
]
