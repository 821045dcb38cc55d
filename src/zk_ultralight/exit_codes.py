"""Exit codes for the zk-ultralight CLI.

Follows Unix conventions so shell scripts can tell usage mistakes apart from
cluster failures.

Usage:
    Always use named constants instead of raw integers:

    from zk_ultralight.exit_codes import EX_USAGE, EX_OK
    raise typer.Exit(EX_USAGE)  # GOOD
    raise typer.Exit(2)  # BAD - unclear meaning

Exit Code Categories:
    0: Success
    2: User/input errors
    10-11: Cluster errors
    70: System/unexpected errors
"""

# Success
EX_OK = 0
"""Successful execution."""

# User errors
EX_USAGE = 2
"""Command-line usage error (no roots, unparseable stdin, etc.)."""

# Cluster errors
EX_CONNECT = 10
"""Could not establish a usable session with the cluster."""

EX_SERVICE = 11
"""A coordination-service call failed (missing node, non-empty delete, etc.)."""

# System errors
EX_UNKNOWN = 70
"""Unexpected exception not handled by specific error codes."""
