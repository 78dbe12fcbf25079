"""Small HTTP-related constants shared across Deliberate.

Kept tiny to avoid circular imports between the client and envelope code.
"""

from __future__ import annotations

NOT_IMPLEMENTED = 501


def is_server_error(status: int | None) -> bool:
    """Return True for 5xx statuses."""
    return isinstance(status, int) and 500 <= status <= 599


def is_client_error(status: int | None) -> bool:
    """Return True for 4xx statuses."""
    return isinstance(status, int) and 400 <= status <= 499
