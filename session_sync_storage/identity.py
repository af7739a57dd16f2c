"""
Owner identity helpers.

Authentication happens outside this library; callers hand in the resolved
owner id. These helpers enforce the owner boundary consistently: write
paths fail hard without an owner, read paths degrade to "no owner".
"""

from __future__ import annotations

from .exceptions import UnauthenticatedError


def require_owner(owner_id: str | None, operation: str | None = None) -> str:
    """Return the owner id or raise UnauthenticatedError if it is missing."""
    if owner_id is None or not str(owner_id).strip():
        raise UnauthenticatedError(operation)
    return str(owner_id)


def optional_owner(owner_id: str | None) -> str | None:
    """Normalize an owner id for anonymous-tolerant reads (blank -> None)."""
    if owner_id is None or not str(owner_id).strip():
        return None
    return str(owner_id)
