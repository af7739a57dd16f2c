"""ID generation utilities.

Internal row ids are opaque hex strings; public slugs are short URL-safe
tokens handed out when a session is made public.
"""

from __future__ import annotations

import secrets
import time
import uuid

PUBLIC_SLUG_BYTES = 8


def new_id() -> str:
    """Generate an opaque internal row id."""
    return uuid.uuid4().hex


def new_public_slug() -> str:
    """Generate a URL-safe public slug for a shared session."""
    return secrets.token_urlsafe(PUBLIC_SLUG_BYTES)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)
