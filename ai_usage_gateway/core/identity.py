"""
Canonical user identifiers.

Callers pass numeric database ids, UUID strings in any case, or the demo
session aliases; usage and quota records are keyed by one canonical form.
"""

import uuid
from typing import Optional, Union

DEMO_USER_ID = "00000000-0000-0000-0000-000000000001"
DEMO_ALIASES = frozenset({"demo-admin", "demo-token"})

UserId = Union[int, str, uuid.UUID, None]


def normalize_user_id(user_id: UserId) -> Optional[str]:
    """Return the canonical string form of ``user_id``.

    - ``None`` and blank strings -> ``None`` (anonymous)
    - ints and numeric strings -> decimal string without leading zeros
    - UUIDs (any case, braces or dashes) -> lowercase dashed form
    - demo aliases -> the fixed demo UUID
    - anything else -> the stripped string
    """
    if user_id is None:
        return None
    if isinstance(user_id, bool):
        raise ValueError("user_id cannot be a boolean")
    if isinstance(user_id, uuid.UUID):
        return str(user_id)
    if isinstance(user_id, int):
        return str(user_id)

    text = str(user_id).strip()
    if not text:
        return None
    if text in DEMO_ALIASES:
        return DEMO_USER_ID
    if text.isdigit():
        return str(int(text))
    try:
        return str(uuid.UUID(text))
    except ValueError:
        return text
