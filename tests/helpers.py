"""Test helpers for TaskHub tests.

Pre-defined user and client IDs, plus small builders for request bodies.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from uuid6 import uuid7


# Deterministic UUID7 hex IDs so failures are easy to read
OWNER_ID = "0190a000000070008000000000000001"
MEMBER_ID = "0190a000000070008000000000000002"
OUTSIDER_ID = "0190a000000070008000000000000003"
CLIENT_A_ID = "0190a0000000700080000000000000a1"
CLIENT_B_ID = "0190a0000000700080000000000000b1"


def new_id() -> str:
    """Generate a fresh UUID7 hex ID."""
    return uuid7().hex


def make_change(
    entity_type: str,
    entity_id: str,
    operation: str,
    data: Dict[str, Any],
    timestamp: str,
    change_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Build a change dict as a client would push it."""
    return {
        "change_id": change_id or new_id(),
        "entity_type": entity_type,
        "entity_id": entity_id,
        "operation": operation,
        "data": data,
        "timestamp": timestamp,
    }


def auth_headers(user_id: str = OWNER_ID) -> Dict[str, str]:
    return {"X-User-ID": user_id}
