from __future__ import annotations

import uuid
from datetime import datetime, timezone


def new_request_id() -> str:
    """Opaque id for a relayed request when the caller does not supply one."""
    return f"req_{uuid.uuid4().hex}"


def new_event_id() -> str:
    return uuid.uuid4().hex


def utc_now_iso() -> str:
    """UTC timestamp, second precision, `Z` suffix."""
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")
