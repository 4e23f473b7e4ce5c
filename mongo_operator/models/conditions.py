"""Kubernetes-style status conditions."""

from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def set_condition(
    conditions: list[dict[str, Any]],
    type_: str,
    status: str,
    reason: str,
    message: str,
    last_transition_time: Optional[str] = None,
) -> list[dict[str, Any]]:
    """
    Return ``conditions`` with the condition of ``type_`` added or updated.

    ``lastTransitionTime`` only moves when the condition status changes.
    """
    previous = next((c for c in conditions if c.get("type") == type_), None)

    if last_transition_time is None:
        if previous is not None and previous.get("status") == status:
            last_transition_time = previous.get("lastTransitionTime")
        else:
            last_transition_time = utcnow().isoformat()

    updated = [c for c in conditions if c.get("type") != type_]
    updated.append(
        {
            "type": type_,
            "status": status,
            "reason": reason,
            "message": message,
            "lastTransitionTime": last_transition_time,
        }
    )
    return updated
