"""Access-request lifecycle: forward-only transitions and lazy expiry.

    sent ──► approved ──► expired   (time-driven, applied lazily)
      │          └──────► revoked   (patient)
      └────► denied

denied, expired and revoked are terminal.
"""

from __future__ import annotations

import dataclasses
from datetime import datetime, timedelta
from typing import Any

from medvault.errors import InvalidTransition, ValidationError
from medvault.models import ALLOWED_DURATIONS_DAYS, AccessRequest

__all__ = [
    "TERMINAL_STATES",
    "TRANSITIONS",
    "can_transition",
    "compute_expiry",
    "effective_status",
    "is_authorized",
    "transition",
]

TRANSITIONS: dict[str, frozenset[str]] = {
    "sent": frozenset({"approved", "denied"}),
    "approved": frozenset({"expired", "revoked"}),
    "denied": frozenset(),
    "expired": frozenset(),
    "revoked": frozenset(),
}
TERMINAL_STATES: frozenset[str] = frozenset(s for s, nxt in TRANSITIONS.items() if not nxt)


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def compute_expiry(sent_at: datetime, duration_days: int) -> datetime:
    if duration_days not in ALLOWED_DURATIONS_DAYS:
        raise ValidationError(
            f"duration_days must be one of {list(ALLOWED_DURATIONS_DAYS)}",
            details={"duration_days": duration_days},
        )
    return sent_at + timedelta(days=duration_days)


def effective_status(request: AccessRequest, now: datetime) -> str:
    """Stored status with lazy expiry applied.

    The deadline instant itself counts as expired.
    """
    if request.status == "approved" and now >= request.expires_at:
        return "expired"
    return request.status


def is_authorized(request: AccessRequest, record_id: str, now: datetime) -> bool:
    return (
        effective_status(request, now) == "approved"
        and record_id in request.requested_record_ids
    )


def transition(
    request: AccessRequest,
    target: str,
    now: datetime,
    **changes: Any,
) -> AccessRequest:
    """Return a new snapshot in *target* state, or raise InvalidTransition."""
    current = effective_status(request, now)
    if not can_transition(current, target):
        raise InvalidTransition(
            f"cannot move access request from {current} to {target}",
            details={"request_id": request.id, "from": current, "to": target},
        )
    return dataclasses.replace(request, status=target, **changes)
