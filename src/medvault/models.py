"""Domain records: immutable snapshots, replaced wholesale on change."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Literal

__all__ = [
    "ALLOWED_DURATIONS_DAYS",
    "MIN_PURPOSE_LENGTH",
    "RECORD_TYPES",
    "ROLES",
    "URGENCIES",
    "AccessRequest",
    "AccessStatus",
    "AuthSession",
    "Record",
    "Role",
    "User",
    "normalize_wallet",
]

Role = Literal["patient", "doctor", "admin"]
AccessStatus = Literal["sent", "approved", "denied", "expired", "revoked"]

ROLES: frozenset[str] = frozenset({"patient", "doctor", "admin"})
RECORD_TYPES: frozenset[str] = frozenset(
    {"lab-result", "prescription", "visit-note", "imaging", "other"}
)
URGENCIES: frozenset[str] = frozenset({"routine", "urgent", "emergency"})
ALLOWED_DURATIONS_DAYS: tuple[int, ...] = (1, 3, 7, 14, 30)
MIN_PURPOSE_LENGTH = 10


def normalize_wallet(wallet: str | None) -> str:
    """Lowercase and strip a wallet address ("" when unset)."""
    return (wallet or "").strip().lower()


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class User:
    id: str
    wallet_address: str
    role: Role
    verified: bool = False
    full_name: str = ""
    email: str = ""
    created_at: datetime | None = None
    last_login_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "wallet_address": self.wallet_address,
            "role": self.role,
            "verified": self.verified,
            "full_name": self.full_name,
            "email": self.email,
            "created_at": _iso(self.created_at),
            "last_login_at": _iso(self.last_login_at),
        }


@dataclass(frozen=True)
class Record:
    """A pinned document owned by exactly one patient wallet.

    Owner and content address never change; a re-upload is a new Record.
    """

    id: str
    owner_wallet: str
    title: str
    file_type: str
    content_address: str
    size_bytes: int
    uploaded_at: datetime
    record_type: str = "other"
    description: str = ""
    deleted_at: datetime | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_wallet": self.owner_wallet,
            "title": self.title,
            "file_type": self.file_type,
            "content_address": self.content_address,
            "size_bytes": self.size_bytes,
            "uploaded_at": _iso(self.uploaded_at),
            "record_type": self.record_type,
            "description": self.description,
            "deleted_at": _iso(self.deleted_at),
        }


@dataclass(frozen=True)
class AccessRequest:
    """A doctor's time-boxed proposal to read a set of a patient's records.

    ``document_names_snapshot`` is taken at creation and is never re-derived
    from live records.
    """

    id: str
    doctor_wallet: str
    patient_wallet: str
    requested_record_ids: frozenset[str]
    document_names_snapshot: tuple[str, ...]
    purpose: str
    status: AccessStatus
    sent_at: datetime
    expires_at: datetime
    urgency: str = "routine"
    responded_at: datetime | None = None
    denial_reason: str = ""
    idempotency_key: str | None = None

    @property
    def duration(self) -> timedelta:
        return self.expires_at - self.sent_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "doctor_wallet": self.doctor_wallet,
            "patient_wallet": self.patient_wallet,
            "requested_record_ids": sorted(self.requested_record_ids),
            "document_names_snapshot": list(self.document_names_snapshot),
            "purpose": self.purpose,
            "status": self.status,
            "urgency": self.urgency,
            "sent_at": _iso(self.sent_at),
            "expires_at": _iso(self.expires_at),
            "responded_at": _iso(self.responded_at),
            "denial_reason": self.denial_reason,
        }


@dataclass(frozen=True)
class AuthSession:
    """Server-issued session tying a bearer token to a wallet."""

    session_token: str
    wallet_address: str
    created_at: datetime
    expires_at: datetime
    active: bool = True
    last_activity: datetime | None = None
    terminated_reason: str = ""

    def is_valid(self, now: datetime) -> bool:
        return self.active and now < self.expires_at
