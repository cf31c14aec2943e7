"""Access-Grant Store: create, respond, authorize, revoke."""

from __future__ import annotations

import dataclasses
import logging
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from medvault.errors import Forbidden, InvalidTransition, NotFound, ValidationError
from medvault.grants import state_machine
from medvault.logging import mask_wallet
from medvault.models import MIN_PURPOSE_LENGTH, URGENCIES, AccessRequest, normalize_wallet
from medvault.storage.event_store import emit_best_effort

if TYPE_CHECKING:
    from collections.abc import Iterable

    from medvault.grants.idempotency import IdempotencyStoreProtocol
    from medvault.storage.access_requests import AccessRequestRepositoryProtocol
    from medvault.storage.event_store import LedgerProtocol
    from medvault.storage.records import RecordRepositoryProtocol

__all__ = ["AccessGrantStore"]

logger = logging.getLogger(__name__)

DECISIONS = frozenset({"approved", "denied"})


def _now(now: datetime | None) -> datetime:
    return now if now is not None else datetime.now(UTC)


class AccessGrantStore:
    """Persists access requests and drives them through the state machine.

    Reads always apply lazy expiry, so an approved grant past its deadline is
    reported and enforced as ``expired`` whether or not a sweep has written
    that status back.
    """

    def __init__(
        self,
        records: RecordRepositoryProtocol,
        requests: AccessRequestRepositoryProtocol,
        ledger: LedgerProtocol | None = None,
        idempotency: IdempotencyStoreProtocol | None = None,
    ) -> None:
        self._records = records
        self._requests = requests
        self._ledger = ledger
        self._idempotency = idempotency

    # -- create -------------------------------------------------------------

    def create(
        self,
        doctor_wallet: str,
        patient_wallet: str,
        record_ids: Iterable[str],
        purpose: str,
        duration_days: int,
        *,
        urgency: str = "routine",
        idempotency_key: str | None = None,
        now: datetime | None = None,
    ) -> AccessRequest:
        """Open a ``sent`` request for records the patient owns.

        With *idempotency_key*, a retry by the same doctor returns the request
        created by the first call instead of a duplicate.
        """
        doctor = normalize_wallet(doctor_wallet)
        patient = normalize_wallet(patient_wallet)
        if not doctor or not patient:
            raise ValidationError("doctor and patient wallet addresses are required")
        if doctor == patient:
            raise ValidationError("a request cannot target the requester's own wallet")
        purpose = (purpose or "").strip()
        if len(purpose) < MIN_PURPOSE_LENGTH:
            raise ValidationError(
                f"purpose must be at least {MIN_PURPOSE_LENGTH} characters",
                details={"min_length": MIN_PURPOSE_LENGTH},
            )
        if urgency not in URGENCIES:
            raise ValidationError(f"urgency must be one of {sorted(URGENCIES)}")

        ordered_ids = list(dict.fromkeys(record_ids))
        if not ordered_ids:
            raise ValidationError("at least one record must be requested")

        sent_at = _now(now)
        expires_at = state_machine.compute_expiry(sent_at, duration_days)

        request_id = str(uuid.uuid4())
        scoped_key = f"{doctor}:{idempotency_key}" if idempotency_key else None
        if scoped_key and self._idempotency is not None:
            request_id = self._idempotency.claim(scoped_key, request_id)
            existing = self._requests.get(request_id)
            if existing is not None:
                logger.info("Idempotent replay of access request %s", request_id)
                return existing

        found = self._records.get_many(ordered_ids)
        not_owned = [
            rid
            for rid in ordered_ids
            if rid not in found or found[rid].owner_wallet != patient or found[rid].is_deleted
        ]
        if not_owned:
            raise Forbidden(
                "patient does not own every requested record",
                details={"record_ids": not_owned},
            )

        request = AccessRequest(
            id=request_id,
            doctor_wallet=doctor,
            patient_wallet=patient,
            requested_record_ids=frozenset(ordered_ids),
            document_names_snapshot=tuple(found[rid].title for rid in ordered_ids),
            purpose=purpose,
            status="sent",
            sent_at=sent_at,
            expires_at=expires_at,
            urgency=urgency,
            idempotency_key=scoped_key,
        )
        stored = self._requests.add(request)
        if stored.id == request.id:
            logger.info(
                "Access request %s sent: doctor=%s patient=%s records=%d days=%d",
                stored.id,
                mask_wallet(doctor),
                mask_wallet(patient),
                len(ordered_ids),
                duration_days,
            )
            self._emit(stored, "access_request_created", doctor, {"duration_days": duration_days})
        return stored

    # -- transitions --------------------------------------------------------

    def respond(
        self,
        request_id: str,
        actor_wallet: str,
        decision: str,
        *,
        denial_reason: str = "",
        now: datetime | None = None,
    ) -> AccessRequest:
        """Patient approves or denies a ``sent`` request."""
        if decision not in DECISIONS:
            raise ValidationError(f"decision must be one of {sorted(DECISIONS)}")
        at = _now(now)
        request = self._require(request_id)
        actor = normalize_wallet(actor_wallet)
        if actor != request.patient_wallet:
            logger.warning(
                "Rejected respond on %s by non-patient %s", request_id, mask_wallet(actor)
            )
            raise Forbidden("only the referenced patient may respond to this request")

        updated = state_machine.transition(
            request,
            decision,
            at,
            responded_at=at,
            denial_reason=denial_reason if decision == "denied" else "",
        )
        self._commit(request, updated)
        self._emit(updated, f"access_request_{decision}", actor)
        return updated

    def revoke(
        self,
        request_id: str,
        actor_wallet: str,
        *,
        now: datetime | None = None,
    ) -> AccessRequest:
        """Patient withdraws a live grant."""
        at = _now(now)
        request = self._require(request_id)
        actor = normalize_wallet(actor_wallet)
        if actor != request.patient_wallet:
            raise Forbidden("only the referenced patient may revoke this grant")
        updated = state_machine.transition(request, "revoked", at, responded_at=at)
        self._commit(request, updated)
        self._emit(updated, "access_request_revoked", actor)
        return updated

    def expire_overdue(self, now: datetime | None = None) -> int:
        """Write back lazy expiry for approved grants past their deadline."""
        at = _now(now)
        expired = 0
        for request in self._requests.list_by_status("approved"):
            if state_machine.effective_status(request, at) != "expired":
                continue
            updated = dataclasses.replace(request, status="expired")
            if self._requests.compare_and_set("approved", updated):
                expired += 1
                self._emit(updated, "access_request_expired", "system")
        if expired:
            logger.info("Expired %d overdue access grants", expired)
        return expired

    # -- reads --------------------------------------------------------------

    def authorize(self, request_id: str, record_id: str, now: datetime | None = None) -> bool:
        """True only for an unexpired approved grant covering *record_id*."""
        request = self._requests.get(request_id)
        if request is None:
            return False
        return state_machine.is_authorized(request, record_id, _now(now))

    def get(self, request_id: str, now: datetime | None = None) -> AccessRequest:
        return self._with_effective_status(self._require(request_id), _now(now))

    def list_for_wallet(
        self,
        wallet_address: str,
        role: str,
        now: datetime | None = None,
    ) -> list[AccessRequest]:
        side = "patient" if role == "patient" else "doctor"
        at = _now(now)
        return [
            self._with_effective_status(r, at)
            for r in self._requests.list_for_wallet(wallet_address, side)
        ]

    # -- helpers ------------------------------------------------------------

    def _require(self, request_id: str) -> AccessRequest:
        request = self._requests.get(request_id)
        if request is None:
            raise NotFound("access request not found", details={"request_id": request_id})
        return request

    def _commit(self, before: AccessRequest, after: AccessRequest) -> None:
        if not self._requests.compare_and_set(before.status, after):
            raise InvalidTransition(
                "access request changed concurrently",
                details={"request_id": before.id},
            )

    @staticmethod
    def _with_effective_status(request: AccessRequest, now: datetime) -> AccessRequest:
        status = state_machine.effective_status(request, now)
        if status == request.status:
            return request
        return dataclasses.replace(request, status=status)

    def _emit(
        self,
        request: AccessRequest,
        event_type: str,
        actor: str,
        extra: dict[str, Any] | None = None,
    ) -> None:
        payload: dict[str, Any] = {
            "doctor_wallet": request.doctor_wallet,
            "patient_wallet": request.patient_wallet,
            "record_ids": sorted(request.requested_record_ids),
            "status": request.status,
            "expires_at": request.expires_at.isoformat(),
        }
        if extra:
            payload.update(extra)
        emit_best_effort(self._ledger, request.id, event_type, payload, actor=actor)
