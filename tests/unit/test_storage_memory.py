"""Tests for the in-memory persistence implementations."""

from __future__ import annotations

import dataclasses
from datetime import timedelta

import pytest

from medvault.errors import NotFound, ValidationError
from medvault.models import AccessRequest
from medvault.storage.access_requests import InMemoryAccessRequestRepository
from medvault.storage.records import InMemoryRecordRepository
from medvault.storage.sessions import InMemorySessionStore
from medvault.storage.users import InMemoryUserDirectory

from medvault_testkit import DOCTOR, PATIENT, T0, make_record


class TestInMemoryUserDirectory:
    def setup_method(self) -> None:
        self.users = InMemoryUserDirectory()

    def test_register_normalizes_wallet(self) -> None:
        user = self.users.register(PATIENT.upper().replace("0X", "0x"), "patient", "Pat")
        assert user.wallet_address == PATIENT
        assert self.users.get_by_wallet(PATIENT) == user

    def test_register_is_idempotent(self) -> None:
        first = self.users.register(PATIENT, "patient")
        assert self.users.register(PATIENT, "patient").id == first.id

    def test_register_with_other_role_rejected(self) -> None:
        self.users.register(PATIENT, "patient")
        with pytest.raises(ValidationError):
            self.users.register(PATIENT, "doctor")

    def test_unknown_role_rejected(self) -> None:
        with pytest.raises(ValidationError):
            self.users.register(PATIENT, "nurse")

    def test_set_verified(self) -> None:
        self.users.register(DOCTOR, "doctor")
        assert self.users.set_verified(DOCTOR, True).verified is True

    def test_set_verified_unknown(self) -> None:
        with pytest.raises(NotFound):
            self.users.set_verified(DOCTOR, True)

    def test_touch_login(self) -> None:
        self.users.register(DOCTOR, "doctor")
        self.users.touch_login(DOCTOR)
        assert self.users.get_by_wallet(DOCTOR).last_login_at is not None  # type: ignore[union-attr]


class TestInMemoryRecordRepository:
    def setup_method(self) -> None:
        self.repo = InMemoryRecordRepository()

    def test_list_newest_first_excluding_deleted(self) -> None:
        self.repo.add(make_record("R1"))
        self.repo.add(dataclasses.replace(make_record("R2"), uploaded_at=T0 + timedelta(hours=1)))
        self.repo.add(make_record("R3", owner=DOCTOR))
        self.repo.mark_deleted("R1")

        assert [r.id for r in self.repo.list_for_owner(PATIENT)] == ["R2"]
        assert {r.id for r in self.repo.list_for_owner(PATIENT, include_deleted=True)} == {"R1", "R2"}

    def test_duplicate_id_rejected(self) -> None:
        self.repo.add(make_record("R1"))
        with pytest.raises(ValueError):
            self.repo.add(make_record("R1"))

    def test_get_many_omits_missing(self) -> None:
        self.repo.add(make_record("R1"))
        assert set(self.repo.get_many(["R1", "R9"])) == {"R1"}

    def test_mark_deleted_is_stable(self) -> None:
        self.repo.add(make_record("R1"))
        first = self.repo.mark_deleted("R1")
        second = self.repo.mark_deleted("R1")
        assert first is not None and second is not None
        assert first.deleted_at == second.deleted_at
        assert self.repo.mark_deleted("missing") is None

    def test_count_live_by_content_address(self) -> None:
        self.repo.add(make_record("R1", content_address="bafyshared"))
        self.repo.add(make_record("R2", owner=DOCTOR, content_address="bafyshared"))
        self.repo.add(make_record("R3", content_address="bafyother"))
        self.repo.mark_deleted("R1")

        assert self.repo.count_live_by_content_address("bafyshared") == 1
        assert self.repo.count_live_by_content_address("bafyother") == 1
        assert self.repo.count_live_by_content_address("bafynone") == 0


class TestInMemorySessionStore:
    def setup_method(self) -> None:
        self.sessions = InMemorySessionStore()

    def test_create_and_validate(self) -> None:
        session = self.sessions.create(PATIENT, timedelta(hours=1))
        validated = self.sessions.validate(session.session_token)
        assert validated is not None
        assert validated.wallet_address == PATIENT

    def test_invalidate(self) -> None:
        session = self.sessions.create(PATIENT, timedelta(hours=1))
        assert self.sessions.invalidate(session.session_token) is True
        assert self.sessions.invalidate(session.session_token) is False
        assert self.sessions.validate(session.session_token) is None

    def test_expired_session_invalid_and_cleaned(self) -> None:
        session = self.sessions.create(PATIENT, timedelta(seconds=-1))
        assert self.sessions.validate(session.session_token) is None
        assert self.sessions.cleanup() == 1

    def test_unknown_token(self) -> None:
        assert self.sessions.validate("nope") is None


def _request(request_id: str, key: str | None = None, hours: int = 0) -> AccessRequest:
    return AccessRequest(
        id=request_id,
        doctor_wallet=DOCTOR,
        patient_wallet=PATIENT,
        requested_record_ids=frozenset({"R1"}),
        document_names_snapshot=("Blood panel",),
        purpose="need for diagnosis",
        status="sent",
        sent_at=T0 + timedelta(hours=hours),
        expires_at=T0 + timedelta(days=7),
        idempotency_key=key,
    )


class TestInMemoryAccessRequestRepository:
    def setup_method(self) -> None:
        self.repo = InMemoryAccessRequestRepository()

    def test_add_dedups_by_key(self) -> None:
        self.repo.add(_request("A", key="doc:k"))
        assert self.repo.add(_request("B", key="doc:k")).id == "A"
        assert self.repo.get("B") is None

    def test_compare_and_set(self) -> None:
        original = self.repo.add(_request("A"))
        approved = dataclasses.replace(original, status="approved")
        assert self.repo.compare_and_set("sent", approved) is True
        assert self.repo.compare_and_set("sent", approved) is False
        assert self.repo.get("A").status == "approved"  # type: ignore[union-attr]

    def test_list_for_wallet_sides(self) -> None:
        self.repo.add(_request("A", hours=0))
        self.repo.add(_request("B", hours=1))
        assert [r.id for r in self.repo.list_for_wallet(PATIENT, "patient")] == ["B", "A"]
        assert [r.id for r in self.repo.list_for_wallet(DOCTOR, "doctor")] == ["B", "A"]
        assert self.repo.list_for_wallet(PATIENT, "doctor") == []

    def test_unknown_side_rejected(self) -> None:
        with pytest.raises(ValueError):
            self.repo.list_for_wallet(PATIENT, "admin")
