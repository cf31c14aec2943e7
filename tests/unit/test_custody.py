"""Tests for record custody: upload, list, fetch with grants, delete."""

from __future__ import annotations

from datetime import timedelta

import pytest

from medvault.custody import CustodyService
from medvault.errors import Forbidden, NotFound, Unauthenticated, ValidationError
from medvault.grants.store import AccessGrantStore
from medvault.identity.resolver import UNAUTHENTICATED, ResolvedIdentity
from medvault.objectstore.adapter import ObjectStoreAdapter
from medvault.storage.event_store import InMemoryLedger
from medvault.storage.records import InMemoryRecordRepository

from medvault_testkit import DOCTOR, OTHER_DOCTOR, OTHER_PATIENT, PATIENT, T0, FakePinata

PATIENT_ID = ResolvedIdentity(role="patient", wallet_address=PATIENT, source="session")
DOCTOR_ID = ResolvedIdentity(role="doctor", wallet_address=DOCTOR, source="session")
OTHER_DOCTOR_ID = ResolvedIdentity(role="doctor", wallet_address=OTHER_DOCTOR, source="session")
OTHER_PATIENT_ID = ResolvedIdentity(role="patient", wallet_address=OTHER_PATIENT, source="session")


@pytest.fixture()
def custody(
    record_repo: InMemoryRecordRepository,
    grant_store: AccessGrantStore,
    object_store: ObjectStoreAdapter,
    ledger: InMemoryLedger,
) -> CustodyService:
    return CustodyService(record_repo, grant_store, object_store, ledger=ledger)


async def _upload(custody: CustodyService, data: bytes = b"%PDF lab", title: str = "Blood panel"):  # type: ignore[no-untyped-def]
    record, _ = await custody.upload_record(
        PATIENT_ID, data, "panel.pdf", title=title, file_type="application/pdf", now=T0
    )
    return record


def _grant(grant_store: AccessGrantStore, record_id: str, approve: bool = True) -> str:
    req = grant_store.create(DOCTOR, PATIENT, [record_id], "need for diagnosis", 7, now=T0)
    if approve:
        grant_store.respond(req.id, PATIENT, "approved", now=T0)
    return req.id


class TestUpload:
    @pytest.mark.anyio()
    async def test_upload_creates_record(self, custody: CustodyService, ledger: InMemoryLedger) -> None:
        record, duplicate = await custody.upload_record(
            PATIENT_ID, b"%PDF lab", "panel.pdf", file_type="application/pdf", now=T0
        )
        assert duplicate is False
        assert record.owner_wallet == PATIENT
        assert record.title == "panel.pdf"
        assert record.content_address.startswith("bafy")
        assert record.size_bytes == len(b"%PDF lab")
        assert ledger.list_events(subject_id=record.id)[0].event_type == "record_uploaded"

    @pytest.mark.anyio()
    async def test_identical_bytes_create_separate_records(self, custody: CustodyService) -> None:
        first, dup1 = await custody.upload_record(PATIENT_ID, b"same", "a.pdf", now=T0)
        second, dup2 = await custody.upload_record(PATIENT_ID, b"same", "b.pdf", now=T0)
        assert (dup1, dup2) == (False, True)
        assert first.id != second.id
        assert first.content_address == second.content_address
        assert len(await custody.list_records(PATIENT_ID)) == 2

    @pytest.mark.anyio()
    async def test_metadata_sent_to_pinata(
        self, custody: CustodyService, fake_pinata: FakePinata
    ) -> None:
        await custody.upload_record(
            PATIENT_ID, b"scan", "xray.png", record_type="imaging", extensions={"clinicId": "C-7"}
        )
        (stored,) = fake_pinata.files.values()
        assert stored["keyvalues"]["patientAddress"] == PATIENT
        assert stored["keyvalues"]["recordType"] == "imaging"
        assert stored["keyvalues"]["clinicId"] == "C-7"

    @pytest.mark.anyio()
    async def test_doctor_cannot_upload(self, custody: CustodyService) -> None:
        with pytest.raises(Forbidden):
            await custody.upload_record(DOCTOR_ID, b"x", "x.pdf")

    @pytest.mark.anyio()
    async def test_unauthenticated_cannot_upload(self, custody: CustodyService) -> None:
        with pytest.raises(Unauthenticated):
            await custody.upload_record(UNAUTHENTICATED, b"x", "x.pdf")

    @pytest.mark.anyio()
    async def test_unknown_record_type(self, custody: CustodyService) -> None:
        with pytest.raises(ValidationError):
            await custody.upload_record(PATIENT_ID, b"x", "x.pdf", record_type="horoscope")


class TestFetch:
    @pytest.mark.anyio()
    async def test_owner_reads_own_record(self, custody: CustodyService) -> None:
        record = await _upload(custody)
        content = await custody.fetch_record(PATIENT_ID, record.id)
        assert content.data == b"%PDF lab"
        assert content.via_request_id is None

    @pytest.mark.anyio()
    async def test_doctor_with_approved_grant(
        self, custody: CustodyService, grant_store: AccessGrantStore, ledger: InMemoryLedger
    ) -> None:
        record = await _upload(custody)
        request_id = _grant(grant_store, record.id)
        content = await custody.fetch_record(DOCTOR_ID, record.id, request_id=request_id, now=T0)
        assert content.data == b"%PDF lab"
        assert content.via_request_id == request_id
        accessed = ledger.list_events(subject_id=record.id, event_type="record_accessed")
        assert accessed[0].actor == DOCTOR

    @pytest.mark.anyio()
    async def test_doctor_without_request_id(self, custody: CustodyService) -> None:
        record = await _upload(custody)
        with pytest.raises(Forbidden):
            await custody.fetch_record(DOCTOR_ID, record.id)

    @pytest.mark.anyio()
    async def test_unknown_request_is_forbidden(self, custody: CustodyService) -> None:
        record = await _upload(custody)
        with pytest.raises(Forbidden):
            await custody.fetch_record(DOCTOR_ID, record.id, request_id="nope")

    @pytest.mark.anyio()
    async def test_pending_grant_denied(
        self, custody: CustodyService, grant_store: AccessGrantStore
    ) -> None:
        record = await _upload(custody)
        request_id = _grant(grant_store, record.id, approve=False)
        with pytest.raises(Forbidden):
            await custody.fetch_record(DOCTOR_ID, record.id, request_id=request_id, now=T0)

    @pytest.mark.anyio()
    async def test_other_doctor_cannot_borrow_grant(
        self, custody: CustodyService, grant_store: AccessGrantStore
    ) -> None:
        record = await _upload(custody)
        request_id = _grant(grant_store, record.id)
        with pytest.raises(Forbidden):
            await custody.fetch_record(OTHER_DOCTOR_ID, record.id, request_id=request_id, now=T0)

    @pytest.mark.anyio()
    async def test_expired_grant_denied(
        self, custody: CustodyService, grant_store: AccessGrantStore
    ) -> None:
        record = await _upload(custody)
        request_id = _grant(grant_store, record.id)
        with pytest.raises(Forbidden):
            await custody.fetch_record(
                DOCTOR_ID, record.id, request_id=request_id, now=T0 + timedelta(days=7)
            )

    @pytest.mark.anyio()
    async def test_grant_for_other_record_denied(
        self, custody: CustodyService, grant_store: AccessGrantStore
    ) -> None:
        granted = await _upload(custody, b"one", "One")
        other = await _upload(custody, b"two", "Two")
        request_id = _grant(grant_store, granted.id)
        with pytest.raises(Forbidden):
            await custody.fetch_record(DOCTOR_ID, other.id, request_id=request_id, now=T0)

    @pytest.mark.anyio()
    async def test_missing_record(self, custody: CustodyService) -> None:
        with pytest.raises(NotFound):
            await custody.fetch_record(PATIENT_ID, "missing")


class TestDelete:
    @pytest.mark.anyio()
    async def test_owner_delete_then_retry(
        self, custody: CustodyService, fake_pinata: FakePinata
    ) -> None:
        record = await _upload(custody)
        deleted, outcome = await custody.delete_record(PATIENT_ID, record.id)
        assert deleted.is_deleted
        assert outcome.already_absent is False
        assert fake_pinata.files == {}

        again, outcome2 = await custody.delete_record(PATIENT_ID, record.id)
        assert again.is_deleted
        assert outcome2.already_absent is True

    @pytest.mark.anyio()
    async def test_deleted_record_hidden(self, custody: CustodyService) -> None:
        record = await _upload(custody)
        await custody.delete_record(PATIENT_ID, record.id)
        assert await custody.list_records(PATIENT_ID) == []
        with pytest.raises(NotFound):
            await custody.fetch_record(PATIENT_ID, record.id)

    @pytest.mark.anyio()
    async def test_non_owner_cannot_delete(self, custody: CustodyService) -> None:
        record = await _upload(custody)
        other_patient = ResolvedIdentity(role="patient", wallet_address="0xbbbb", source="wallet")
        with pytest.raises(Forbidden):
            await custody.delete_record(other_patient, record.id)

    @pytest.mark.anyio()
    async def test_delete_unknown(self, custody: CustodyService) -> None:
        with pytest.raises(NotFound):
            await custody.delete_record(PATIENT_ID, "missing")

    @pytest.mark.anyio()
    async def test_shared_content_survives_other_owners_delete(
        self, custody: CustodyService, fake_pinata: FakePinata
    ) -> None:
        mine, _ = await custody.upload_record(PATIENT_ID, b"same scan", "a.pdf", now=T0)
        theirs, duplicate = await custody.upload_record(
            OTHER_PATIENT_ID, b"same scan", "b.pdf", now=T0
        )
        assert duplicate is True

        _, outcome = await custody.delete_record(PATIENT_ID, mine.id)
        assert outcome.still_referenced is True
        assert not [c for c in fake_pinata.calls if c[0] == "DELETE"]

        content = await custody.fetch_record(OTHER_PATIENT_ID, theirs.id)
        assert content.data == b"same scan"

    @pytest.mark.anyio()
    async def test_last_reference_unpins(
        self, custody: CustodyService, fake_pinata: FakePinata
    ) -> None:
        mine, _ = await custody.upload_record(PATIENT_ID, b"same scan", "a.pdf", now=T0)
        theirs, _ = await custody.upload_record(OTHER_PATIENT_ID, b"same scan", "b.pdf", now=T0)

        await custody.delete_record(PATIENT_ID, mine.id)
        _, outcome = await custody.delete_record(OTHER_PATIENT_ID, theirs.id)
        assert outcome.still_referenced is False
        assert outcome.already_absent is False
        assert fake_pinata.files == {}

        # retrying the first delete finds nothing left to unpin
        _, retry = await custody.delete_record(PATIENT_ID, mine.id)
        assert retry.already_absent is True
