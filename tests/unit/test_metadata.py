"""Tests for upload metadata validation and flattening."""

from __future__ import annotations

import json

import pytest

from medvault.errors import ValidationError
from medvault.objectstore.metadata import MAX_EXTENSION_KEYS, MAX_VALUE_LENGTH, UploadMetadata

from medvault_testkit import DOCTOR, PATIENT


def test_fixed_keys_flattened_to_strings() -> None:
    kv = UploadMetadata(
        patient_address=PATIENT.upper().replace("0X", "0x"),
        file_type="application/pdf",
        file_size=2048,
        record_type="lab-result",
        date_created="2026-03-01T09:00:00+00:00",
        original_file_name="panel.pdf",
        authorized_doctors=(DOCTOR,),
    ).to_keyvalues()

    assert kv["patientAddress"] == PATIENT
    assert kv["fileSize"] == "2048"
    assert kv["recordType"] == "lab-result"
    assert json.loads(kv["authorizedDoctors"]) == [DOCTOR]
    assert all(isinstance(v, str) for v in kv.values())
    assert "encrypted" not in kv


def test_extensions_merged() -> None:
    kv = UploadMetadata(patient_address=PATIENT, extensions={"clinicId": "C-7"}).to_keyvalues()
    assert kv["clinicId"] == "C-7"


def test_patient_address_required() -> None:
    with pytest.raises(ValidationError):
        UploadMetadata(patient_address="  ").to_keyvalues()


def test_negative_size_rejected() -> None:
    with pytest.raises(ValidationError):
        UploadMetadata(patient_address=PATIENT, file_size=-1).to_keyvalues()


def test_reserved_key_cannot_be_shadowed() -> None:
    with pytest.raises(ValidationError, match="reserved"):
        UploadMetadata(patient_address=PATIENT, extensions={"patientAddress": "0xevil"}).to_keyvalues()


@pytest.mark.parametrize("key", ["1abc", "has space", "dash-key", ""])
def test_extension_keys_must_be_identifiers(key: str) -> None:
    with pytest.raises(ValidationError):
        UploadMetadata(patient_address=PATIENT, extensions={key: "v"}).to_keyvalues()


def test_extension_values_must_be_flat_strings() -> None:
    with pytest.raises(ValidationError):
        UploadMetadata(
            patient_address=PATIENT,
            extensions={"nested": {"a": 1}},  # type: ignore[dict-item]
        ).to_keyvalues()


def test_extension_key_count_bounded() -> None:
    extensions = {f"k{i}": "v" for i in range(MAX_EXTENSION_KEYS + 1)}
    with pytest.raises(ValidationError):
        UploadMetadata(patient_address=PATIENT, extensions=extensions).to_keyvalues()


def test_value_length_bounded() -> None:
    with pytest.raises(ValidationError) as exc_info:
        UploadMetadata(
            patient_address=PATIENT, extensions={"note": "x" * (MAX_VALUE_LENGTH + 1)}
        ).to_keyvalues()
    assert exc_info.value.details["keys"] == ["note"]
