"""Typed upload metadata, flattened to key-values at the adapter boundary."""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field

from medvault.errors import ValidationError
from medvault.models import normalize_wallet

__all__ = ["UploadMetadata", "MAX_EXTENSION_KEYS", "MAX_VALUE_LENGTH"]

MAX_EXTENSION_KEYS = 10
MAX_VALUE_LENGTH = 1024

_KEY_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]{0,63}$")

# Fixed keys as sent to the pinning service
_RESERVED_KEYS = frozenset(
    {
        "patientAddress",
        "fileType",
        "fileSize",
        "recordType",
        "dateCreated",
        "originalFileName",
        "authorizedDoctors",
        "encrypted",
        "encryptionMethod",
    }
)


@dataclass(frozen=True)
class UploadMetadata:
    """Healthcare metadata attached to a pinned file.

    ``extensions`` carries provider-specific keys; they may not shadow the
    fixed keys.
    """

    patient_address: str
    file_type: str = ""
    file_size: int | None = None
    record_type: str = "other"
    date_created: str = ""
    original_file_name: str = ""
    authorized_doctors: tuple[str, ...] = ()
    encrypted: bool = False
    encryption_method: str = ""
    extensions: Mapping[str, str] = field(default_factory=dict)

    def to_keyvalues(self) -> dict[str, str]:
        """Validate and flatten to string key-values. Raises ValidationError."""
        patient = normalize_wallet(self.patient_address)
        if not patient:
            raise ValidationError("metadata.patient_address is required")
        if self.file_size is not None and self.file_size < 0:
            raise ValidationError("metadata.file_size must be non-negative")

        kv: dict[str, str] = {
            "patientAddress": patient,
            "recordType": self.record_type or "other",
        }
        if self.file_type:
            kv["fileType"] = self.file_type
        if self.file_size is not None:
            kv["fileSize"] = str(self.file_size)
        if self.date_created:
            kv["dateCreated"] = self.date_created
        if self.original_file_name:
            kv["originalFileName"] = self.original_file_name
        if self.authorized_doctors:
            kv["authorizedDoctors"] = json.dumps(
                [normalize_wallet(d) for d in self.authorized_doctors]
            )
        if self.encrypted:
            kv["encrypted"] = "true"
            kv["encryptionMethod"] = self.encryption_method or "unspecified"

        if len(self.extensions) > MAX_EXTENSION_KEYS:
            raise ValidationError(
                f"at most {MAX_EXTENSION_KEYS} extension metadata keys are allowed"
            )
        for key, value in self.extensions.items():
            if key in _RESERVED_KEYS:
                raise ValidationError(f"extension key {key!r} shadows a reserved key")
            if not _KEY_RE.match(key):
                raise ValidationError(f"invalid extension key {key!r}")
            if not isinstance(value, str):
                raise ValidationError(f"extension value for {key!r} must be a string")
            kv[key] = value

        too_long = [k for k, v in kv.items() if len(v) > MAX_VALUE_LENGTH]
        if too_long:
            raise ValidationError(
                "metadata values too long", details={"keys": sorted(too_long)}
            )
        return kv
