"""Shared fixtures for contract tests.

Contract tests validate that every error body the API produces conforms
to the schema published in ``specs/contracts``.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

_REPO_ROOT = Path(__file__).resolve().parents[2]
_LOCAL_SPECS = _REPO_ROOT / "specs" / "contracts"


def _load_schema(name: str) -> dict[str, Any]:
    candidate = _LOCAL_SPECS / name
    if not candidate.is_file():
        msg = f"Schema '{name}' not found in {_LOCAL_SPECS}"
        raise FileNotFoundError(msg)
    return json.loads(candidate.read_text(encoding="utf-8"))  # type: ignore[no-any-return]


@pytest.fixture()
def error_schema() -> dict[str, Any]:
    return _load_schema("error.schema.json")
