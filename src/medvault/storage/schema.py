"""DDL for the PostgreSQL persistence layer."""

from __future__ import annotations

__all__ = ["SCHEMA_SQL"]

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id              TEXT PRIMARY KEY,
    wallet_address  TEXT NOT NULL UNIQUE,
    role            TEXT NOT NULL CHECK (role IN ('patient', 'doctor', 'admin')),
    verified        BOOLEAN NOT NULL DEFAULT FALSE,
    full_name       TEXT NOT NULL DEFAULT '',
    email           TEXT NOT NULL DEFAULT '',
    created_at      TIMESTAMPTZ NOT NULL,
    last_login_at   TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS ehr_records (
    id               TEXT PRIMARY KEY,
    owner_wallet     TEXT NOT NULL,
    title            TEXT NOT NULL,
    file_type        TEXT NOT NULL,
    content_address  TEXT NOT NULL,
    size_bytes       BIGINT NOT NULL,
    uploaded_at      TIMESTAMPTZ NOT NULL,
    record_type      TEXT NOT NULL DEFAULT 'other',
    description      TEXT NOT NULL DEFAULT '',
    deleted_at       TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS ehr_records_owner_idx ON ehr_records (owner_wallet, uploaded_at DESC);
CREATE INDEX IF NOT EXISTS ehr_records_cid_idx ON ehr_records (content_address);

CREATE TABLE IF NOT EXISTS access_requests (
    id                       TEXT PRIMARY KEY,
    doctor_wallet            TEXT NOT NULL,
    patient_wallet           TEXT NOT NULL,
    requested_record_ids     TEXT[] NOT NULL,
    document_names_snapshot  TEXT[] NOT NULL,
    purpose                  TEXT NOT NULL CHECK (char_length(purpose) >= 10),
    status                   TEXT NOT NULL
        CHECK (status IN ('sent', 'approved', 'denied', 'expired', 'revoked')),
    urgency                  TEXT NOT NULL DEFAULT 'routine',
    sent_at                  TIMESTAMPTZ NOT NULL,
    expires_at               TIMESTAMPTZ NOT NULL,
    responded_at             TIMESTAMPTZ,
    denial_reason            TEXT NOT NULL DEFAULT '',
    idempotency_key          TEXT UNIQUE
);
CREATE INDEX IF NOT EXISTS access_requests_patient_idx ON access_requests (patient_wallet, sent_at DESC);
CREATE INDEX IF NOT EXISTS access_requests_doctor_idx ON access_requests (doctor_wallet, sent_at DESC);

CREATE TABLE IF NOT EXISTS user_sessions (
    session_token      TEXT PRIMARY KEY,
    wallet_address     TEXT NOT NULL,
    active             BOOLEAN NOT NULL DEFAULT TRUE,
    created_at         TIMESTAMPTZ NOT NULL,
    expires_at         TIMESTAMPTZ NOT NULL,
    last_activity      TIMESTAMPTZ,
    terminated_reason  TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS ledger_events (
    event_id         TEXT PRIMARY KEY,
    subject_id       TEXT NOT NULL,
    event_type       TEXT NOT NULL,
    payload          JSONB NOT NULL,
    actor            TEXT NOT NULL,
    created_at       TIMESTAMPTZ NOT NULL,
    idempotency_key  TEXT UNIQUE
);
CREATE INDEX IF NOT EXISTS ledger_events_subject_idx ON ledger_events (subject_id, created_at DESC);
"""
