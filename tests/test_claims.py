"""Tests for the claim workflow service."""
from dataclasses import dataclass
from decimal import Decimal

import pytest
from sqlalchemy.orm import Session

from app.claimdesk import create_app
from app.claimdesk.accounts import authenticate, register_user
from app.claimdesk.db import session_scope
from app.claimdesk.errors import ClaimNotFound, InvalidStatusTransition, StorageError, ValidationError
from app.claimdesk.models import AuditEvent, Base
from app.claimdesk.modules.claims.models import Claim, ClaimDocument
from app.claimdesk.modules.claims.service import (
    ClaimScope,
    approve_claim,
    build_claim_storage_key,
    create_claim,
    decline_claim,
    get_claim,
    list_claim_documents,
    list_claims,
    open_claim_document,
    parse_amount,
    set_status,
    status_counts,
    upload_claim_document,
    validate_claim_payload,
)
from app.claimdesk.storage import LocalStorage


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    for k in ("DECIDE_ROLES", "CLAIM_LOCK_DECIDED", "DEFAULT_ROLE"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    return app


def _identity(app, username="alice", password="pw1"):
    with session_scope(app) as s:
        register_user(s, username, password)
    with session_scope(app) as s:
        return authenticate(s, username, password)


def _payload(**overrides):
    payload = {
        "description": "Office visit",
        "provider_name": "Dr. Smith",
        "charge_amount": "125.00",
        "diagnosis_code": "j20.9",
        "procedure_code": "99213",
    }
    payload.update(overrides)
    return payload


def test_create_claim_is_pending_and_owned(app):
    alice = _identity(app)
    with session_scope(app) as s:
        claim_id = create_claim(s, alice, _payload())

    with session_scope(app) as s:
        claim = get_claim(s, claim_id)
        assert claim.status == "Pending"
        assert claim.user_id == alice.user_id
        assert claim.charge_amount == Decimal("125.00")
        assert claim.diagnosis_code == "J20.9"
        assert claim.decided_at is None


def test_create_claim_validation_lists_every_error(app):
    alice = _identity(app)
    with pytest.raises(ValidationError) as exc:
        with session_scope(app) as s:
            create_claim(s, alice, {"description": " ", "provider_name": "", "charge_amount": "abc"})
    assert "Description is required." in exc.value.errors
    assert "Provider name is required." in exc.value.errors
    assert "Charge amount must be a number." in exc.value.errors

    with session_scope(app) as s:
        assert s.query(Claim).count() == 0


def test_validate_claim_payload_amounts():
    assert validate_claim_payload(_payload(charge_amount="-1")) == ["Charge amount cannot be negative."]
    assert validate_claim_payload(_payload(charge_amount="")) == ["Charge amount is required."]
    assert validate_claim_payload(_payload(charge_amount="$1,250.50")) == []
    assert validate_claim_payload(_payload(procedure_code="9" * 33)) == ["Procedure code must be at most 32 characters."]
    assert validate_claim_payload(_payload(charge_amount="1e30")) == ["Charge amount must be a number."]
    assert validate_claim_payload(_payload(charge_amount="9999999999.99")) == []
    assert validate_claim_payload(_payload(charge_amount="10000000000")) == [
        "Charge amount must be less than 10,000,000,000.00."
    ]


def test_parse_amount():
    assert parse_amount("1,250.5") == Decimal("1250.50")
    assert parse_amount("$80") == Decimal("80.00")
    assert parse_amount("nan") is None
    assert parse_amount("") is None
    assert parse_amount(None) is None
    assert parse_amount("1e30") is None
    assert parse_amount("9" * 29) is None


def test_last_write_wins_between_decisions(app):
    alice = _identity(app)
    with session_scope(app) as s:
        claim_id = create_claim(s, alice, _payload())

    with session_scope(app) as s:
        set_status(s, alice, claim_id, "Approved")
    with session_scope(app) as s:
        claim = set_status(s, alice, claim_id, "Declined")
        assert claim.status == "Declined"

    with session_scope(app) as s:
        claim = get_claim(s, claim_id)
        assert claim.status == "Declined"
        assert claim.decided_by_user_id == alice.user_id
        assert claim.decided_at is not None


def test_status_never_returns_to_pending(app):
    alice = _identity(app)
    with session_scope(app) as s:
        claim_id = create_claim(s, alice, _payload())
        approve_claim(s, alice, claim_id)

    with pytest.raises(InvalidStatusTransition):
        with session_scope(app) as s:
            set_status(s, alice, claim_id, "Pending")


def test_unknown_status_rejected(app):
    alice = _identity(app)
    with session_scope(app) as s:
        claim_id = create_claim(s, alice, _payload())

    with pytest.raises(ValidationError):
        with session_scope(app) as s:
            set_status(s, alice, claim_id, "Escalated")


def test_locked_decisions_are_final(app):
    alice = _identity(app)
    with session_scope(app) as s:
        claim_id = create_claim(s, alice, _payload())
        approve_claim(s, alice, claim_id, lock_decided=True)

    with pytest.raises(InvalidStatusTransition):
        with session_scope(app) as s:
            decline_claim(s, alice, claim_id, lock_decided=True)

    with session_scope(app) as s:
        assert get_claim(s, claim_id).status == "Approved"


def test_set_status_missing_claim_does_not_mutate(app):
    alice = _identity(app)
    with session_scope(app) as s:
        create_claim(s, alice, _payload())

    with session_scope(app) as s:
        events_before = s.query(AuditEvent).count()

    with pytest.raises(ClaimNotFound):
        with session_scope(app) as s:
            set_status(s, alice, 999, "Approved")

    with session_scope(app) as s:
        assert s.query(AuditEvent).count() == events_before
        assert [c.status for c in list_claims(s, ClaimScope.all())] == ["Pending"]


def test_list_claims_owned_by_in_creation_order(app):
    alice = _identity(app, "alice")
    bob = _identity(app, "bob")
    with session_scope(app) as s:
        a1 = create_claim(s, alice, _payload(description="a1"))
        b1 = create_claim(s, bob, _payload(description="b1"))
        a2 = create_claim(s, alice, _payload(description="a2"))
        a3 = create_claim(s, alice, _payload(description="a3"))

    with session_scope(app) as s:
        owned = list_claims(s, ClaimScope.owned_by(alice.user_id))
        assert [c.id for c in owned] == [a1, a2, a3]
        assert all(c.user_id == alice.user_id for c in owned)

        everything = list_claims(s, ClaimScope.all())
        assert [c.id for c in everything] == [a1, b1, a2, a3]

        approve_claim(s, bob, a2)
        s.flush()
        assert [c.id for c in list_claims(s, ClaimScope.all(), status="Approved")] == [a2]
        assert status_counts(everything) == {"Pending": 3, "Approved": 1, "Declined": 0}


def test_list_claims_is_a_fresh_snapshot(app):
    alice = _identity(app)
    with session_scope(app) as s:
        first = list_claims(s, ClaimScope.owned_by(alice.user_id))
    with session_scope(app) as s:
        create_claim(s, alice, _payload())
    with session_scope(app) as s:
        second = list_claims(s, ClaimScope.owned_by(alice.user_id))
    assert first == []
    assert len(second) == 1


def test_status_change_is_audited(app):
    alice = _identity(app)
    with session_scope(app) as s:
        claim_id = create_claim(s, alice, _payload())
        decline_claim(s, alice, claim_id)

    with session_scope(app) as s:
        ev = s.query(AuditEvent).filter(AuditEvent.action == "claim.status_change").one()
        assert ev.entity_id == str(claim_id)
        assert ev.actor_username == "alice"
        assert '"to": "Declined"' in ev.metadata_json


def test_end_to_end_scenario(app):
    with session_scope(app) as s:
        register_user(s, "alice", "pw1")
    with session_scope(app) as s:
        alice = authenticate(s, "alice", "pw1")
    with session_scope(app) as s:
        claim_id = create_claim(s, alice, {"description": "x", "provider_name": "Clinic", "charge_amount": "10"})
    with session_scope(app) as s:
        claims = list_claims(s, ClaimScope.owned_by(alice.user_id))
        assert [(c.id, c.status) for c in claims] == [(claim_id, "Pending")]
    with session_scope(app) as s:
        set_status(s, alice, claim_id, "Approved")
    with session_scope(app) as s:
        claims = list_claims(s, ClaimScope.owned_by(alice.user_id))
        assert [(c.id, c.status) for c in claims] == [(claim_id, "Approved")]


def test_upload_claim_document(app, tmp_path):
    alice = _identity(app)
    storage = LocalStorage(root=tmp_path / "storage")
    with session_scope(app) as s:
        claim_id = create_claim(s, alice, _payload())
        claim = get_claim(s, claim_id)
        doc = upload_claim_document(s, storage, alice, claim, b"%PDF-1.4 test", "../receipt 1.pdf", "application/pdf")
        assert doc.original_filename == "receipt_1.pdf"
        assert doc.size_bytes == len(b"%PDF-1.4 test")
        assert doc.storage_key.startswith(f"claims/{claim_id}/")
        assert storage.exists(doc.storage_key)

        with pytest.raises(ValidationError):
            upload_claim_document(s, storage, alice, claim, b"", "empty.txt", "text/plain")


def test_build_claim_storage_key_format():
    from datetime import date

    assert build_claim_storage_key(7, "scan.png", date(2026, 1, 2), token="ab12") == "claims/7/2026-01-02/ab12_scan.png"
    assert build_claim_storage_key(7, "scan.png") != build_claim_storage_key(7, "scan.png")


def test_same_filename_uploaded_twice_keeps_both_files(app, tmp_path):
    alice = _identity(app)
    storage = LocalStorage(root=tmp_path / "storage")
    with session_scope(app) as s:
        claim_id = create_claim(s, alice, _payload())
        claim = get_claim(s, claim_id)
        d1 = upload_claim_document(s, storage, alice, claim, b"first", "receipt.pdf", "application/pdf")
        d2 = upload_claim_document(s, storage, alice, claim, b"second!", "receipt.pdf", "application/pdf")
        assert d1.storage_key != d2.storage_key
        ids = (d1.id, d2.id)

    with session_scope(app) as s:
        assert [d.original_filename for d in list_claim_documents(s, claim_id)] == ["receipt.pdf", "receipt.pdf"]
        for doc_id, expected in zip(ids, (b"first", b"second!")):
            doc, fobj = open_claim_document(s, storage, claim_id, doc_id)
            with fobj:
                assert fobj.read() == expected
            assert doc.size_bytes == len(expected)


@dataclass(frozen=True)
class _RecordingStorage(LocalStorage):
    """Checks that the document row is already flushed when bytes are written."""

    session: Session | None = None

    def put_bytes(self, key, data, *, content_type=None):
        assert self.session.query(ClaimDocument).filter(ClaimDocument.storage_key == key).count() == 1
        super().put_bytes(key, data, content_type=content_type)


class _FailingStorage(LocalStorage):
    def put_bytes(self, key, data, *, content_type=None):
        raise StorageError("bucket unavailable")


def test_upload_flushes_row_before_writing_bytes(app, tmp_path):
    alice = _identity(app)
    with session_scope(app) as s:
        storage = _RecordingStorage(root=tmp_path / "storage", session=s)
        claim_id = create_claim(s, alice, _payload())
        doc = upload_claim_document(s, storage, alice, get_claim(s, claim_id), b"data", "scan.png", "image/png")
        assert storage.exists(doc.storage_key)


def test_failed_storage_write_leaves_no_document_row(app, tmp_path):
    alice = _identity(app)
    with session_scope(app) as s:
        claim_id = create_claim(s, alice, _payload())

    with pytest.raises(StorageError):
        with session_scope(app) as s:
            upload_claim_document(
                s, _FailingStorage(root=tmp_path / "storage"), alice, get_claim(s, claim_id), b"data", "scan.png", "image/png"
            )

    with session_scope(app) as s:
        assert s.query(ClaimDocument).count() == 0
        assert not (tmp_path / "storage").exists()
