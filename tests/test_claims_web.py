"""Tests for the claim pages: submit, list, dashboard, approve/decline, documents."""
import io

import pytest

from app.claimdesk import create_app
from app.claimdesk.accounts import register_user
from app.claimdesk.auth import _login_attempts
from app.claimdesk.db import session_scope
from app.claimdesk.models import Base
from app.claimdesk.modules.claims.models import Claim

CSRF = "test-csrf-token"


def _make_app(tmp_path, monkeypatch, **env):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_LOCAL_ROOT", str(tmp_path / "storage"))
    for k in ("DECIDE_ROLES", "CLAIM_LOCK_DECIDED", "DEFAULT_ROLE", "LOGIN_RATE_LIMIT"):
        monkeypatch.delenv(k, raising=False)
    for k, v in env.items():
        monkeypatch.setenv(k, v)
    _login_attempts.clear()

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    with session_scope(app) as s:
        register_user(s, "alice", "pw1")
        register_user(s, "bob", "pw2")
        register_user(s, "admin", "pw", role="ROLE_ADMIN")
    return app


@pytest.fixture()
def app(tmp_path, monkeypatch):
    return _make_app(tmp_path, monkeypatch)


@pytest.fixture()
def client(app):
    return app.test_client()


def _login(client, username="alice", password="pw1"):
    client.post("/login", data={"username": username, "password": password}, follow_redirects=True)
    # Login resets the session; pin a known CSRF token for the POSTs that follow.
    with client.session_transaction() as sess:
        sess["csrf_token"] = CSRF


def _submit(client, **overrides):
    data = {
        "csrf_token": CSRF,
        "description": "Office visit",
        "provider_name": "Dr. Smith",
        "charge_amount": "125.00",
        "diagnosis_code": "J20.9",
        "procedure_code": "99213",
    }
    data.update(overrides)
    return client.post("/claim/save", data=data, follow_redirects=False)


def _claims(app):
    with session_scope(app) as s:
        return s.query(Claim).order_by(Claim.id).all()


def test_claim_pages_require_login(client):
    for path in ("/claims", "/dashboard", "/claim/create", "/claim/1"):
        r = client.get(path)
        assert r.status_code == 302
        assert "/login" in r.headers["Location"]

    r = client.post("/claim/1/approve", data={"csrf_token": CSRF})
    assert r.status_code == 302
    assert "/login" in r.headers["Location"]


def test_create_form_ok(client):
    _login(client)
    r = client.get("/claim/create")
    assert r.status_code == 200
    assert b"Submit a Claim" in r.data


def test_submit_claim_starts_pending(client, app):
    _login(client)
    r = _submit(client)
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/claims")

    claims = _claims(app)
    assert len(claims) == 1
    assert claims[0].status == "Pending"

    r = client.get("/claims")
    assert b"Office visit" in r.data
    assert b"Pending" in r.data


def test_submit_claim_missing_fields_rerenders(client, app):
    _login(client)
    r = _submit(client, description="", charge_amount="12")
    assert r.status_code == 400
    assert b"Description is required." in r.data
    assert b"Dr. Smith" in r.data
    assert _claims(app) == []


def test_submit_without_csrf_rejected(client, app):
    _login(client)
    r = _submit(client, csrf_token="wrong")
    assert r.status_code == 400
    assert b"CSRF" in r.data
    assert _claims(app) == []


def test_claims_list_shows_only_own_claims(client):
    _login(client, "alice", "pw1")
    _submit(client, description="alice claim")
    client.post("/logout")

    _login(client, "bob", "pw2")
    _submit(client, description="bob claim")
    r = client.get("/claims")
    assert b"bob claim" in r.data
    assert b"alice claim" not in r.data

    r = client.get("/dashboard")
    assert b"bob claim" in r.data
    assert b"alice claim" in r.data


def test_approve_then_decline_last_write_wins(client, app):
    _login(client)
    _submit(client)
    claim_id = _claims(app)[0].id

    r = client.post(f"/claim/{claim_id}/approve", data={"csrf_token": CSRF})
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/dashboard")
    assert _claims(app)[0].status == "Approved"

    r = client.post(f"/claim/{claim_id}/decline", data={"csrf_token": CSRF, "next": f"/claim/{claim_id}"})
    assert r.status_code == 302
    assert r.headers["Location"].endswith(f"/claim/{claim_id}")
    assert _claims(app)[0].status == "Declined"


def test_any_user_can_decide_any_claim_by_default(client, app):
    _login(client, "alice", "pw1")
    _submit(client)
    client.post("/logout")

    _login(client, "bob", "pw2")
    claim_id = _claims(app)[0].id
    r = client.post(f"/claim/{claim_id}/approve", data={"csrf_token": CSRF})
    assert r.status_code == 302
    assert _claims(app)[0].status == "Approved"


def test_approve_missing_claim_404(client, app):
    _login(client)
    r = client.post("/claim/999/approve", data={"csrf_token": CSRF})
    assert r.status_code == 404
    assert b"Claim 999 not found." in r.data


def test_claim_detail_visible_to_owner(client, app):
    _login(client, "alice", "pw1")
    _submit(client)
    claim_id = _claims(app)[0].id
    r = client.get(f"/claim/{claim_id}")
    assert r.status_code == 200
    assert f"Claim #{claim_id}".encode() in r.data

    r = client.get("/claim/12345")
    assert r.status_code == 404


def test_unknown_role_has_no_claim_access(client, app):
    with session_scope(app) as s:
        register_user(s, "guest", "pw", role="ROLE_GUEST")
    _login(client, "guest", "pw")
    r = client.get("/claims")
    assert r.status_code == 403
    assert b"claims.view" in r.data


def test_decide_roles_restricts_approve(tmp_path, monkeypatch):
    app = _make_app(tmp_path, monkeypatch, DECIDE_ROLES="ROLE_ADMIN")
    client = app.test_client()

    _login(client, "alice", "pw1")
    _submit(client)
    claim_id = _claims(app)[0].id
    r = client.post(f"/claim/{claim_id}/approve", data={"csrf_token": CSRF})
    assert r.status_code == 403
    assert _claims(app)[0].status == "Pending"
    client.post("/logout")

    _login(client, "admin", "pw")
    r = client.post(f"/claim/{claim_id}/approve", data={"csrf_token": CSRF})
    assert r.status_code == 302
    assert _claims(app)[0].status == "Approved"


def test_lock_decided_blocks_second_decision(tmp_path, monkeypatch):
    app = _make_app(tmp_path, monkeypatch, CLAIM_LOCK_DECIDED="1")
    client = app.test_client()
    _login(client)
    _submit(client)
    claim_id = _claims(app)[0].id

    client.post(f"/claim/{claim_id}/approve", data={"csrf_token": CSRF})
    r = client.post(f"/claim/{claim_id}/decline", data={"csrf_token": CSRF}, follow_redirects=True)
    assert r.status_code == 200
    assert b"Cannot transition from" in r.data
    assert _claims(app)[0].status == "Approved"


def test_scenario_register_submit_approve(client, app):
    r = client.post("/register", data={"username": "carol", "password": "pw3", "confirm_password": "pw3"})
    assert r.status_code == 302
    _login(client, "carol", "pw3")

    _submit(client, description="x")
    r = client.get("/claims")
    assert r.data.count(b"status-pending") == 1

    claim_id = _claims(app)[0].id
    client.post(f"/claim/{claim_id}/approve", data={"csrf_token": CSRF})
    r = client.get("/claims")
    assert b"status-approved" in r.data
    assert b"status-pending" not in r.data


def test_document_upload_and_download(client, app):
    _login(client)
    _submit(client)
    claim_id = _claims(app)[0].id

    r = client.post(
        f"/claim/{claim_id}/documents/upload",
        data={"csrf_token": CSRF, "file": (io.BytesIO(b"receipt-bytes"), "receipt.pdf"), "description": "Receipt"},
        content_type="multipart/form-data",
        follow_redirects=True,
    )
    assert r.status_code == 200
    assert b"Document uploaded." in r.data
    assert b"receipt.pdf" in r.data

    r = client.get(f"/claim/{claim_id}/documents/1/download")
    assert r.status_code == 200
    assert r.data == b"receipt-bytes"

    r = client.get(f"/claim/{claim_id}/documents/99/download")
    assert r.status_code == 404


@pytest.mark.parametrize(
    "amount,message",
    [
        ("9" * 29, b"Charge amount must be a number."),
        ("1e30", b"Charge amount must be a number."),
        ("100000000000", b"Charge amount must be less than 10,000,000,000.00."),
    ],
)
def test_submit_out_of_range_amount_rerenders(client, app, amount, message):
    _login(client)
    r = _submit(client, charge_amount=amount)
    assert r.status_code == 400
    assert message in r.data
    assert _claims(app) == []


def test_same_filename_uploaded_twice_downloads_both(client, app):
    _login(client)
    _submit(client)
    claim_id = _claims(app)[0].id

    for body in (b"first", b"second!"):
        r = client.post(
            f"/claim/{claim_id}/documents/upload",
            data={"csrf_token": CSRF, "file": (io.BytesIO(body), "receipt.pdf")},
            content_type="multipart/form-data",
        )
        assert r.status_code == 302

    assert client.get(f"/claim/{claim_id}/documents/1/download").data == b"first"
    assert client.get(f"/claim/{claim_id}/documents/2/download").data == b"second!"
