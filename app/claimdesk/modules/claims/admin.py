from __future__ import annotations

from flask import Blueprint, abort, current_app, flash, g, redirect, render_template, request, send_file, url_for

from app.claimdesk.accounts import Identity
from app.claimdesk.audit import record_event
from app.claimdesk.db import db_session
from app.claimdesk.errors import ClaimNotFound, InvalidStatusTransition, StorageError, ValidationError
from app.claimdesk.models import User
from app.claimdesk.modules.claims.models import Claim
from app.claimdesk.modules.claims.service import (
    VALID_STATUSES,
    ClaimScope,
    approve_claim,
    can_transition_to,
    create_claim,
    decline_claim,
    get_claim,
    list_claim_documents,
    list_claims,
    open_claim_document,
    status_counts,
    upload_claim_document,
)
from app.claimdesk.rbac import require_permission, user_has_permission
from app.claimdesk.storage import storage_from_config

bp = Blueprint("claims", __name__)

CLAIM_FORM_FIELDS = ("description", "provider_name", "charge_amount", "diagnosis_code", "procedure_code")


def _identity() -> Identity:
    identity = getattr(g, "identity", None)
    if identity is None:
        raise RuntimeError("No current identity")
    return identity


def _owner_names(s, claims: list[Claim]) -> dict[int, str]:
    ids = {c.user_id for c in claims}
    if not ids:
        return {}
    rows = s.query(User.id, User.username).filter(User.id.in_(ids)).all()
    return {uid: name for uid, name in rows}


def _status_filter() -> str:
    status = (request.args.get("status") or "").strip()
    return status if status in VALID_STATUSES else ""


def _load_visible_claim(s, claim_id: int) -> Claim:
    """Claim the caller owns, or any claim when they may view all."""
    try:
        claim = get_claim(s, claim_id)
    except ClaimNotFound:
        abort(404)
    identity = _identity()
    if claim.user_id != identity.user_id and not user_has_permission(identity, "claims.view_all"):
        g.missing_permission = "claims.view_all"
        abort(403)
    return claim


def _redirect_after_decision():
    nxt = (request.form.get("next") or "").strip()
    if nxt.startswith("/") and not nxt.startswith("//"):
        return redirect(nxt)
    return redirect(url_for("claims.dashboard"))


# ---------- Lists ----------
@bp.get("/claims")
@require_permission("claims.view")
def claims_list():
    s = db_session()
    identity = _identity()
    status_filter = _status_filter()
    claims = list_claims(s, ClaimScope.owned_by(identity.user_id), status=status_filter or None)
    return render_template(
        "claims/list.html",
        claims=claims,
        counts=status_counts(claims),
        statuses=VALID_STATUSES,
        status_filter=status_filter,
    )


@bp.get("/dashboard")
@require_permission("claims.view_all")
def dashboard():
    s = db_session()
    status_filter = _status_filter()
    claims = list_claims(s, ClaimScope.all(), status=status_filter or None)
    return render_template(
        "claims/dashboard.html",
        claims=claims,
        owners=_owner_names(s, claims),
        counts=status_counts(claims),
        statuses=VALID_STATUSES,
        status_filter=status_filter,
        can_decide=user_has_permission(_identity(), "claims.decide"),
        lock_decided=current_app.config.get("CLAIM_LOCK_DECIDED", False),
    )


# ---------- New ----------
@bp.get("/claim/create")
@require_permission("claims.create")
def claim_create_get():
    return render_template("claims/create.html", form={})


@bp.post("/claim/save")
@require_permission("claims.create")
def claim_save():
    s = db_session()
    payload = {k: request.form.get(k) for k in CLAIM_FORM_FIELDS}

    try:
        claim_id = create_claim(s, _identity(), payload)
    except ValidationError as e:
        s.rollback()
        for msg in e.errors:
            flash(msg, "danger")
        return render_template("claims/create.html", form=payload), 400
    s.commit()

    flash(f"Claim #{claim_id} submitted.", "success")
    return redirect(url_for("claims.claims_list"))


# ---------- Detail ----------
@bp.get("/claim/<int:claim_id>")
@require_permission("claims.view")
def claim_detail(claim_id: int):
    s = db_session()
    claim = _load_visible_claim(s, claim_id)
    owner = s.get(User, claim.user_id)
    decided_by = s.get(User, claim.decided_by_user_id) if claim.decided_by_user_id else None
    lock_decided = current_app.config.get("CLAIM_LOCK_DECIDED", False)
    return render_template(
        "claims/detail.html",
        claim=claim,
        owner=owner,
        decided_by=decided_by,
        documents=list_claim_documents(s, claim.id),
        can_decide=user_has_permission(_identity(), "claims.decide"),
        can_approve=can_transition_to(claim, "Approved", lock_decided=lock_decided),
        can_decline=can_transition_to(claim, "Declined", lock_decided=lock_decided),
    )


# ---------- Decisions ----------
def _decide(claim_id: int, action, verb: str):
    s = db_session()
    try:
        claim = action(s, _identity(), claim_id, lock_decided=current_app.config.get("CLAIM_LOCK_DECIDED", False))
    except ClaimNotFound as e:
        s.rollback()
        current_app.logger.warning("Status update on missing claim %s (request_id=%s)", claim_id, getattr(g, "request_id", None))
        return render_template("errors/404.html", message=str(e)), 404
    except InvalidStatusTransition as e:
        s.rollback()
        flash(f"{e}.", "danger")
        return _redirect_after_decision()
    s.commit()
    flash(f"Claim #{claim.id} {verb}.", "success")
    return _redirect_after_decision()


@bp.post("/claim/<int:claim_id>/approve")
@require_permission("claims.decide")
def claim_approve(claim_id: int):
    return _decide(claim_id, approve_claim, "approved")


@bp.post("/claim/<int:claim_id>/decline")
@require_permission("claims.decide")
def claim_decline(claim_id: int):
    return _decide(claim_id, decline_claim, "declined")


# ---------- Documents ----------
@bp.post("/claim/<int:claim_id>/documents/upload")
@require_permission("claims.view")
def claim_document_upload(claim_id: int):
    s = db_session()
    claim = _load_visible_claim(s, claim_id)

    f = request.files.get("file")
    if not f or not f.filename:
        flash("Please select a file to upload.", "danger")
        return redirect(url_for("claims.claim_detail", claim_id=claim_id))

    description = (request.form.get("description") or "").strip() or None
    content_type = (f.mimetype or "application/octet-stream").strip()
    storage = storage_from_config(current_app.config)
    try:
        upload_claim_document(s, storage, _identity(), claim, f.read(), f.filename, content_type, description=description)
    except ValidationError as e:
        s.rollback()
        for msg in e.errors:
            flash(msg, "danger")
        return redirect(url_for("claims.claim_detail", claim_id=claim_id))
    except StorageError as e:
        s.rollback()
        current_app.logger.error("Document upload failed for claim %s: %s (request_id=%s)", claim_id, e, getattr(g, "request_id", None))
        flash("Could not store the document. Please try again.", "danger")
        return redirect(url_for("claims.claim_detail", claim_id=claim_id))
    s.commit()

    flash("Document uploaded.", "success")
    return redirect(url_for("claims.claim_detail", claim_id=claim_id))


@bp.get("/claim/<int:claim_id>/documents/<int:doc_id>/download")
@require_permission("claims.view")
def claim_document_download(claim_id: int, doc_id: int):
    s = db_session()
    claim = _load_visible_claim(s, claim_id)
    storage = storage_from_config(current_app.config)
    try:
        doc, fobj = open_claim_document(s, storage, claim.id, doc_id)
    except (ClaimNotFound, StorageError):
        abort(404)

    record_event(
        s,
        actor=_identity(),
        action="claim.document_download",
        entity_type="ClaimDocument",
        entity_id=str(doc.id),
        metadata={"claim_id": claim.id, "filename": doc.original_filename},
    )
    s.commit()
    return send_file(fobj, mimetype=doc.content_type, as_attachment=True, download_name=doc.original_filename)
