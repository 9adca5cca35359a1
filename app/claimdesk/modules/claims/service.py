"""
Claim workflow service layer.
Handles claim creation, scoped listing, status transitions and supporting documents.

Every call takes the caller's Identity explicitly; nothing here reads the Flask
session. Authorization (who may call what) is enforced by the blueprint through
rbac.require_permission before a call lands here.
"""
from __future__ import annotations

import enum
import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, BinaryIO

from sqlalchemy.orm import Session
from werkzeug.utils import secure_filename

from app.claimdesk.audit import record_event
from app.claimdesk.errors import ClaimNotFound, InvalidStatusTransition, ValidationError
from app.claimdesk.storage import Storage

from .models import Claim, ClaimDocument

if TYPE_CHECKING:
    from app.claimdesk.accounts import Identity

logger = logging.getLogger(__name__)


class ClaimStatus(str, enum.Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    DECLINED = "Declined"


VALID_STATUSES = tuple(st.value for st in ClaimStatus)

# Nothing ever goes back to Pending. Between decided states the last write wins.
STATUS_TRANSITIONS = {
    "Pending": {"Approved", "Declined"},
    "Approved": {"Approved", "Declined"},
    "Declined": {"Approved", "Declined"},
}

# CLAIM_LOCK_DECIDED=1: a decision is final.
LOCKED_STATUS_TRANSITIONS = {
    "Pending": {"Approved", "Declined"},
    "Approved": set(),
    "Declined": set(),
}

CODE_MAX_LENGTH = 32
PROVIDER_MAX_LENGTH = 255
# claims.charge_amount is Numeric(12, 2)
CHARGE_AMOUNT_LIMIT = Decimal("10000000000")


@dataclass(frozen=True)
class ClaimScope:
    """Either every claim (owner_id None) or the claims of one user."""

    owner_id: int | None = None

    @classmethod
    def all(cls) -> "ClaimScope":
        return cls(owner_id=None)

    @classmethod
    def owned_by(cls, user_id: int) -> "ClaimScope":
        return cls(owner_id=user_id)


def parse_amount(raw: object) -> Decimal | None:
    """Parse a charge amount ("1,250.00", "$80", Decimal, int). None if unparseable."""
    if raw is None:
        return None
    text = str(raw).strip().replace(",", "").lstrip("$")
    if not text:
        return None
    try:
        value = Decimal(text)
        if not value.is_finite():
            return None
        # quantize raises for values past the context precision (e.g. "1e30")
        return value.quantize(Decimal("0.01"))
    except InvalidOperation:
        return None


def validate_claim_payload(payload: dict) -> list[str]:
    """Validate claim creation payload. Returns list of errors."""
    errors = []
    if not (payload.get("description") or "").strip():
        errors.append("Description is required.")

    provider = (payload.get("provider_name") or "").strip()
    if not provider:
        errors.append("Provider name is required.")
    elif len(provider) > PROVIDER_MAX_LENGTH:
        errors.append(f"Provider name must be at most {PROVIDER_MAX_LENGTH} characters.")

    raw_amount = payload.get("charge_amount")
    if raw_amount is None or str(raw_amount).strip() == "":
        errors.append("Charge amount is required.")
    else:
        amount = parse_amount(raw_amount)
        if amount is None:
            errors.append("Charge amount must be a number.")
        elif amount < 0:
            errors.append("Charge amount cannot be negative.")
        elif amount >= CHARGE_AMOUNT_LIMIT:
            errors.append(f"Charge amount must be less than {CHARGE_AMOUNT_LIMIT:,.2f}.")

    for field, label in (("diagnosis_code", "Diagnosis code"), ("procedure_code", "Procedure code")):
        if len((payload.get(field) or "").strip()) > CODE_MAX_LENGTH:
            errors.append(f"{label} must be at most {CODE_MAX_LENGTH} characters.")
    return errors


def create_claim(s: Session, identity: Identity, payload: dict) -> int:
    """Create a Pending claim owned by the caller. Returns the new claim id."""
    errors = validate_claim_payload(payload)
    if errors:
        raise ValidationError(errors)

    now = datetime.utcnow()
    claim = Claim(
        description=payload["description"].strip(),
        provider_name=payload["provider_name"].strip(),
        charge_amount=parse_amount(payload["charge_amount"]),
        diagnosis_code=(payload.get("diagnosis_code") or "").strip().upper() or None,
        procedure_code=(payload.get("procedure_code") or "").strip().upper() or None,
        status=ClaimStatus.PENDING.value,
        user_id=identity.user_id,
        created_at=now,
        updated_at=now,
    )
    s.add(claim)
    s.flush()

    record_event(
        s,
        actor=identity,
        action="claim.create",
        entity_type="Claim",
        entity_id=str(claim.id),
        metadata={
            "provider_name": claim.provider_name,
            "charge_amount": str(claim.charge_amount),
            "status": claim.status,
        },
    )
    logger.info("Claim %s created by user %s", claim.id, identity.user_id)
    return claim.id


def list_claims(s: Session, scope: ClaimScope, *, status: str | None = None) -> list[Claim]:
    """Snapshot of claims in creation order, optionally limited to one owner and/or status."""
    q = s.query(Claim)
    if scope.owner_id is not None:
        q = q.filter(Claim.user_id == scope.owner_id)
    if status:
        if status not in VALID_STATUSES:
            raise ValidationError(f"Invalid status. Must be one of: {', '.join(VALID_STATUSES)}")
        q = q.filter(Claim.status == status)
    return q.order_by(Claim.id.asc()).all()


def get_claim(s: Session, claim_id: int) -> Claim:
    claim = s.get(Claim, claim_id)
    if claim is None:
        raise ClaimNotFound(claim_id)
    return claim


def can_transition_to(claim: Claim, new_status: str, *, lock_decided: bool = False) -> bool:
    table = LOCKED_STATUS_TRANSITIONS if lock_decided else STATUS_TRANSITIONS
    return new_status in table.get(claim.status, set())


def set_status(
    s: Session,
    identity: Identity,
    claim_id: int,
    new_status: str,
    *,
    lock_decided: bool = False,
    reason: str | None = None,
) -> Claim:
    """Overwrite a claim's status (last write wins unless lock_decided)."""
    if new_status not in VALID_STATUSES:
        raise ValidationError(f"Invalid status. Must be one of: {', '.join(VALID_STATUSES)}")

    claim = get_claim(s, claim_id)
    if not can_transition_to(claim, new_status, lock_decided=lock_decided):
        raise InvalidStatusTransition(claim.status, new_status)

    old_status = claim.status
    now = datetime.utcnow()
    claim.status = new_status
    claim.updated_at = now
    claim.decided_at = now
    claim.decided_by_user_id = identity.user_id

    record_event(
        s,
        actor=identity,
        action="claim.status_change",
        entity_type="Claim",
        entity_id=str(claim.id),
        reason=reason,
        metadata={
            "from": old_status,
            "to": new_status,
            "owner_user_id": claim.user_id,
        },
    )
    if old_status != ClaimStatus.PENDING.value and old_status != new_status:
        logger.warning("Claim %s decision overwritten: %s -> %s by user %s", claim.id, old_status, new_status, identity.user_id)
    return claim


def approve_claim(s: Session, identity: Identity, claim_id: int, *, lock_decided: bool = False) -> Claim:
    return set_status(s, identity, claim_id, ClaimStatus.APPROVED.value, lock_decided=lock_decided)


def decline_claim(s: Session, identity: Identity, claim_id: int, *, lock_decided: bool = False) -> Claim:
    return set_status(s, identity, claim_id, ClaimStatus.DECLINED.value, lock_decided=lock_decided)


def status_counts(claims: list[Claim]) -> dict[str, int]:
    counts = {st: 0 for st in VALID_STATUSES}
    for c in claims:
        counts[c.status] = counts.get(c.status, 0) + 1
    return counts


# ---------- Supporting documents ----------
def build_claim_storage_key(
    claim_id: int,
    filename: str,
    upload_date: date | None = None,
    *,
    token: str | None = None,
) -> str:
    """Build the storage key for a claim document.

    The random token keeps repeat uploads of the same filename from sharing a key.
    """
    if upload_date is None:
        upload_date = date.today()
    if token is None:
        token = uuid.uuid4().hex[:12]
    safe_filename = secure_filename(filename) or "document.bin"
    return f"claims/{claim_id}/{upload_date.isoformat()}/{token}_{safe_filename}"


def file_digest_and_size(file_bytes: bytes) -> tuple[str, int]:
    h = hashlib.sha256()
    h.update(file_bytes)
    return (h.hexdigest(), len(file_bytes))


def upload_claim_document(
    s: Session,
    storage: Storage,
    identity: Identity,
    claim: Claim,
    file_bytes: bytes,
    filename: str,
    content_type: str,
    description: str | None = None,
) -> ClaimDocument:
    """Store a supporting file and attach it to the claim."""
    if not file_bytes:
        raise ValidationError("Uploaded file is empty.")

    sha256, size_bytes = file_digest_and_size(file_bytes)
    storage_key = build_claim_storage_key(claim.id, filename)

    doc = ClaimDocument(
        claim_id=claim.id,
        storage_key=storage_key,
        original_filename=secure_filename(filename) or "document.bin",
        content_type=content_type,
        sha256=sha256,
        size_bytes=size_bytes,
        description=description,
        uploaded_by_user_id=identity.user_id,
    )
    s.add(doc)
    # Row first: a failed flush must not leave an orphaned object in storage.
    s.flush()
    storage.put_bytes(storage_key, file_bytes, content_type=content_type)

    record_event(
        s,
        actor=identity,
        action="claim.document_upload",
        entity_type="ClaimDocument",
        entity_id=str(doc.id),
        metadata={"claim_id": claim.id, "filename": doc.original_filename, "sha256": sha256},
    )
    return doc


def list_claim_documents(s: Session, claim_id: int) -> list[ClaimDocument]:
    return (
        s.query(ClaimDocument)
        .filter(ClaimDocument.claim_id == claim_id)
        .order_by(ClaimDocument.uploaded_at.desc(), ClaimDocument.id.desc())
        .all()
    )


def open_claim_document(s: Session, storage: Storage, claim_id: int, doc_id: int) -> tuple[ClaimDocument, BinaryIO]:
    doc = s.get(ClaimDocument, doc_id)
    if doc is None or doc.claim_id != claim_id:
        raise ClaimNotFound(claim_id)
    return doc, storage.open(doc.storage_key)
