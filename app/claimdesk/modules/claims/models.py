from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.claimdesk.models import Base


class Claim(Base):
    __tablename__ = "claims"
    __table_args__ = (
        Index("idx_claims_user_id", "user_id"),
        Index("idx_claims_status", "status"),
        CheckConstraint("status IN ('Pending', 'Approved', 'Declined')", name="ck_claims_status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    # Required
    description: Mapped[str] = mapped_column(Text, nullable=False)
    provider_name: Mapped[str] = mapped_column(String(255), nullable=False)
    charge_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="Pending")  # Pending, Approved, Declined

    # Optional codes
    diagnosis_code: Mapped[str | None] = mapped_column(String(32), nullable=True)  # e.g. ICD-10 "J20.9"
    procedure_code: Mapped[str | None] = mapped_column(String(32), nullable=True)  # e.g. CPT "99213"

    # Owner (FK only; owned claims are looked up by query, not a backref)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    decided_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)


class ClaimDocument(Base):
    __tablename__ = "claim_documents"
    __table_args__ = (
        Index("idx_claim_documents_claim_id", "claim_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    claim_id: Mapped[int] = mapped_column(ForeignKey("claims.id", ondelete="CASCADE"), nullable=False)

    storage_key: Mapped[str] = mapped_column(Text, nullable=False)
    original_filename: Mapped[str] = mapped_column(Text, nullable=False)
    content_type: Mapped[str] = mapped_column(String(128), nullable=False)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    uploaded_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
