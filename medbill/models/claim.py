"""
Claim Models.

Persisted output of one successful pipeline run: the claim header,
its lines, the 837P text and the status history. Immutable after
generation except for status transitions.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from medbill.core.enums import ClaimStatus, RateSource
from medbill.models.base import Base, TimeStampedModel, UUIDModel

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Claim(Base, UUIDModel, TimeStampedModel):
    """Generated professional claim."""

    __tablename__ = "claims"

    claim_id: Mapped[str] = mapped_column(
        String(38),
        nullable=False,
        unique=True,
        comment="Patient control number (CLM01)",
    )
    encounter_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
    )
    payer_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    provider_id: Mapped[str] = mapped_column(String(50), nullable=False)
    service_date: Mapped[date] = mapped_column(Date, nullable=False)

    status: Mapped[ClaimStatus] = mapped_column(
        Enum(ClaimStatus),
        default=ClaimStatus.GENERATED,
        nullable=False,
        index=True,
    )

    # Diagnoses in claim order; position = pointer target
    diagnoses: Mapped[list] = mapped_column(
        JSONType,
        nullable=False,
        comment="Ordered ICD-10 codes, principal first",
    )
    total_charge: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
    )

    # Envelope
    isa_control_number: Mapped[str] = mapped_column(String(9), nullable=False)
    gs_control_number: Mapped[str] = mapped_column(String(9), nullable=False)
    st_control_number: Mapped[str] = mapped_column(String(4), nullable=False)
    segment_count: Mapped[int] = mapped_column(Integer, nullable=False)
    claim_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    x12_content: Mapped[str] = mapped_column(Text, nullable=False)

    # Review
    requires_manual_review: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        index=True,
    )
    review_flags: Mapped[Optional[list]] = mapped_column(
        JSONType,
        nullable=True,
        comment="[{reason, message}] attached when routed to manual review",
    )

    lines: Mapped[list["ClaimLine"]] = relationship(
        back_populates="claim",
        cascade="all, delete-orphan",
        order_by="ClaimLine.position",
    )
    status_history: Mapped[list["ClaimStatusHistory"]] = relationship(
        back_populates="claim",
        cascade="all, delete-orphan",
        order_by="ClaimStatusHistory.changed_at",
    )

    __table_args__ = (
        Index("ix_claims_isa_st", "isa_control_number", "st_control_number"),
    )

    def __repr__(self) -> str:
        return f"<Claim(claim_id='{self.claim_id}', status={self.status.value}, total={self.total_charge})>"


class ClaimLine(Base, UUIDModel):
    """Service line; position is the LX number."""

    __tablename__ = "claim_lines"

    claim_pk: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("claims.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    procedure_code: Mapped[str] = mapped_column(String(10), nullable=False)
    modifiers: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    charge_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    units: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    diagnosis_pointers: Mapped[list] = mapped_column(
        JSONType,
        nullable=False,
        default=lambda: [1],
        comment="1-based positions into claims.diagnoses",
    )
    rate_source: Mapped[RateSource] = mapped_column(Enum(RateSource), nullable=False)

    claim: Mapped["Claim"] = relationship(back_populates="lines")

    __table_args__ = (
        Index("ux_claim_lines_claim_position", "claim_pk", "position", unique=True),
    )


class ClaimStatusHistory(Base, UUIDModel):
    """Status change history for a claim."""

    __tablename__ = "claim_status_history"

    claim_pk: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("claims.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    previous_status: Mapped[Optional[ClaimStatus]] = mapped_column(
        Enum(ClaimStatus),
        nullable=True,
    )
    new_status: Mapped[ClaimStatus] = mapped_column(
        Enum(ClaimStatus),
        nullable=False,
    )
    event: Mapped[str] = mapped_column(String(20), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    actor: Mapped[str] = mapped_column(
        String(50),
        default="system",
        nullable=False,
    )
    reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    claim: Mapped["Claim"] = relationship(back_populates="status_history")
