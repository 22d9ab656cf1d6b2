"""
Fee Schedule Models for Procedure Pricing.

A schedule is a priced set of (code system, code, modifier1..4) rows.
Contracted schedules belong to a payer+provider pair, chargemaster
schedules to a provider, reference schedules to neither.
"""

from datetime import date
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import (
    Boolean,
    Date,
    Enum,
    ForeignKey,
    Index,
    Numeric,
    String,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from medbill.core.enums import CodeSystem, FeeScheduleKind
from medbill.models.base import Base, TimeStampedModel, UUIDModel

MODIFIER_SLOTS = 4


def normalize_modifiers(modifiers: Optional[list[str] | tuple[str, ...]]) -> tuple[str, str, str, str]:
    """
    Pad a modifier list to the four stored slots.

    Empty slots are stored as "" so the uniqueness key compares them
    as values instead of NULLs.
    """
    cleaned = [m.strip().upper() for m in (modifiers or []) if m and m.strip()]
    if len(cleaned) > MODIFIER_SLOTS:
        raise ValueError(f"At most {MODIFIER_SLOTS} modifiers are allowed, got {len(cleaned)}")
    cleaned += [""] * (MODIFIER_SLOTS - len(cleaned))
    return cleaned[0], cleaned[1], cleaned[2], cleaned[3]


class FeeSchedule(Base, UUIDModel, TimeStampedModel):
    """Fee schedule header."""

    __tablename__ = "fee_schedules"

    name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Fee schedule name",
    )
    kind: Mapped[FeeScheduleKind] = mapped_column(
        Enum(FeeScheduleKind),
        nullable=False,
        index=True,
        comment="contracted | chargemaster | reference",
    )
    payer_id: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        index=True,
        comment="Payer for contracted schedules",
    )
    provider_id: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        index=True,
        comment="Provider for contracted and chargemaster schedules",
    )

    effective_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        comment="Effective date",
    )
    expiry_date: Mapped[Optional[date]] = mapped_column(
        Date,
        nullable=True,
        comment="Expiry date",
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    items: Mapped[list["FeeScheduleItem"]] = relationship(
        back_populates="fee_schedule",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_fee_schedules_kind_payer_provider", "kind", "payer_id", "provider_id"),
    )

    def __repr__(self) -> str:
        return f"<FeeSchedule(id={self.id}, kind='{self.kind}', name='{self.name}')>"


class FeeScheduleItem(Base, UUIDModel, TimeStampedModel):
    """
    One priced (code, modifier combination).

    99213 and 99213-25 are two rows with independent prices.
    """

    __tablename__ = "fee_schedule_items"

    fee_schedule_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("fee_schedules.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    code_system: Mapped[CodeSystem] = mapped_column(
        Enum(CodeSystem),
        nullable=False,
        comment="CPT | HCPCS",
    )
    code: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        comment="Procedure code",
    )
    modifier1: Mapped[str] = mapped_column(String(2), default="", nullable=False)
    modifier2: Mapped[str] = mapped_column(String(2), default="", nullable=False)
    modifier3: Mapped[str] = mapped_column(String(2), default="", nullable=False)
    modifier4: Mapped[str] = mapped_column(String(2), default="", nullable=False)

    price: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        comment="Billable amount",
    )
    unit: Mapped[str] = mapped_column(
        String(4),
        default="UN",
        nullable=False,
        comment="X12 unit of measure",
    )

    fee_schedule: Mapped["FeeSchedule"] = relationship(back_populates="items")

    __table_args__ = (
        Index(
            "ux_fee_schedule_items_key",
            "fee_schedule_id",
            "code_system",
            "code",
            "modifier1",
            "modifier2",
            "modifier3",
            "modifier4",
            unique=True,
        ),
        Index("ix_fee_schedule_items_code", "code"),
    )

    def __repr__(self) -> str:
        mods = "-".join(m for m in self.modifiers if m)
        return f"<FeeScheduleItem(code='{self.code}{'-' + mods if mods else ''}', price={self.price})>"

    @property
    def modifiers(self) -> tuple[str, str, str, str]:
        return (self.modifier1, self.modifier2, self.modifier3, self.modifier4)
