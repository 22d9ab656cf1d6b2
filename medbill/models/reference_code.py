"""
Reference Code Table.

CPT, HCPCS, ICD-10 and modifier rows with status and effective dates.
The decision engine only reads rows whose status is active.
"""

from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy import Date, Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from medbill.core.enums import CodeStatus
from medbill.models.base import Base, TimeStampedModel, UUIDModel


class ReferenceCode(Base, UUIDModel, TimeStampedModel):
    """Code table row."""

    __tablename__ = "reference_codes"

    code_system: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        comment="CPT | HCPCS | ICD10 | MODIFIER",
    )
    code: Mapped[str] = mapped_column(String(10), nullable=False)
    short_desc: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    long_desc: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(10),
        default=CodeStatus.ACTIVE.value,
        nullable=False,
    )
    effective_from: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    effective_to: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    # RBRVS components (CPT only)
    work_rvu: Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 2), nullable=True)
    practice_rvu: Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 2), nullable=True)
    malpractice_rvu: Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 2), nullable=True)

    __table_args__ = (
        Index("ux_reference_codes_system_code", "code_system", "code", unique=True),
        Index("ix_reference_codes_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<ReferenceCode({self.code_system}:{self.code}, status='{self.status}')>"
