"""
Control Number Counter Table.

One row per X12 envelope counter. The row value is the last number
issued; the sequencer increments it in the same transaction that
reads it back.
"""

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from medbill.models.base import Base, TimeStampedModel


class ControlNumberCounter(Base, TimeStampedModel):
    """Persisted envelope counter."""

    __tablename__ = "control_number_counters"

    name: Mapped[str] = mapped_column(
        String(10),
        primary_key=True,
        comment="isa | gs | st",
    )
    value: Mapped[int] = mapped_column(
        BigInteger,
        default=0,
        nullable=False,
        comment="Last issued value",
    )
    wrap_count: Mapped[int] = mapped_column(
        BigInteger,
        default=0,
        nullable=False,
        comment="Times the counter restarted at 1",
    )

    def __repr__(self) -> str:
        return f"<ControlNumberCounter(name='{self.name}', value={self.value})>"
