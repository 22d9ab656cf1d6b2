"""
SQLAlchemy Models for the Billing Engine.

Importing this package registers every table on Base.metadata.
"""

from medbill.models.base import Base, TimeStampedModel, UUIDModel
from medbill.models.claim import Claim, ClaimLine, ClaimStatusHistory
from medbill.models.control_number import ControlNumberCounter
from medbill.models.fee_schedule import FeeSchedule, FeeScheduleItem, normalize_modifiers
from medbill.models.reference_code import ReferenceCode

__all__ = [
    "Base",
    "TimeStampedModel",
    "UUIDModel",
    "Claim",
    "ClaimLine",
    "ClaimStatusHistory",
    "ControlNumberCounter",
    "FeeSchedule",
    "FeeScheduleItem",
    "normalize_modifiers",
    "ReferenceCode",
]
