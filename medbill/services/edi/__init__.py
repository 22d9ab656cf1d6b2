"""
X12 EDI Services.

837P generation, output validation and envelope control numbers.
"""

from medbill.services.edi.control_numbers import (
    ControlNumberSequencer,
    InMemoryControlNumberSequencer,
    SqlControlNumberSequencer,
    format_control_number,
)
from medbill.services.edi.x12_837_generator import EnvelopeContext, X12837PGenerator, X12Interchange
from medbill.services.edi.x12_validator import X12OutputValidator, X12ValidationResult

__all__ = [
    "ControlNumberSequencer",
    "InMemoryControlNumberSequencer",
    "SqlControlNumberSequencer",
    "format_control_number",
    "EnvelopeContext",
    "X12837PGenerator",
    "X12Interchange",
    "X12OutputValidator",
    "X12ValidationResult",
]
