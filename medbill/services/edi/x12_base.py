"""
X12 EDI Base Utilities.

Provides the pieces shared by the 837P writer and its output check:
- Delimiters and segment identifiers
- Free-text sanitization and element formatting
- Tokenizer used to re-read generated interchanges
- NPI check digit validation
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import List, Optional

from medbill.core.errors import SerializationError

logger = logging.getLogger(__name__)


ELEMENT_SEPARATOR = "*"
SEGMENT_TERMINATOR = "~"
COMPONENT_SEPARATOR = ":"
REPETITION_SEPARATOR = "^"

# Characters that may never appear inside an element value
RESERVED_CHARACTERS = frozenset("~*^|\\")
_RESERVED_TRANSLATION = str.maketrans("", "", "".join(RESERVED_CHARACTERS))


# =============================================================================
# Enums
# =============================================================================


class SegmentID(str, Enum):
    """Segment identifiers written into an 837P."""

    # Envelope
    ISA = "ISA"  # Interchange Control Header
    IEA = "IEA"  # Interchange Control Trailer
    GS = "GS"  # Functional Group Header
    GE = "GE"  # Functional Group Trailer
    ST = "ST"  # Transaction Set Header
    SE = "SE"  # Transaction Set Trailer

    BHT = "BHT"  # Beginning of Hierarchical Transaction
    HL = "HL"  # Hierarchical Level

    # Names and Identification
    NM1 = "NM1"
    N3 = "N3"
    N4 = "N4"
    REF = "REF"
    PER = "PER"
    PRV = "PRV"

    # Subscriber / Claim
    SBR = "SBR"
    DMG = "DMG"
    CLM = "CLM"
    DTP = "DTP"
    HI = "HI"  # Health Care Diagnosis Codes

    # Service Line
    LX = "LX"
    SV1 = "SV1"  # Professional Service


class X12ParseError(SerializationError):
    """Generated content could not be re-read."""

    pass


# =============================================================================
# Data Models
# =============================================================================


@dataclass
class X12Segment:
    """
    Represents a single X12 segment.

    Example: NM1*IL*1*DOE*JOHN****MI*12345~
    - segment_id: NM1
    - elements: ['IL', '1', 'DOE', 'JOHN', '', '', '', 'MI', '12345']
    """

    segment_id: str
    elements: List[str]
    position: int = 0

    def get_element(self, index: int, default: str = "") -> str:
        """Get element at index (0-based after segment ID)."""
        if 0 <= index < len(self.elements):
            return self.elements[index]
        return default

    def __str__(self) -> str:
        return f"{self.segment_id}{ELEMENT_SEPARATOR}{ELEMENT_SEPARATOR.join(self.elements)}"


# =============================================================================
# Tokenizer
# =============================================================================


class X12Tokenizer:
    """
    Splits X12 text into segments.

    Delimiters are read from the fixed-width ISA segment when the
    content starts with one.
    """

    def __init__(
        self,
        element_separator: str = ELEMENT_SEPARATOR,
        segment_terminator: str = SEGMENT_TERMINATOR,
        component_separator: str = COMPONENT_SEPARATOR,
    ):
        self.element_separator = element_separator
        self.segment_terminator = segment_terminator
        self.component_separator = component_separator

    def detect_delimiters(self, content: str) -> None:
        """
        Read delimiters from the ISA segment.

        ISA is always 106 characters: element separator at position 3,
        component separator at 104, segment terminator at 105.
        """
        if len(content) < 106:
            raise X12ParseError("ISA segment must be at least 106 characters", segment_id="ISA")
        self.element_separator = content[3]
        self.component_separator = content[104]
        self.segment_terminator = content[105]

    def tokenize(self, content: str) -> List[X12Segment]:
        """Tokenize X12 content into segments."""
        if not content:
            raise X12ParseError("No content provided to tokenize")

        content = content.strip()
        if content.startswith("ISA"):
            self.detect_delimiters(content)

        segments = []
        for position, raw in enumerate(content.split(self.segment_terminator)):
            raw = raw.replace("\n", "").replace("\r", "").strip()
            if not raw:
                continue
            elements = raw.split(self.element_separator)
            segments.append(
                X12Segment(segment_id=elements[0], elements=elements[1:], position=position)
            )
        return segments


# =============================================================================
# Utility Functions
# =============================================================================


def sanitize_x12_text(value: Optional[str]) -> str:
    """Strip reserved separator characters and surrounding whitespace."""
    if not value:
        return ""
    return str(value).translate(_RESERVED_TRANSLATION).strip()


def strip_icd_decimal(code: str) -> str:
    """Render an ICD-10 code the way HI expects it: Z59.0 -> Z590."""
    return sanitize_x12_text(code).replace(".", "").upper()


def ensure_clean_element(value: str, segment_id: str, element_position: int) -> str:
    """
    Guard against a reserved character slipping past sanitization.

    Raises:
        SerializationError: If the value still contains a separator
    """
    if any(ch in RESERVED_CHARACTERS for ch in value):
        raise SerializationError(
            "Element contains reserved separator character",
            segment_id=segment_id,
            element_position=element_position,
            raw_segment=value,
        )
    return value


def format_x12_date(d: date) -> str:
    """Format date as X12 CCYYMMDD."""
    return d.strftime("%Y%m%d")


def format_x12_short_date(d: datetime) -> str:
    """Format date as ISA YYMMDD."""
    return d.strftime("%y%m%d")


def format_x12_time(t: datetime) -> str:
    """Format time as X12 HHMM."""
    return t.strftime("%H%M")


def format_x12_amount(amount: Decimal) -> str:
    """Format amount for X12 (2 decimal places, half-up)."""
    return str(Decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def validate_npi(npi: Optional[str]) -> bool:
    """
    Validate NPI using the Luhn algorithm.

    NPI is a 10-digit identifier; the check digit is computed over the
    number prefixed with the healthcare card issuer prefix 80840.
    """
    if not npi or len(npi) != 10 or not npi.isdigit():
        return False

    total = 0
    for i, digit in enumerate(reversed("80840" + npi)):
        d = int(digit)
        if i % 2 == 0:
            total += d
        else:
            doubled = d * 2
            total += doubled if doubled < 10 else doubled - 9

    return total % 10 == 0
