"""
X12 837P Output Validator.

Re-reads a generated interchange and checks its envelope structure
before it leaves the process: segment order at the edges, required
segments, the SE segment count and control-number agreement between
headers and trailers.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from medbill.core.errors import SerializationError
from medbill.services.edi.x12_base import SegmentID, X12Segment, X12Tokenizer

logger = logging.getLogger(__name__)


REQUIRED_SEGMENTS = tuple(
    s.value
    for s in (
        SegmentID.ISA, SegmentID.GS, SegmentID.ST, SegmentID.BHT, SegmentID.HL, SegmentID.CLM,
        SegmentID.HI, SegmentID.LX, SegmentID.SV1, SegmentID.SE, SegmentID.GE, SegmentID.IEA,
    )
)
KNOWN_SEGMENTS = frozenset(s.value for s in SegmentID)


@dataclass
class X12ValidationResult:
    """Outcome of an output check."""

    is_valid: bool
    errors: List[str] = field(default_factory=list)
    segment_count: int = 0


class X12OutputValidator:
    """Structural check of a generated 837P interchange."""

    def __init__(self, tokenizer: Optional[X12Tokenizer] = None):
        self.tokenizer = tokenizer or X12Tokenizer()

    def check(self, content: str) -> X12ValidationResult:
        """Collect every structural problem without raising."""
        errors: List[str] = []
        try:
            segments = self.tokenizer.tokenize(content)
        except SerializationError as e:
            return X12ValidationResult(is_valid=False, errors=[str(e)])

        if not segments:
            return X12ValidationResult(is_valid=False, errors=["No segments found"])

        if segments[0].segment_id != "ISA":
            errors.append("First segment must be ISA")
        if segments[-1].segment_id != "IEA":
            errors.append("Last segment must be IEA")

        present = {s.segment_id for s in segments}
        for segment_id in REQUIRED_SEGMENTS:
            if segment_id not in present:
                errors.append(f"Missing required segment: {segment_id}")

        for segment in segments:
            if not (2 <= len(segment.segment_id) <= 3 and segment.segment_id.isalnum()):
                errors.append(f"Malformed segment identifier at position {segment.position}")
            elif segment.segment_id not in KNOWN_SEGMENTS:
                errors.append(f"Unexpected segment {segment.segment_id} at position {segment.position}")

        errors.extend(self._check_transaction_set(segments))
        errors.extend(self._check_envelope(segments))

        return X12ValidationResult(
            is_valid=not errors,
            errors=errors,
            segment_count=len(segments),
        )

    def validate(self, content: str) -> X12ValidationResult:
        """
        Check an interchange and raise on the first failure.

        Raises:
            SerializationError: If the interchange is structurally invalid
        """
        result = self.check(content)
        if not result.is_valid:
            logger.error(f"837P output failed validation: {'; '.join(result.errors)}")
            raise SerializationError(
                f"Generated 837P failed validation: {result.errors[0]}",
                segment_id=_segment_hint(result.errors[0]),
            )
        return result

    def _check_transaction_set(self, segments: List[X12Segment]) -> List[str]:
        errors = []
        st = _find(segments, "ST")
        se = _find(segments, "SE")
        if st is None or se is None:
            return errors

        st_index = segments.index(st)
        se_index = segments.index(se)
        actual = se_index - st_index + 1
        declared = se.get_element(0)
        if not declared.isdigit() or int(declared) != actual:
            errors.append(f"SE segment count {declared} does not match actual {actual}")
        if se.get_element(1) != st.get_element(1):
            errors.append(
                f"SE control number {se.get_element(1)} does not match ST {st.get_element(1)}"
            )
        return errors

    def _check_envelope(self, segments: List[X12Segment]) -> List[str]:
        errors = []
        isa = _find(segments, "ISA")
        iea = _find(segments, "IEA")
        if isa is not None and iea is not None and isa.get_element(12) != iea.get_element(1):
            errors.append(
                f"IEA control number {iea.get_element(1)} does not match ISA {isa.get_element(12)}"
            )

        gs = _find(segments, "GS")
        ge = _find(segments, "GE")
        if gs is not None and ge is not None and gs.get_element(5) != ge.get_element(1):
            errors.append(
                f"GE control number {ge.get_element(1)} does not match GS {gs.get_element(5)}"
            )
        return errors


def _find(segments: List[X12Segment], segment_id: str) -> Optional[X12Segment]:
    for segment in segments:
        if segment.segment_id == segment_id:
            return segment
    return None


def _segment_hint(message: str) -> Optional[str]:
    for segment_id in REQUIRED_SEGMENTS:
        if message.startswith(segment_id) or f" {segment_id}" in message:
            return segment_id
    return None
