"""
Billing Error Taxonomy.

ValidationError and EligibilityDenied halt the pipeline and surface to
the caller. LowConfidence, UnlistedProcedure and FeeNotFound are
recovered locally; they exist so that node code can signal the
condition and the engine can turn it into a review flag.
"""

from typing import Optional

from medbill.core.enums import DenialReason


class BillingError(Exception):
    """Base class for billing engine errors."""

    halts_pipeline: bool = False

    def __init__(self, message: str, encounter_id: Optional[str] = None):
        self.message = message
        self.encounter_id = encounter_id
        super().__init__(message)


class ValidationError(BillingError):
    """Missing required entity or field (encounter, patient, payer)."""

    halts_pipeline = True

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        encounter_id: Optional[str] = None,
    ):
        self.field = field
        super().__init__(message, encounter_id)


class EligibilityDenied(BillingError):
    """Node A rejected the encounter."""

    halts_pipeline = True

    def __init__(
        self,
        reason: DenialReason,
        message: Optional[str] = None,
        encounter_id: Optional[str] = None,
    ):
        self.reason = reason
        super().__init__(message or f"Eligibility denied: {reason.value}", encounter_id)


class LowConfidence(BillingError):
    """A node produced a result below the manual-review threshold."""

    def __init__(
        self,
        node_id: str,
        confidence: int,
        threshold: int,
        encounter_id: Optional[str] = None,
    ):
        self.node_id = node_id
        self.confidence = confidence
        self.threshold = threshold
        super().__init__(
            f"Node {node_id} confidence {confidence} below threshold {threshold}",
            encounter_id,
        )


class UnlistedProcedure(BillingError):
    """Node C resolved to an unlisted procedure code."""

    def __init__(self, code: str, encounter_id: Optional[str] = None):
        self.code = code
        super().__init__(f"Unlisted procedure code {code} requires manual review", encounter_id)


class FeeNotFound(BillingError):
    """No fee tier, including the default tier, produced a price."""

    def __init__(self, code: str, modifiers: tuple[str, ...] = (), encounter_id: Optional[str] = None):
        self.code = code
        self.modifiers = modifiers
        suffix = f"-{'-'.join(modifiers)}" if modifiers else ""
        super().__init__(f"No fee found for {code}{suffix}", encounter_id)


class SerializationError(BillingError):
    """Malformed or unsanitized data reached the X12 writer."""

    def __init__(
        self,
        message: str,
        segment_id: Optional[str] = None,
        segment_position: Optional[int] = None,
        element_position: Optional[int] = None,
        raw_segment: Optional[str] = None,
    ):
        self.segment_id = segment_id
        self.segment_position = segment_position
        self.element_position = element_position
        self.raw_segment = raw_segment
        super().__init__(message)
        self.args = (self._format_message(),)

    def _format_message(self) -> str:
        parts = [self.message]
        if self.segment_id:
            parts.append(f"Segment: {self.segment_id}")
        if self.segment_position is not None:
            parts.append(f"Position: {self.segment_position}")
        if self.element_position is not None:
            parts.append(f"Element: {self.element_position}")
        return " | ".join(parts)


class ControlNumberExhausted(BillingError):
    """A control-number counter reached its ceiling under the error policy."""

    def __init__(self, name: str, ceiling: int):
        self.name = name
        self.ceiling = ceiling
        super().__init__(f"Control number '{name}' exhausted at {ceiling}")
