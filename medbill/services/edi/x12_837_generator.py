"""
X12 837P Professional Claim Generator.

Generates HIPAA 5010 (005010X222A1) professional claim interchanges
from an assembled Claim. One claim per transaction set, one
transaction set per functional group, one group per interchange.

Every free-text value is passed through sanitize_x12_text before it is
placed into an element, and every element is checked again for
reserved separator characters so that a malformed value can never
split a segment.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from medbill.core.config import BillingSettings, get_billing_settings
from medbill.core.errors import SerializationError
from medbill.services.billing.records import Address, Claim, ClaimLine, ControlNumbers
from medbill.services.edi.x12_base import (
    COMPONENT_SEPARATOR,
    ELEMENT_SEPARATOR,
    REPETITION_SEPARATOR,
    SEGMENT_TERMINATOR,
    ensure_clean_element,
    format_x12_amount,
    format_x12_date,
    format_x12_short_date,
    format_x12_time,
    sanitize_x12_text,
    strip_icd_decimal,
)

logger = logging.getLogger(__name__)

IMPLEMENTATION_GUIDE = "005010X222A1"
MAX_DIAGNOSES = 12
MAX_POINTERS = 4


# =============================================================================
# Data Models
# =============================================================================


@dataclass
class EnvelopeContext:
    """Submitter and receiver identity written into the envelope."""

    sender_id: str
    receiver_id: str
    sender_qualifier: str = "ZZ"
    receiver_qualifier: str = "ZZ"
    usage_indicator: str = "P"
    submitter_name: str = ""
    receiver_name: str = ""
    contact_phone: str = ""

    @classmethod
    def from_settings(cls, settings: Optional[BillingSettings] = None) -> "EnvelopeContext":
        settings = settings or get_billing_settings()
        return cls(
            sender_id=settings.X12_SENDER_ID,
            receiver_id=settings.X12_RECEIVER_ID,
            sender_qualifier=settings.X12_SENDER_QUALIFIER,
            receiver_qualifier=settings.X12_RECEIVER_QUALIFIER,
            usage_indicator=settings.X12_USAGE_INDICATOR,
            submitter_name=settings.X12_SUBMITTER_NAME,
            receiver_name=settings.X12_RECEIVER_NAME,
            contact_phone=settings.X12_CONTACT_PHONE,
        )


@dataclass
class X12Interchange:
    """Serialized interchange plus the tallies written into its trailers."""

    content: str
    segment_count: int
    claim_count: int
    control_numbers: ControlNumbers


# =============================================================================
# Generator
# =============================================================================


class X12837PGenerator:
    """
    X12 837P Professional Claim Generator.

    Usage:
        generator = X12837PGenerator()
        numbers = await sequencer.next_envelope()
        interchange = generator.generate(claim, numbers)
        interchange.content  # "ISA*00*...~"
    """

    def __init__(
        self,
        envelope: Optional[EnvelopeContext] = None,
        settings: Optional[BillingSettings] = None,
        element_separator: str = ELEMENT_SEPARATOR,
        segment_terminator: str = SEGMENT_TERMINATOR,
        sub_element_separator: str = COMPONENT_SEPARATOR,
    ):
        self.settings = settings or get_billing_settings()
        self.envelope = envelope or EnvelopeContext.from_settings(self.settings)
        self.element_sep = element_separator
        self.segment_term = segment_terminator
        self.sub_element_sep = sub_element_separator

    def generate(
        self,
        claim: Claim,
        control_numbers: Optional[ControlNumbers] = None,
        generated_at: Optional[datetime] = None,
    ) -> X12Interchange:
        """
        Generate an X12 837P interchange for one claim.

        Args:
            claim: Assembled claim with at least one line
            control_numbers: ISA/GS/ST numbers; defaults to claim.control_numbers
            generated_at: Envelope timestamp (defaults to now)

        Returns:
            X12Interchange with content, segment count and claim count

        Raises:
            SerializationError: If the claim cannot be rendered
        """
        numbers = control_numbers or claim.control_numbers
        if numbers is None:
            raise SerializationError("Claim has no control numbers assigned")
        if not claim.lines:
            raise SerializationError("Claim has no service lines", segment_id="LX")
        if not claim.diagnoses:
            raise SerializationError("Claim has no diagnoses", segment_id="HI")
        if len(claim.diagnoses) > MAX_DIAGNOSES:
            raise SerializationError(
                f"Claim carries {len(claim.diagnoses)} diagnoses, at most {MAX_DIAGNOSES} allowed",
                segment_id="HI",
            )

        now = generated_at or datetime.now()
        segments: List[str] = []

        # Envelope
        segments.append(self._build_isa(numbers, now))
        segments.append(self._build_gs(numbers, now))
        st_index = len(segments)
        segments.append(self._segment("ST", "837", numbers.st_text, IMPLEMENTATION_GUIDE))
        segments.append(self._build_bht(claim, now))

        # Loop 1000A / 1000B - Submitter and Receiver
        segments.extend(self._build_submitter_loop())

        # Loop 2000A / 2010AA - Billing Provider
        segments.append(self._segment("HL", "1", "", "20", "1"))
        segments.extend(self._build_billing_provider_loop(claim))

        # Loop 2000B / 2010BA / 2010BB - Subscriber and Payer
        segments.append(self._segment("HL", "2", "1", "22", "0"))
        segments.extend(self._build_subscriber_loop(claim))

        # Loop 2300 - Claim
        segments.extend(self._build_claim_loop(claim))

        # Loop 2400 - Service Lines
        for line in claim.lines:
            segments.extend(self._build_service_line(line, claim))

        # SE counts ST through SE inclusive
        segment_count = len(segments) - st_index + 1
        segments.append(self._segment("SE", str(segment_count), numbers.st_text))
        segments.append(self._segment("GE", "1", numbers.gs_text))
        segments.append(self._segment("IEA", "1", numbers.isa_text))

        content = self.segment_term.join(segments) + self.segment_term
        claim_count = sum(1 for s in segments if s.startswith("CLM" + self.element_sep))

        logger.info(
            f"Generated 837P for claim {claim.claim_id}: "
            f"{segment_count} segments, ISA {numbers.isa_text}, ST {numbers.st_text}"
        )

        return X12Interchange(
            content=content,
            segment_count=segment_count,
            claim_count=claim_count,
            control_numbers=numbers,
        )

    # =========================================================================
    # Segment Helpers
    # =========================================================================

    def _segment(self, segment_id: str, *elements: str) -> str:
        """Build a segment, rejecting any element that still carries a separator."""
        checked = [
            ensure_clean_element(value, segment_id, position)
            for position, value in enumerate(elements, start=1)
        ]
        return self.element_sep.join([segment_id, *checked])

    def _composite(self, *components: str) -> str:
        return self.sub_element_sep.join(c for c in components if c != "")

    def _build_isa(self, numbers: ControlNumbers, now: datetime) -> str:
        """Build ISA segment (fixed width; ISA11 is the repetition separator)."""
        env = self.envelope
        elements = [
            "00",  # Authorization Info Qualifier
            " " * 10,  # Authorization Info
            "00",  # Security Info Qualifier
            " " * 10,  # Security Info
            env.sender_qualifier,  # Sender ID Qualifier
            sanitize_x12_text(env.sender_id)[:15].ljust(15),  # Sender ID
            env.receiver_qualifier,  # Receiver ID Qualifier
            sanitize_x12_text(env.receiver_id)[:15].ljust(15),  # Receiver ID
            format_x12_short_date(now),  # Date
            format_x12_time(now),  # Time
            REPETITION_SEPARATOR,  # Repetition Separator
            "00501",  # Version
            numbers.isa_text,  # Control Number
            "0",  # Acknowledgment Requested
            env.usage_indicator,  # Usage Indicator (P=Production, T=Test)
            self.sub_element_sep,  # Component Separator
        ]
        for position, value in enumerate(elements, start=1):
            if position != 11:
                ensure_clean_element(value, "ISA", position)
        return self.element_sep.join(["ISA", *elements])

    def _build_gs(self, numbers: ControlNumbers, now: datetime) -> str:
        """Build GS segment."""
        return self._segment(
            "GS",
            "HC",  # Functional ID Code (HC=837)
            sanitize_x12_text(self.envelope.sender_id),  # Sender Code
            sanitize_x12_text(self.envelope.receiver_id),  # Receiver Code
            format_x12_date(now),  # Date
            format_x12_time(now),  # Time
            numbers.gs_text,  # Group Control Number
            "X",  # Responsible Agency Code
            IMPLEMENTATION_GUIDE,  # Version
        )

    def _build_bht(self, claim: Claim, now: datetime) -> str:
        """Build BHT segment."""
        return self._segment(
            "BHT",
            "0019",  # Hierarchical Structure Code
            "00",  # Transaction Set Purpose Code (00=Original)
            sanitize_x12_text(claim.claim_id),  # Reference ID
            format_x12_date(now),
            format_x12_time(now),
            "CH",  # Chargeable
        )

    def _build_submitter_loop(self) -> List[str]:
        env = self.envelope
        return [
            self._segment(
                "NM1", "41", "2", sanitize_x12_text(env.submitter_name)[:60],
                "", "", "", "", "46", sanitize_x12_text(env.sender_id),
            ),
            self._segment("PER", "IC", "BILLING DEPT", "TE", sanitize_x12_text(env.contact_phone)),
            self._segment(
                "NM1", "40", "2", sanitize_x12_text(env.receiver_name)[:60],
                "", "", "", "", "46", sanitize_x12_text(env.receiver_id),
            ),
        ]

    def _build_address(self, address: Optional[Address]) -> List[str]:
        """N3/N4 pair; elements are left empty when the address is unknown."""
        address = address or Address()
        street = [sanitize_x12_text(address.line1)[:55]]
        if address.line2:
            street.append(sanitize_x12_text(address.line2)[:55])
        return [
            self._segment("N3", *street),
            self._segment(
                "N4",
                sanitize_x12_text(address.city)[:30],
                sanitize_x12_text(address.state)[:2],
                sanitize_x12_text(address.postal_code)[:15],
            ),
        ]

    def _build_billing_provider_loop(self, claim: Claim) -> List[str]:
        provider = claim.provider
        taxonomy = (provider and provider.taxonomy_code) or self.settings.DEFAULT_TAXONOMY_CODE
        name = (provider and provider.organization_name) or self.settings.FALLBACK_ORGANIZATION_NAME
        npi = (provider and provider.npi) or self.settings.FALLBACK_NPI

        segments = [
            self._segment("PRV", "BI", "PXC", sanitize_x12_text(taxonomy)),
            self._segment(
                "NM1", "85", "2", sanitize_x12_text(name)[:60],
                "", "", "", "", "XX", sanitize_x12_text(npi),
            ),
        ]
        segments.extend(self._build_address(provider.address if provider else None))
        if provider and provider.tax_id:
            segments.append(self._segment("REF", "EI", sanitize_x12_text(provider.tax_id)))
        return segments

    def _build_subscriber_loop(self, claim: Claim) -> List[str]:
        patient = claim.patient
        if patient is None:
            raise SerializationError("Claim has no subscriber", segment_id="NM1")

        group = sanitize_x12_text(claim.coverage.group_number) if claim.coverage else ""
        dob = (
            format_x12_date(patient.date_of_birth)
            if patient.date_of_birth
            else self.settings.FALLBACK_DATE_OF_BIRTH
        )

        payer_id = (
            (claim.payer and claim.payer.payer_id)
            or (claim.coverage and claim.coverage.payer_id)
        )
        if not payer_id:
            raise SerializationError("Claim has no payer", segment_id="NM1")
        payer_name = (claim.payer and claim.payer.name) or payer_id

        segments = [
            self._segment("SBR", "P", "18", group, "", "", "", "", "", "CI"),
            self._segment(
                "NM1", "IL", "1",
                sanitize_x12_text(patient.last_name)[:60],
                sanitize_x12_text(patient.first_name)[:35],
                "", "", "", "MI", sanitize_x12_text(patient.member_id),
            ),
        ]
        segments.extend(self._build_address(patient.address))
        segments.append(self._segment("DMG", "D8", dob, patient.gender.value))
        segments.append(
            self._segment(
                "NM1", "PR", "2", sanitize_x12_text(payer_name)[:60],
                "", "", "", "", "PI", sanitize_x12_text(payer_id),
            )
        )
        return segments

    def _build_claim_loop(self, claim: Claim) -> List[str]:
        pos = sanitize_x12_text(claim.place_of_service) or "11"
        hi_elements = [
            self._composite("BK" if i == 0 else "BF", strip_icd_decimal(code))
            for i, code in enumerate(claim.diagnoses)
        ]
        return [
            self._segment(
                "CLM",
                sanitize_x12_text(claim.claim_id)[:38],  # Patient Control Number
                format_x12_amount(claim.total_charge),  # Total Charge
                "",
                "",
                self._composite(pos, "B", "1"),  # Facility Code:Qualifier:Frequency
                "Y",  # Provider Signature
                "A",  # Assignment
                "Y",  # Benefits Assigned
                "Y",  # Release of Information
            ),
            self._segment("DTP", "472", "D8", format_x12_date(claim.service_date)),
            self._segment("HI", *hi_elements),
        ]

    def _build_service_line(self, line: ClaimLine, claim: Claim) -> List[str]:
        if not line.diagnosis_pointers or len(line.diagnosis_pointers) > MAX_POINTERS:
            raise SerializationError(
                f"Line {line.line_number} needs 1-{MAX_POINTERS} diagnosis pointers",
                segment_id="SV1",
                element_position=7,
            )
        for pointer in line.diagnosis_pointers:
            if not 1 <= pointer <= len(claim.diagnoses):
                raise SerializationError(
                    f"Line {line.line_number} points at missing diagnosis {pointer}",
                    segment_id="SV1",
                    element_position=7,
                )

        procedure = self._composite(
            "HC",
            sanitize_x12_text(line.procedure_code),
            *(sanitize_x12_text(m) for m in line.modifiers),
        )
        pointers = self.sub_element_sep.join(str(p) for p in line.diagnosis_pointers)
        return [
            self._segment("LX", str(line.line_number)),
            self._segment(
                "SV1",
                procedure,
                format_x12_amount(line.charge_amount),
                "UN",
                str(int(line.units)),
                "",
                "",
                pointers,
            ),
            self._segment("DTP", "472", "D8", format_x12_date(claim.service_date)),
        ]
