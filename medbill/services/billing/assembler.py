"""
Claim Assembler.

Turns a ReconciledCodeSet into ordered claim lines:
- the claim diagnosis list is principal first, then secondaries, capped
  at the 12 slots an 837P HI segment carries
- each line points at the diagnoses it supports (1-based, at most four),
  defaulting to the principal at position 1
- charges come from the decision engine's fee quotes when the same
  (code, modifier set) was already priced, otherwise from the fee
  resolver; charge = unit price x units
"""

import logging
from typing import Iterable, Optional
from uuid import uuid4

from medbill.core.config import BillingSettings, get_billing_settings
from medbill.core.enums import ReviewReason
from medbill.core.errors import ValidationError
from medbill.services.billing.fee_resolver import FeeRequest, FeeResolver, to_cents
from medbill.services.billing.records import (
    CandidateCode,
    Claim,
    ClaimLine,
    DecisionResult,
    Encounter,
    FeeQuote,
    ReconciledCodeSet,
    ReviewFlag,
)
from medbill.services.edi.x12_base import validate_npi
from medbill.services.edi.x12_837_generator import MAX_DIAGNOSES, MAX_POINTERS

logger = logging.getLogger(__name__)

ASSEMBLER_ID = "ASSEMBLER"


def new_claim_id() -> str:
    """Patient control number for CLM01 (20 characters, well under the 38 allowed)."""
    return uuid4().hex[:20].upper()


def diagnosis_pointers(candidate: CandidateCode, positions: dict[str, int]) -> tuple[int, ...]:
    """1-based positions of the diagnoses a line supports; principal when none resolve."""
    pointers: list[int] = []
    for code in candidate.supports:
        position = positions.get(code.strip().upper())
        if position is not None and position not in pointers:
            pointers.append(position)
    return tuple(pointers[:MAX_POINTERS]) or (1,)


class ClaimAssembler:
    """
    Usage:
        assembler = ClaimAssembler(fee_resolver)
        claim = await assembler.assemble(encounter, code_set, decision)
    """

    def __init__(self, fee_resolver: FeeResolver, settings: Optional[BillingSettings] = None):
        self.fee_resolver = fee_resolver
        self.settings = settings or get_billing_settings()

    async def assemble(
        self,
        encounter: Encounter,
        code_set: ReconciledCodeSet,
        decision: Optional[DecisionResult] = None,
        extra_procedures: Iterable[CandidateCode] = (),
        claim_id: Optional[str] = None,
    ) -> Claim:
        """
        Build the claim for one encounter.

        Args:
            encounter: Encounter being billed
            code_set: Reconciled codes
            decision: Decision engine result, for prior fee quotes, POS and review flags
            extra_procedures: Lines appended after the reconciled procedures (e.g. CCM)
            claim_id: Patient control number; generated when omitted

        Raises:
            ValidationError: If the encounter has no service date
        """
        if encounter.service_date is None:
            raise ValidationError("Encounter is missing service_date", field="service_date")

        flags: list[ReviewFlag] = list(decision.review_flags) if decision else []

        diagnoses = code_set.diagnosis_codes
        if len(diagnoses) > MAX_DIAGNOSES:
            logger.warning(
                f"Encounter {encounter.encounter_id}: {len(diagnoses)} diagnoses, "
                f"keeping the first {MAX_DIAGNOSES}"
            )
            diagnoses = diagnoses[:MAX_DIAGNOSES]
        positions = {code: index + 1 for index, code in enumerate(diagnoses)}

        quotes = {(q.code_system, q.key): q for q in (decision.fee_quotes if decision else [])}
        lines: list[ClaimLine] = []
        for candidate in [*code_set.procedures, *extra_procedures]:
            quote = quotes.get((candidate.system, candidate.key))
            if quote is None:
                quote = await self._price(encounter, candidate)
            lines.append(
                ClaimLine(
                    line_number=len(lines) + 1,
                    procedure_code=candidate.code,
                    charge_amount=to_cents(quote.price * candidate.units),
                    code_system=candidate.system,
                    modifiers=candidate.modifiers,
                    units=candidate.units,
                    diagnosis_pointers=diagnosis_pointers(candidate, positions),
                    rate_source=quote.rate_source,
                )
            )

        flags.extend(self._provider_flags(encounter))

        claim = Claim(
            claim_id=claim_id or new_claim_id(),
            encounter_id=encounter.encounter_id,
            service_date=encounter.service_date,
            place_of_service=(decision.place_of_service if decision else None)
            or encounter.place_of_service
            or "11",
            diagnoses=diagnoses,
            lines=lines,
            patient=encounter.patient,
            provider=encounter.provider,
            payer=encounter.payer,
            coverage=encounter.coverage,
            review_flags=flags,
        )
        logger.info(
            f"Assembled claim {claim.claim_id} for encounter {encounter.encounter_id}: "
            f"{len(lines)} lines, total {claim.total_charge}"
        )
        return claim

    async def _price(self, encounter: Encounter, candidate: CandidateCode) -> FeeQuote:
        return await self.fee_resolver.resolve(
            FeeRequest(
                code_system=candidate.system,
                code=candidate.code,
                modifiers=candidate.modifiers,
                payer_id=encounter.payer_id,
                provider_id=encounter.provider_id,
                service_date=encounter.service_date,
                encounter_id=encounter.encounter_id,
            )
        )

    @staticmethod
    def _provider_flags(encounter: Encounter) -> list[ReviewFlag]:
        provider = encounter.provider
        if provider is None:
            return [ReviewFlag(ReviewReason.MISSING_PROVIDER_DATA, "No billing provider record", ASSEMBLER_ID)]
        flags = []
        if not validate_npi(provider.npi):
            flags.append(
                ReviewFlag(
                    ReviewReason.MISSING_PROVIDER_DATA,
                    f"Billing provider {provider.provider_id} has no valid NPI; sentinel NPI used",
                    ASSEMBLER_ID,
                )
            )
        if not provider.organization_name:
            flags.append(
                ReviewFlag(
                    ReviewReason.MISSING_PROVIDER_DATA,
                    f"Billing provider {provider.provider_id} has no organization name",
                    ASSEMBLER_ID,
                )
            )
        return flags
