"""
Billing API Endpoints.

Provides:
- Encounter to claim generation (decision engine, reconciliation, 837P)
- Fee lookup through the fallback chain
"""

import logging

from fastapi import APIRouter, Depends, status

from medbill.api.deps import get_fee_resolver, get_pipeline
from medbill.api.schemas import (
    ClaimLineOut,
    ClaimResponse,
    EncounterRequest,
    FeeLookupRequest,
    FeeLookupResponse,
    NodeOut,
    ReviewFlagOut,
    TierAttemptOut,
)
from medbill.core.errors import BillingError
from medbill.services.billing.fee_resolver import FeeRequest, FeeResolver
from medbill.services.billing.pipeline import BillingPipeline, BillingResult
from medbill.utils.errors import to_http_exception

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1/billing",
    tags=["billing"],
)


# =============================================================================
# Helper Functions
# =============================================================================


def convert_result_to_response(result: BillingResult) -> ClaimResponse:
    """Convert a pipeline result to the API response model."""
    claim = result.claim
    return ClaimResponse(
        claim_id=claim.claim_id,
        encounter_id=claim.encounter_id,
        status=claim.status.value,
        outcome=result.decision.outcome.value,
        requires_manual_review=claim.requires_manual_review,
        place_of_service=claim.place_of_service,
        diagnoses=claim.diagnoses,
        lines=[
            ClaimLineOut(
                line_number=line.line_number,
                procedure_code=line.procedure_code,
                modifiers=list(line.modifiers),
                units=line.units,
                charge_amount=line.charge_amount,
                diagnosis_pointers=list(line.diagnosis_pointers),
                rate_source=line.rate_source,
            )
            for line in claim.lines
        ],
        total_charge=claim.total_charge,
        isa_control_number=result.interchange.control_numbers.isa_text,
        segment_count=result.interchange.segment_count,
        x12=result.x12,
        review_flags=[ReviewFlagOut(**flag.to_dict()) for flag in claim.review_flags],
        nodes=[
            NodeOut(
                node_id=node.node_id,
                name=node.name,
                status=node.status.value,
                confidence=node.confidence,
                rationale=node.rationale,
                timestamp=node.timestamp,
            )
            for node in result.decision.nodes
        ],
        steps=[step.to_dict() for step in result.steps],
    )


# =============================================================================
# Endpoints
# =============================================================================


@router.post(
    "/claims",
    response_model=ClaimResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Generate a claim for an encounter",
)
async def generate_claim(
    request: EncounterRequest,
    pipeline: BillingPipeline = Depends(get_pipeline),
) -> ClaimResponse:
    """
    Run the encounter through the billing pipeline.

    Returns 422 for missing encounter data, 403 when eligibility is
    denied, 500 when the 837P could not be produced and 503 when the
    control-number counters are exhausted.
    """
    try:
        result = await pipeline.process(request.to_encounter())
    except BillingError as e:
        logger.warning(f"Claim generation failed for encounter {request.encounter_id}: {e}")
        raise to_http_exception(e) from e
    return convert_result_to_response(result)


@router.post(
    "/fees/lookup",
    response_model=FeeLookupResponse,
    summary="Price a procedure through the fee fallback chain",
)
async def lookup_fee(
    request: FeeLookupRequest,
    fee_resolver: FeeResolver = Depends(get_fee_resolver),
) -> FeeLookupResponse:
    try:
        resolution = await fee_resolver.resolve_with_trace(
            FeeRequest(
                code_system=request.code_system,
                code=request.code.strip().upper(),
                modifiers=tuple(m.strip().upper() for m in request.modifiers if m.strip()),
                payer_id=request.payer_id,
                provider_id=request.provider_id,
                service_date=request.service_date,
            )
        )
    except BillingError as e:
        raise to_http_exception(e) from e

    quote = resolution.quote
    return FeeLookupResponse(
        code_system=quote.code_system,
        code=quote.code,
        modifiers=list(quote.modifiers),
        price=quote.price,
        rate_source=quote.rate_source,
        schedule_id=quote.schedule_id,
        unit=quote.unit,
        attempts=[
            TierAttemptOut(rate_source=a.rate_source, outcome=a.outcome, detail=a.detail)
            for a in resolution.attempts
        ],
    )
