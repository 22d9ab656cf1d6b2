"""
Billing Pipeline.

Orchestrates one encounter from intake to a stored 837P:

    decision -> suggestions -> reconciliation -> assembly
             -> sequencing -> serialization -> validation -> persistence

Suggestion sources run concurrently, each under its own timeout; a
source that fails or times out is logged, audited and skipped. Only
ValidationError and EligibilityDenied halt the pipeline for the
encounter. Manual review is a flag on the claim, not a stop.
"""

import asyncio
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterator, Optional
from uuid import uuid4

from medbill.core.config import BillingSettings, get_billing_settings
from medbill.core.enums import (
    AuditEventType,
    CCMTier,
    DecisionOutcome,
    DenialReason,
    WorkflowStepStatus,
)
from medbill.core.errors import EligibilityDenied
from medbill.services.billing.assembler import ClaimAssembler
from medbill.services.billing.audit import AuditEmitter, LoggingAuditEmitter
from medbill.services.billing.ccm import determine_ccm_codes
from medbill.services.billing.claim_store import ClaimStore
from medbill.services.billing.decision_engine import DecisionEngine
from medbill.services.billing.eligibility import NODE_ID as ELIGIBILITY_NODE_ID
from medbill.services.billing.reconciler import CodeReconciler, ReconciliationResult
from medbill.services.billing.records import CandidateCode, Claim, DecisionResult, Encounter
from medbill.services.billing.suggestions import Suggestion, SuggestionSource
from medbill.services.edi.control_numbers import ControlNumberSequencer
from medbill.services.edi.x12_837_generator import X12837PGenerator, X12Interchange
from medbill.services.edi.x12_validator import X12OutputValidator

logger = logging.getLogger(__name__)


# =============================================================================
# Workflow Tracking
# =============================================================================


@dataclass
class WorkflowStep:
    """Timing and outcome of one pipeline step."""

    step_id: str
    name: str
    status: WorkflowStepStatus = WorkflowStepStatus.PENDING
    started_at: Optional[datetime] = None
    duration_ms: float = 0.0
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "name": self.name,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "duration_ms": self.duration_ms,
            "detail": self.detail,
        }


class WorkflowTracker:
    """Collects WorkflowStep records for one pipeline run."""

    def __init__(self) -> None:
        self.steps: list[WorkflowStep] = []

    @contextmanager
    def track(self, name: str) -> Iterator[WorkflowStep]:
        step = WorkflowStep(
            step_id=uuid4().hex[:12],
            name=name,
            status=WorkflowStepStatus.IN_PROGRESS,
            started_at=datetime.now(timezone.utc),
        )
        self.steps.append(step)
        start = time.perf_counter()
        try:
            yield step
        except Exception as e:
            step.status = WorkflowStepStatus.FAILED
            step.detail = step.detail or str(e)
            raise
        else:
            if step.status == WorkflowStepStatus.IN_PROGRESS:
                step.status = WorkflowStepStatus.COMPLETED
        finally:
            step.duration_ms = round((time.perf_counter() - start) * 1000, 3)

    def skip(self, name: str, detail: str) -> WorkflowStep:
        step = WorkflowStep(
            step_id=uuid4().hex[:12],
            name=name,
            status=WorkflowStepStatus.SKIPPED,
            detail=detail,
        )
        self.steps.append(step)
        return step

    def get(self, name: str) -> Optional[WorkflowStep]:
        return next((s for s in self.steps if s.name == name), None)


# =============================================================================
# Result
# =============================================================================


@dataclass
class BillingResult:
    """Everything produced for one encounter."""

    claim: Claim
    interchange: X12Interchange
    decision: DecisionResult
    reconciliation: ReconciliationResult
    ccm_tier: Optional[CCMTier] = None
    suggestions: list[Suggestion] = field(default_factory=list)
    steps: list[WorkflowStep] = field(default_factory=list)

    @property
    def x12(self) -> str:
        return self.interchange.content

    @property
    def requires_manual_review(self) -> bool:
        return self.claim.requires_manual_review


# =============================================================================
# Pipeline
# =============================================================================


class BillingPipeline:
    """
    Usage:
        pipeline = BillingPipeline(engine, assembler, sequencer, store)
        result = await pipeline.process(encounter)
        result.x12  # "ISA*00*...~"
    """

    def __init__(
        self,
        engine: DecisionEngine,
        assembler: ClaimAssembler,
        sequencer: ControlNumberSequencer,
        store: Optional[ClaimStore] = None,
        suggestion_sources: Optional[list[SuggestionSource]] = None,
        reconciler: Optional[CodeReconciler] = None,
        generator: Optional[X12837PGenerator] = None,
        validator: Optional[X12OutputValidator] = None,
        audit: Optional[AuditEmitter] = None,
        settings: Optional[BillingSettings] = None,
    ):
        self.settings = settings or get_billing_settings()
        self.engine = engine
        self.assembler = assembler
        self.sequencer = sequencer
        self.store = store
        self.suggestion_sources = suggestion_sources or []
        self.reconciler = reconciler or CodeReconciler(self.settings)
        self.generator = generator or X12837PGenerator(settings=self.settings)
        self.validator = validator or X12OutputValidator()
        self.audit = audit or LoggingAuditEmitter()

    async def process(self, encounter: Encounter) -> BillingResult:
        """
        Bill one encounter.

        Raises:
            ValidationError: If required encounter data is missing or no
                procedure code could be derived
            EligibilityDenied: If Node A denied the encounter
        """
        tracker = WorkflowTracker()

        with tracker.track("decision") as step:
            decision = await self.engine.evaluate(encounter)
            step.detail = decision.outcome.value

        if decision.outcome == DecisionOutcome.DENIED:
            await self._deny(encounter, decision)

        with tracker.track("suggestions") as step:
            suggestions = await self._collect_suggestions(encounter, decision)
            step.detail = f"{len(suggestions)} of {len(self.suggestion_sources)} sources answered"

        with tracker.track("reconciliation") as step:
            reconciliation = self.reconciler.reconcile(
                [decision.candidates, *(s.candidates for s in suggestions)]
            )
            step.detail = "; ".join(reconciliation.notes)

        ccm_tier = self._ccm_tier(suggestions)
        ccm_lines = self._ccm_lines(encounter, reconciliation, ccm_tier)

        with tracker.track("assembly") as step:
            claim = await self.assembler.assemble(
                encounter,
                reconciliation.code_set,
                decision,
                extra_procedures=ccm_lines,
            )
            step.detail = f"{len(claim.lines)} lines, total {claim.total_charge}"

        with tracker.track("sequencing") as step:
            claim.control_numbers = await self.sequencer.next_envelope()
            step.detail = f"ISA {claim.control_numbers.isa_text}"

        with tracker.track("serialization") as step:
            interchange = self.generator.generate(claim, claim.control_numbers)
            step.detail = f"{interchange.segment_count} segments"

        with tracker.track("validation"):
            self.validator.validate(interchange.content)

        if self.store is not None:
            with tracker.track("persistence"):
                await self.store.save(claim, interchange)
        else:
            tracker.skip("persistence", "No claim store configured")

        if claim.requires_manual_review:
            await self.audit.record(
                AuditEventType.MANUAL_REVIEW_FLAGGED,
                f"Claim {claim.claim_id} flagged for manual review",
                encounter_id=encounter.encounter_id,
                claim_id=claim.claim_id,
                flags=[f.to_dict() for f in claim.review_flags],
            )
        await self.audit.record(
            AuditEventType.CLAIM_GENERATED,
            f"Claim {claim.claim_id} generated",
            encounter_id=encounter.encounter_id,
            claim_id=claim.claim_id,
            isa_control_number=interchange.control_numbers.isa_text,
            total_charge=str(claim.total_charge),
            manual_review=claim.requires_manual_review,
        )

        logger.info(
            f"Encounter {encounter.encounter_id} billed as claim {claim.claim_id} "
            f"({decision.outcome.value}, {len(claim.lines)} lines)"
        )
        return BillingResult(
            claim=claim,
            interchange=interchange,
            decision=decision,
            reconciliation=reconciliation,
            ccm_tier=ccm_tier,
            suggestions=suggestions,
            steps=tracker.steps,
        )

    async def _deny(self, encounter: Encounter, decision: DecisionResult) -> None:
        reason = decision.denial_reason or DenialReason.NOT_FOUND
        message = next(
            (n.rationale for n in decision.nodes if n.node_id == ELIGIBILITY_NODE_ID and n.rationale),
            f"Eligibility denied: {reason.value}",
        )
        await self.audit.record(
            AuditEventType.ELIGIBILITY_DENIED,
            message,
            encounter_id=encounter.encounter_id,
            reason=reason.value,
        )
        raise EligibilityDenied(reason, message, encounter.encounter_id)

    # =========================================================================
    # Suggestions
    # =========================================================================

    async def _collect_suggestions(self, encounter: Encounter, decision: DecisionResult) -> list[Suggestion]:
        results = await asyncio.gather(
            *(self._ask(source, encounter, decision) for source in self.suggestion_sources)
        )
        return [r for r in results if r is not None]

    async def _ask(
        self,
        source: SuggestionSource,
        encounter: Encounter,
        decision: DecisionResult,
    ) -> Optional[Suggestion]:
        timeout = self.settings.SUGGESTION_TIMEOUT_SECONDS
        try:
            return await asyncio.wait_for(source.suggest(encounter, decision), timeout=timeout)
        except asyncio.TimeoutError:
            reason = f"timed out after {timeout}s"
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"

        logger.warning(f"Suggestion source {source.name} {reason} for encounter {encounter.encounter_id}")
        await self.audit.record(
            AuditEventType.SUGGESTION_SOURCE_FAILED,
            f"Suggestion source {source.name} {reason}",
            encounter_id=encounter.encounter_id,
            source=source.name,
        )
        return None

    @staticmethod
    def _ccm_tier(suggestions: list[Suggestion]) -> Optional[CCMTier]:
        ordered = sorted(
            (s for s in suggestions if s.ccm_tier is not None),
            key=lambda s: s.source.priority,
        )
        return ordered[0].ccm_tier if ordered else None

    @staticmethod
    def _ccm_lines(
        encounter: Encounter,
        reconciliation: ReconciliationResult,
        tier: Optional[CCMTier],
    ) -> list[CandidateCode]:
        """CCM lines not already on the reconciled set."""
        if tier == CCMTier.NOT_ELIGIBLE:
            return []
        existing = {p.key for p in reconciliation.code_set.procedures}
        return [c for c in determine_ccm_codes(encounter.ccm_minutes, tier) if c.key not in existing]


# =============================================================================
# Factory Functions
# =============================================================================


def create_billing_pipeline(
    engine: DecisionEngine,
    sequencer: ControlNumberSequencer,
    store: Optional[ClaimStore] = None,
    suggestion_sources: Optional[list[SuggestionSource]] = None,
    audit: Optional[AuditEmitter] = None,
    settings: Optional[BillingSettings] = None,
) -> BillingPipeline:
    """Create a pipeline sharing the engine's fee resolver with the assembler."""
    settings = settings or get_billing_settings()
    return BillingPipeline(
        engine=engine,
        assembler=ClaimAssembler(engine.fee_resolver, settings),
        sequencer=sequencer,
        store=store,
        suggestion_sources=suggestion_sources,
        audit=audit,
        settings=settings,
    )

