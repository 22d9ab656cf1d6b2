"""
Billing Decision Engine.

Derives billing codes for one encounter through six nodes:

    A  Eligibility and authorization (denial stops the tree)
    B  Service classification and place of service
    C  Procedure code lookup            (procedural encounters)
    D  E/M level determination          (E/M encounters)
    E  Modifier logic                   (every billed line)
    F  Fee lookup through the fee resolver

Common scenarios may take the fast path after node B, skipping C-F.
Any node below the manual-review threshold, any unlisted procedure and
any other review flag routes the encounter to manual review. Review is
a terminal state for the engine; the pipeline still assembles a claim
carrying the flags.
"""

import logging
from typing import Optional

from medbill.core.config import BillingSettings, DecisionThresholds, get_billing_settings
from medbill.core.enums import (
    CodeSource,
    CodeSystem,
    DecisionOutcome,
    NodeStatus,
    RateSource,
    ReviewReason,
    ServiceClassification,
)
from medbill.core.errors import LowConfidence
from medbill.services.billing import classification as node_b
from medbill.services.billing import eligibility as node_a
from medbill.services.billing import em_level as node_d
from medbill.services.billing import modifiers as node_e
from medbill.services.billing import procedure_lookup as node_c
from medbill.services.billing.code_tables import CodeTable
from medbill.services.billing.fast_path import FAST_PATH_SCENARIOS, FastPathMatch, FastPathScenario, match_fast_path
from medbill.services.billing.fee_resolver import FeeRequest, FeeResolver
from medbill.services.billing.necessity import MedicalNecessityService
from medbill.services.billing.records import (
    CandidateCode,
    DecisionResult,
    Encounter,
    NodeResult,
    ReviewFlag,
)

logger = logging.getLogger(__name__)

NODE_F_ID = "NODE_F"
NODE_F_NAME = "Fee Schedule Lookup"
NECESSITY_NODE_ID = "NECESSITY"

PRINCIPAL_DIAGNOSIS_CONFIDENCE = 90
SECONDARY_DIAGNOSIS_CONFIDENCE = 85
TERM_MATCH_CONFIDENCE = 75


class DecisionEngine:
    """
    Runs the decision tree for one encounter at a time.

    Usage:
        engine = DecisionEngine(code_table, FeeResolver.build(source, code_table))
        result = await engine.evaluate(encounter)
    """

    def __init__(
        self,
        code_table: CodeTable,
        fee_resolver: FeeResolver,
        necessity: Optional[MedicalNecessityService] = None,
        settings: Optional[BillingSettings] = None,
        scenarios: tuple[FastPathScenario, ...] = FAST_PATH_SCENARIOS,
    ):
        self.code_table = code_table
        self.fee_resolver = fee_resolver
        self.necessity = necessity or MedicalNecessityService()
        self.settings = settings or get_billing_settings()
        self.scenarios = scenarios

    async def evaluate(self, encounter: Encounter) -> DecisionResult:
        """
        Evaluate an encounter.

        Raises:
            ValidationError: If the encounter lacks required identifiers
        """
        node_a.require_encounter_fields(encounter)
        thresholds = self.settings.thresholds_for(encounter.payer_id)
        result = DecisionResult(encounter_id=encounter.encounter_id, outcome=DecisionOutcome.COMPLETED)

        # Node A: eligibility
        eligibility = node_a.check_eligibility(encounter)
        result.nodes.append(eligibility.to_node_result())
        if not eligibility.eligible:
            result.outcome = DecisionOutcome.DENIED
            result.denial_reason = eligibility.denial_reason
            return result

        # Node B: classification
        classified = node_b.classify_service(encounter)
        result.classification = classified.classification
        result.place_of_service = classified.place_of_service
        self._record(result, classified.to_node_result(), classified.review_flags, thresholds)

        diagnoses = await self._assign_diagnoses(encounter)
        result.candidates.extend(diagnoses)

        if self.settings.FAST_PATH_ENABLED and not classified.review_flags:
            match = match_fast_path(encounter, classified.classification, self.scenarios)
            if match and match.agrees_with_documentation and match.confidence > thresholds.auto_approve:
                self._apply_fast_path(result, encounter, match)
                return self._finalize(result)
            if match and not match.agrees_with_documentation:
                logger.debug(
                    f"Fast path {match.scenario.name} declined: documentation supports "
                    f"{match.documented_code}, not {match.scenario.cpt_code}"
                )
            elif match:
                logger.debug(
                    f"Fast path {match.scenario.name} declined at {match.confidence}: "
                    f"{', '.join(match.penalties)}"
                )

        procedures = await self._select_procedures(result, encounter, classified.classification, thresholds)
        procedures = self._apply_modifiers(result, encounter, procedures, thresholds)
        result.candidates.extend(procedures)

        self._check_necessity(result, diagnoses, procedures)
        await self._price(result, encounter, procedures)
        return self._finalize(result)

    # =========================================================================
    # Diagnoses
    # =========================================================================

    async def _assign_diagnoses(self, encounter: Encounter) -> list[CandidateCode]:
        """Documented diagnoses as engine candidates; term-only ones are looked up."""
        documented = encounter.diagnoses
        principal_index = next((i for i, d in enumerate(documented) if d.is_principal), 0)
        candidates: list[CandidateCode] = []
        seen: set[str] = set()

        for index, diagnosis in enumerate(documented):
            is_principal = index == principal_index
            code = (diagnosis.code or "").strip().upper()
            description = diagnosis.description
            confidence = PRINCIPAL_DIAGNOSIS_CONFIDENCE if is_principal else SECONDARY_DIAGNOSIS_CONFIDENCE
            rationale = "Documented diagnosis"

            if not code and diagnosis.description:
                matches = await self.code_table.search(
                    CodeSystem.ICD10, diagnosis.description, on=encounter.service_date, limit=1
                )
                if not matches:
                    logger.warning(f"No ICD-10 code matches diagnosis term '{diagnosis.description}'")
                    continue
                code = matches[0].entry.code
                description = matches[0].entry.long_desc
                confidence = TERM_MATCH_CONFIDENCE
                rationale = f'Matched from term "{diagnosis.description}"'

            if not code or code in seen:
                continue
            seen.add(code)
            candidates.append(
                CandidateCode(
                    system=CodeSystem.ICD10,
                    code=code,
                    description=description,
                    confidence=confidence,
                    source=CodeSource.DECISION_ENGINE,
                    rationale=rationale,
                    is_principal=is_principal,
                )
            )
        return candidates

    # =========================================================================
    # Fast Path
    # =========================================================================

    def _apply_fast_path(self, result: DecisionResult, encounter: Encounter, match: FastPathMatch) -> None:
        scenario = match.scenario
        result.fast_path_scenario = scenario.name
        result.candidates.append(
            CandidateCode(
                system=CodeSystem.CPT,
                code=scenario.cpt_code,
                description=scenario.description,
                confidence=match.confidence,
                source=CodeSource.DECISION_ENGINE,
                rationale=f"Fast path scenario {scenario.name}",
                modifiers=scenario.modifiers,
            )
        )
        for modifier in scenario.modifiers:
            rule = next((r for r in node_e.MODIFIER_RULES if r.modifier == modifier), None)
            result.modifier_rationale[modifier] = rule.rationale if rule else scenario.description

        result.documentation_score, result.missing_elements = node_d.documentation_completeness(
            encounter.documentation
        )
        skipped = [
            (node_c.NODE_ID, node_c.NODE_NAME),
            (node_d.NODE_ID, node_d.NODE_NAME),
            (node_e.NODE_ID, node_e.NODE_NAME),
            (NODE_F_ID, NODE_F_NAME),
        ]
        for node_id, name in skipped:
            result.nodes.append(
                NodeResult(
                    node_id=node_id,
                    name=name,
                    status=NodeStatus.SKIPPED,
                    confidence=match.confidence,
                    rationale=f"Fast path: {scenario.name}",
                )
            )
        logger.info(f"Encounter {encounter.encounter_id} took fast path {scenario.name} ({match.confidence})")

    # =========================================================================
    # Nodes C and D
    # =========================================================================

    async def _select_procedures(
        self,
        result: DecisionResult,
        encounter: Encounter,
        classification: ServiceClassification,
        thresholds: DecisionThresholds,
    ) -> list[CandidateCode]:
        """E/M lines first, then looked-up procedures."""
        run_lookup = classification == ServiceClassification.PROCEDURAL or (
            classification == ServiceClassification.UNKNOWN and bool(encounter.procedures)
        )
        run_em = classification != ServiceClassification.PROCEDURAL or encounter.flags.em_with_procedure

        looked_up: list[CandidateCode] = []
        if run_lookup:
            summary = await node_c.lookup_procedures(
                encounter.procedures,
                self.code_table,
                encounter.service_date,
                self.settings.UNLISTED_PROCEDURE_CODE,
            )
            self._record(result, summary.to_node_result(), summary.review_flags, thresholds)
            result.is_unlisted_procedure = summary.is_unlisted
            for found in summary.results:
                looked_up.append(
                    CandidateCode(
                        system=found.code_system,
                        code=found.code,
                        description=found.description,
                        confidence=found.confidence,
                        source=CodeSource.DECISION_ENGINE,
                        rationale=found.rationale,
                        modifiers=found.documented_modifiers[: node_e.MAX_MODIFIERS],
                        units=found.units,
                    )
                )
        else:
            result.nodes.append(self._skipped(node_c.NODE_ID, node_c.NODE_NAME, "Evaluation/management encounter"))

        em_lines: list[CandidateCode] = []
        if run_em:
            em = node_d.determine_em_level(encounter.documentation, encounter.is_new_patient)
            self._record(result, em.to_node_result(), em.review_flags, thresholds)
            result.documentation_score = em.documentation_score
            result.missing_elements = list(em.missing_elements)
            em_lines.append(
                CandidateCode(
                    system=CodeSystem.CPT,
                    code=em.code,
                    description=f"E/M level {em.level}",
                    confidence=em.confidence,
                    source=CodeSource.DECISION_ENGINE,
                    rationale=f"E/M level {em.level} via {em.method.value}",
                )
            )
            if em.prolonged:
                em_lines.append(
                    CandidateCode(
                        system=CodeSystem.CPT,
                        code=em.prolonged.code,
                        description="Prolonged E/M service, each 15 minutes",
                        confidence=em.confidence,
                        source=CodeSource.DECISION_ENGINE,
                        rationale=f"{em.prolonged.extra_minutes} minutes beyond {em.code} base time",
                        units=em.prolonged.units,
                    )
                )
        else:
            result.nodes.append(self._skipped(node_d.NODE_ID, node_d.NODE_NAME, "Procedural encounter"))

        return em_lines + looked_up

    # =========================================================================
    # Node E
    # =========================================================================

    def _apply_modifiers(
        self,
        result: DecisionResult,
        encounter: Encounter,
        procedures: list[CandidateCode],
        thresholds: DecisionThresholds,
    ) -> list[CandidateCode]:
        decisions: list[node_e.ModifierDecision] = []
        final: list[CandidateCode] = []
        seen: set[tuple[str, frozenset[str]]] = set()

        for candidate in procedures:
            if candidate.code != node_d.PROLONGED_SERVICE_CODE:
                decision = node_e.determine_modifiers(candidate.code, encounter, candidate.modifiers)
                decisions.append(decision)
                candidate.modifiers = decision.modifiers
                result.modifier_rationale.update(decision.rationale)
            if candidate.key in seen:
                continue
            seen.add(candidate.key)
            final.append(candidate)

        self._record(result, node_e.modifier_node_result(decisions), [], thresholds)
        return final

    # =========================================================================
    # Medical Necessity
    # =========================================================================

    def _check_necessity(
        self,
        result: DecisionResult,
        diagnoses: list[CandidateCode],
        procedures: list[CandidateCode],
    ) -> None:
        ordered = sorted(diagnoses, key=lambda d: not d.is_principal)
        codes = [d.code for d in ordered] or [self.settings.DEFAULT_PRINCIPAL_DIAGNOSIS]
        for procedure in procedures:
            check = self.necessity.validate(procedure.code, codes)
            if not check.is_medically_necessary:
                result.review_flags.append(
                    ReviewFlag(ReviewReason.MEDICAL_NECESSITY, "; ".join(check.issues), NECESSITY_NODE_ID)
                )

    # =========================================================================
    # Node F
    # =========================================================================

    async def _price(self, result: DecisionResult, encounter: Encounter, procedures: list[CandidateCode]) -> None:
        sources = []
        for procedure in procedures:
            quote = await self.fee_resolver.resolve(
                FeeRequest(
                    code_system=procedure.system,
                    code=procedure.code,
                    modifiers=procedure.modifiers,
                    payer_id=encounter.payer_id,
                    provider_id=encounter.provider_id,
                    service_date=encounter.service_date,
                    encounter_id=encounter.encounter_id,
                )
            )
            result.fee_quotes.append(quote)
            label = "-".join([procedure.code, *procedure.modifiers])
            sources.append(f"{label} {quote.price} ({quote.rate_source.value})")

        fallback = any(q.rate_source != RateSource.CONTRACTED for q in result.fee_quotes)
        result.nodes.append(
            NodeResult(
                node_id=NODE_F_ID,
                name=NODE_F_NAME,
                status=NodeStatus.PASSED,
                rationale=("Fallback rates used: " if fallback else "Contracted rates: ") + ", ".join(sources),
            )
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _record(
        self,
        result: DecisionResult,
        node: NodeResult,
        flags: list[ReviewFlag],
        thresholds: DecisionThresholds,
    ) -> None:
        """Append a node and its flags; low confidence becomes a flag too."""
        result.nodes.append(node)
        result.review_flags.extend(flags)
        try:
            self._enforce_threshold(node, thresholds.manual_review, result.encounter_id)
        except LowConfidence as e:
            logger.warning(e.message)
            result.review_flags.append(ReviewFlag(ReviewReason.LOW_CONFIDENCE, e.message, node.node_id))

    @staticmethod
    def _enforce_threshold(node: NodeResult, threshold: int, encounter_id: str) -> None:
        """
        Raises:
            LowConfidence: If the node reported a confidence below the threshold
        """
        if node.confidence is not None and node.confidence < threshold:
            raise LowConfidence(node.node_id, node.confidence, threshold, encounter_id)

    @staticmethod
    def _skipped(node_id: str, name: str, reason: str) -> NodeResult:
        return NodeResult(node_id=node_id, name=name, status=NodeStatus.SKIPPED, rationale=reason)

    @staticmethod
    def _finalize(result: DecisionResult) -> DecisionResult:
        if result.review_flags:
            result.outcome = DecisionOutcome.MANUAL_REVIEW_REQUIRED
            logger.warning(
                f"Encounter {result.encounter_id} requires manual review: "
                f"{', '.join(sorted({f.reason.value for f in result.review_flags}))}"
            )
        else:
            result.outcome = DecisionOutcome.COMPLETED
        return result


# =============================================================================
# Factory Functions
# =============================================================================


def create_decision_engine(
    code_table: CodeTable,
    fee_resolver: Optional[FeeResolver] = None,
    necessity: Optional[MedicalNecessityService] = None,
    settings: Optional[BillingSettings] = None,
) -> DecisionEngine:
    """Create a DecisionEngine with the standard fee chain when none is given."""
    settings = settings or get_billing_settings()
    return DecisionEngine(
        code_table=code_table,
        fee_resolver=fee_resolver or FeeResolver.build(code_table=code_table, settings=settings),
        necessity=necessity,
        settings=settings,
    )
