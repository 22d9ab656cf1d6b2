"""
Integration Tests for SQL-backed collaborators
Runs the sequencer, claim store, fee schedules and code table against SQLite
"""

import asyncio
from datetime import date
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import select, update

from medbill.core.enums import (
    ClaimStatus,
    CodeStatus,
    CodeSystem,
    ControlNumberName,
    FeeScheduleKind,
    OverflowPolicy,
    RateSource,
)
from medbill.core.errors import ControlNumberExhausted
from medbill.models import ClaimLine as ClaimLineRow
from medbill.models import ControlNumberCounter, FeeSchedule, FeeScheduleItem, ReferenceCode
from medbill.services.billing.claim_status import InvalidTransitionError, TransitionEvent
from medbill.services.billing.claim_store import DuplicateClaimError, SqlClaimStore
from medbill.services.billing.code_tables import SqlCodeTable
from medbill.services.billing.fee_resolver import FeeRequest, FeeResolver, SqlFeeScheduleSource
from medbill.services.edi.control_numbers import SqlControlNumberSequencer
from medbill.services.edi.x12_837_generator import X12837PGenerator

POLICIES = {
    ControlNumberName.ISA: OverflowPolicy.ERROR,
    ControlNumberName.GS: OverflowPolicy.ERROR,
    ControlNumberName.ST: OverflowPolicy.WRAP,
}


# =============================================================================
# Control Numbers
# =============================================================================


@pytest.mark.integration
class TestSqlControlNumberSequencer:
    """Test persisted counters"""

    @pytest.mark.asyncio
    async def test_counters_persist(self, session_maker):
        """Test values survive a new sequencer instance"""
        sequencer = SqlControlNumberSequencer(session_maker, POLICIES)
        assert await sequencer.next(ControlNumberName.ISA) == 1
        assert await sequencer.next(ControlNumberName.ISA) == 2
        numbers = await sequencer.next_envelope()
        assert (numbers.isa, numbers.gs, numbers.st) == (3, 1, 1)

        restarted = SqlControlNumberSequencer(session_maker, POLICIES)
        assert await restarted.current(ControlNumberName.ISA) == 3
        assert await restarted.next("isa") == 4

    @pytest.mark.asyncio
    async def test_st_wraps_and_counts(self, session_maker):
        """Test the ST counter restarts at 1 and records the wrap"""
        sequencer = SqlControlNumberSequencer(session_maker, POLICIES)
        await sequencer.current(ControlNumberName.ST)
        async with session_maker() as session:
            await session.execute(
                update(ControlNumberCounter).where(ControlNumberCounter.name == "st").values(value=9999)
            )
            await session.commit()

        assert await sequencer.next(ControlNumberName.ST) == 1
        async with session_maker() as session:
            counter = await session.get(ControlNumberCounter, "st")
            assert counter.value == 1
            assert counter.wrap_count == 1

    @pytest.mark.asyncio
    async def test_isa_exhausted_rolls_back(self, session_maker):
        """Test an exhausted ISA counter raises and keeps its value"""
        sequencer = SqlControlNumberSequencer(session_maker, POLICIES)
        await sequencer.current(ControlNumberName.ISA)
        async with session_maker() as session:
            await session.execute(
                update(ControlNumberCounter).where(ControlNumberCounter.name == "isa").values(value=999_999_999)
            )
            await session.commit()

        with pytest.raises(ControlNumberExhausted):
            await sequencer.next(ControlNumberName.ISA)
        assert await sequencer.current(ControlNumberName.ISA) == 999_999_999

    @pytest.mark.asyncio
    async def test_concurrent_draws_are_unique(self, file_session_maker):
        """Test concurrent draws across two sequencers are distinct and contiguous"""
        first = SqlControlNumberSequencer(file_session_maker, POLICIES)
        second = SqlControlNumberSequencer(file_session_maker, POLICIES)
        assert await first.current(ControlNumberName.ISA) == 0
        assert await second.current(ControlNumberName.ISA) == 0

        draws = [first.next("isa") if i % 2 else second.next("isa") for i in range(50)]
        values = await asyncio.gather(*draws)

        assert sorted(values) == list(range(1, 51))
        assert await first.current(ControlNumberName.ISA) == 50


# =============================================================================
# Claim Store
# =============================================================================


@pytest.mark.integration
class TestSqlClaimStore:
    """Test claim rows, lines and status history"""

    @pytest.fixture
    def interchange(self, make_claim, billing_settings):
        claim = make_claim()
        return claim, X12837PGenerator(settings=billing_settings).generate(claim)

    @pytest.mark.asyncio
    async def test_save_and_read(self, session_maker, interchange):
        """Test header, lines and 837P text are stored"""
        claim, x12 = interchange
        store = SqlClaimStore(session_maker)
        await store.save(claim, x12)

        assert await store.get_status(claim.claim_id) == ClaimStatus.GENERATED
        assert await store.get_x12(claim.claim_id) == x12.content
        assert await store.get_status("missing") is None

        async with session_maker() as session:
            lines = (await session.execute(select(ClaimLineRow).order_by(ClaimLineRow.position))).scalars().all()
        assert [(l.procedure_code, l.modifiers, l.diagnosis_pointers) for l in lines] == [
            ("99213", ["25"], [1]),
            ("20610", [], [2, 1]),
        ]
        assert lines[0].rate_source == RateSource.CONTRACTED

    @pytest.mark.asyncio
    async def test_duplicate_rejected(self, session_maker, interchange):
        """Test a claim id is stored once"""
        claim, x12 = interchange
        store = SqlClaimStore(session_maker)
        await store.save(claim, x12)
        with pytest.raises(DuplicateClaimError):
            await store.save(claim, x12)

    @pytest.mark.asyncio
    async def test_transitions_and_history(self, session_maker, interchange):
        """Test status moves are persisted in order"""
        claim, x12 = interchange
        store = SqlClaimStore(session_maker)
        await store.save(claim, x12)

        await store.transition(claim.claim_id, TransitionEvent.SUBMIT, actor="clearinghouse")
        await store.transition(claim.claim_id, TransitionEvent.ACCEPT)

        assert await store.get_status(claim.claim_id) == ClaimStatus.ACCEPTED
        history = await store.history(claim.claim_id)
        assert [(h.event, h.new_status) for h in history] == [
            (TransitionEvent.SUBMIT, ClaimStatus.SUBMITTED),
            (TransitionEvent.ACCEPT, ClaimStatus.ACCEPTED),
        ]
        assert history[0].actor == "clearinghouse"
        assert history[1].actor == "system"

    @pytest.mark.asyncio
    async def test_invalid_transition(self, session_maker, interchange):
        """Test a rejected event writes nothing"""
        claim, x12 = interchange
        store = SqlClaimStore(session_maker)
        await store.save(claim, x12)
        with pytest.raises(InvalidTransitionError):
            await store.transition(claim.claim_id, TransitionEvent.PAY)
        assert await store.history(claim.claim_id) == []


# =============================================================================
# Fee Schedules and Code Table
# =============================================================================


@pytest_asyncio.fixture
async def seeded(session_maker):
    """Contracted schedule plus reference codes."""
    async with session_maker() as session:
        session.add(
            FeeSchedule(
                name="Aetna / Acme 2025",
                kind=FeeScheduleKind.CONTRACTED,
                payer_id="aetna",
                provider_id="PRV-001",
                effective_date=date(2025, 1, 1),
                expiry_date=date(2025, 12, 31),
                items=[
                    FeeScheduleItem(code_system=CodeSystem.CPT, code="99213", price=Decimal("110.00")),
                    FeeScheduleItem(
                        code_system=CodeSystem.CPT, code="99213", modifier1="25", price=Decimal("95.00")
                    ),
                ],
            )
        )
        session.add_all(
            [
                ReferenceCode(
                    code_system="CPT",
                    code="99203",
                    long_desc="Office or other outpatient visit, new patient, low MDM",
                    work_rvu=Decimal("1.60"),
                    practice_rvu=Decimal("1.20"),
                    malpractice_rvu=Decimal("0.10"),
                ),
                ReferenceCode(code_system="ICD10", code="Z59.3", long_desc="Food insecurity"),
                ReferenceCode(
                    code_system="ICD10",
                    code="Z59.4",
                    long_desc="Lack of adequate food",
                    status=CodeStatus.INACTIVE.value,
                ),
            ]
        )
        await session.commit()
    return session_maker


def _request(code, modifiers=(), payer_id="aetna"):
    return FeeRequest(
        code_system=CodeSystem.CPT,
        code=code,
        modifiers=modifiers,
        payer_id=payer_id,
        provider_id="PRV-001",
        service_date=date(2025, 3, 14),
    )


@pytest.mark.integration
class TestSqlFeeSchedules:
    """Test schedule lookup and the resolver over SQL"""

    @pytest.mark.asyncio
    async def test_find_schedule(self, seeded):
        """Test payer, provider and date filters"""
        source = SqlFeeScheduleSource(seeded)
        assert await source.find_schedule(FeeScheduleKind.CONTRACTED, "aetna", "PRV-001", date(2025, 3, 14))
        assert await source.find_schedule(FeeScheduleKind.CONTRACTED, "aetna", "PRV-001", date(2026, 1, 2)) is None
        assert await source.find_schedule(FeeScheduleKind.CHARGEMASTER, provider_id="PRV-001") is None

    @pytest.mark.asyncio
    async def test_exact_modifier_match(self, seeded):
        """Test modifier slots must match exactly"""
        source = SqlFeeScheduleSource(seeded)
        schedule_id = await source.find_schedule(FeeScheduleKind.CONTRACTED, "aetna", "PRV-001")

        plain = await source.lookup_fee(schedule_id, CodeSystem.CPT, "99213")
        with_25 = await source.lookup_fee(schedule_id, CodeSystem.CPT, "99213", ("25",))
        assert plain.price == Decimal("110.00")
        assert with_25.price == Decimal("95.00")
        assert with_25.modifiers == ("25", "", "", "")
        assert await source.lookup_fee(schedule_id, CodeSystem.CPT, "99213", ("25", "59")) is None

    @pytest.mark.asyncio
    async def test_resolver_chain(self, seeded, billing_settings, audit):
        """Test contracted rows first, then RBRVS from reference codes"""
        resolver = FeeResolver.build(
            SqlFeeScheduleSource(seeded),
            code_table=SqlCodeTable(seeded),
            settings=billing_settings,
            audit=audit,
        )
        contracted = await resolver.resolve(_request("99213", ("25",)))
        assert (contracted.price, contracted.rate_source) == (Decimal("95.00"), RateSource.CONTRACTED)

        reference = await resolver.resolve(_request("99203", payer_id="medicare"))
        assert reference.rate_source == RateSource.REFERENCE
        assert reference.price == Decimal("96.53")


@pytest.mark.integration
class TestSqlCodeTable:
    """Test reference code reads"""

    @pytest.mark.asyncio
    async def test_get(self, seeded):
        """Test exact lookup including inactive rows"""
        table = SqlCodeTable(seeded)
        entry = await table.get(CodeSystem.CPT, "99203")
        assert entry.total_rvu == Decimal("2.90")
        assert (await table.get(CodeSystem.ICD10, "Z59.4")).status == CodeStatus.INACTIVE
        assert await table.get(CodeSystem.ICD10, "Z99.9") is None

    @pytest.mark.asyncio
    async def test_search_skips_inactive(self, seeded):
        """Test description search returns active codes only"""
        matches = await SqlCodeTable(seeded).search(CodeSystem.ICD10, "food insecurity")
        assert [m.entry.code for m in matches] == ["Z59.3"]
        assert matches[0].score == 1.0
