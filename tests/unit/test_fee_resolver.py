"""
Unit Tests for the Fee Resolver

Tests:
- Contracted, chargemaster, reference and default tiers
- Exact modifier matching
- RBRVS reference pricing and payer multipliers
- Tier timeouts and failures
"""

import asyncio
from datetime import date
from decimal import Decimal
from typing import Optional

import pytest

from medbill.core.enums import AuditEventType, CodeSystem, FeeScheduleKind, RateSource
from medbill.core.errors import FeeNotFound
from medbill.services.billing.fee_resolver import (
    DefaultRateStrategy,
    FeeRequest,
    FeeResolver,
    InMemoryFeeScheduleSource,
    RateStrategy,
    payer_multiplier,
    to_cents,
)
from medbill.services.billing.records import FeeQuote

SERVICE_DATE = date(2025, 3, 14)


def _request(code, modifiers=(), payer_id="aetna", provider_id="PRV-001", system=CodeSystem.CPT):
    return FeeRequest(
        code_system=system,
        code=code,
        modifiers=modifiers,
        payer_id=payer_id,
        provider_id=provider_id,
        service_date=SERVICE_DATE,
        encounter_id="ENC-1001",
    )


class SlowStrategy(RateStrategy):
    rate_source = RateSource.CONTRACTED

    async def resolve(self, request: FeeRequest) -> Optional[FeeQuote]:
        await asyncio.sleep(1)
        return None


class BrokenStrategy(RateStrategy):
    rate_source = RateSource.CHARGEMASTER

    async def resolve(self, request: FeeRequest) -> Optional[FeeQuote]:
        raise RuntimeError("schedule store unavailable")


class EmptyStrategy(RateStrategy):
    rate_source = RateSource.REFERENCE

    async def resolve(self, request: FeeRequest) -> Optional[FeeQuote]:
        return None


# =============================================================================
# Fallback Chain
# =============================================================================


@pytest.mark.unit
class TestFallbackChain:
    """Test tier order"""

    @pytest.mark.asyncio
    async def test_contracted_rate(self, fee_resolver, audit):
        """Test a contracted price wins and is not audited"""
        quote = await fee_resolver.resolve(_request("99213"))
        assert quote.price == Decimal("110.00")
        assert quote.rate_source == RateSource.CONTRACTED
        assert quote.schedule_id == "aetna-acme-2025"
        assert quote.tiers_tried == [RateSource.CONTRACTED]
        assert audit.events == []

    @pytest.mark.asyncio
    async def test_modifier_priced_separately(self, fee_resolver):
        """Test 99213-25 has its own contracted price"""
        quote = await fee_resolver.resolve(_request("99213", ("25",)))
        assert quote.price == Decimal("95.00")

    @pytest.mark.asyncio
    async def test_unknown_modifier_combination_falls_through(self, fee_resolver):
        """Test modifiers must match exactly"""
        quote = await fee_resolver.resolve(_request("99213", ("25", "59")))
        assert quote.rate_source == RateSource.REFERENCE
        assert quote.modifiers == ("25", "59")

    @pytest.mark.asyncio
    async def test_chargemaster_rate(self, fee_resolver, audit):
        """Test the provider chargemaster backs up the contract"""
        resolution = await fee_resolver.resolve_with_trace(_request("93000"))
        assert resolution.quote.price == Decimal("45.00")
        assert resolution.quote.rate_source == RateSource.CHARGEMASTER
        assert [a.outcome for a in resolution.attempts] == ["miss", "matched"]

        events = audit.of_type(AuditEventType.FEE_FALLBACK_USED)
        assert len(events) == 1
        assert events[0].details["rate_source"] == "chargemaster"
        assert events[0].encounter_id == "ENC-1001"

    @pytest.mark.asyncio
    async def test_chargemaster_without_contract(self, fee_resolver):
        """Test a payer without a contract goes to the chargemaster"""
        quote = await fee_resolver.resolve(_request("99490", payer_id="cigna"))
        assert quote.price == Decimal("62.00")

    @pytest.mark.asyncio
    async def test_default_rate(self, fee_resolver):
        """Test a code with no schedule row and no RVUs"""
        resolution = await fee_resolver.resolve_with_trace(_request("99499"))
        assert resolution.quote.price == Decimal("100.00")
        assert resolution.quote.rate_source == RateSource.DEFAULT
        assert [a.rate_source for a in resolution.attempts] == [
            RateSource.CONTRACTED,
            RateSource.CHARGEMASTER,
            RateSource.REFERENCE,
            RateSource.DEFAULT,
        ]

    @pytest.mark.asyncio
    async def test_expired_schedule_ignored(self, fee_resolver):
        """Test service dates outside the contract window skip it"""
        request = _request("99213")
        request.service_date = date(2026, 2, 1)
        quote = await fee_resolver.resolve(request)
        assert quote.rate_source != RateSource.CONTRACTED

    @pytest.mark.asyncio
    async def test_direct_lookup(self, fee_resolver):
        """Test schedule lookup without the chain"""
        entry = await fee_resolver.lookup_fee("aetna-acme-2025", CodeSystem.CPT, "99214", ("25",))
        assert entry.price == Decimal("140.00")
        assert entry.modifiers == ("25", "", "", "")
        assert entry.active_modifiers == ("25",)

    def test_unknown_schedule_rejected(self):
        """Test entries need an existing schedule"""
        source = InMemoryFeeScheduleSource()
        with pytest.raises(KeyError):
            source.add_entry("missing", "99213", "10.00")


# =============================================================================
# Reference Pricing
# =============================================================================


@pytest.mark.unit
class TestReferencePricing:
    """Test RBRVS pricing"""

    @pytest.mark.asyncio
    async def test_rbrvs_with_payer_multiplier(self, fee_resolver):
        """Test 2.90 RVU x 33.2875 x 1.35"""
        quote = await fee_resolver.resolve(_request("99203"))
        assert quote.rate_source == RateSource.REFERENCE
        assert quote.price == Decimal("130.32")

    @pytest.mark.asyncio
    async def test_rbrvs_medicare(self, fee_resolver):
        """Test Medicare pays the unadjusted rate"""
        quote = await fee_resolver.resolve(_request("99203", payer_id="medicare"))
        assert quote.price == Decimal("96.53")

    @pytest.mark.asyncio
    async def test_rbrvs_unknown_payer(self, fee_resolver):
        """Test unknown payers use the default multiplier"""
        quote = await fee_resolver.resolve(_request("99203", payer_id="acme-health"))
        assert quote.price == Decimal("125.49")

    def test_payer_multiplier_normalization(self):
        """Test separators are normalized before matching"""
        assert payer_multiplier("Blue-Cross TX", Decimal("1.30")) == Decimal("1.4")
        assert payer_multiplier(None, Decimal("1.30")) == Decimal("1.30")

    def test_to_cents_rounds_half_up(self):
        """Test monetary rounding"""
        assert to_cents(Decimal("10.005")) == Decimal("10.01")
        assert to_cents(Decimal("10.004")) == Decimal("10.00")

    @pytest.mark.asyncio
    async def test_reference_schedule_preferred(self, code_table, billing_settings):
        """Test a loaded reference schedule wins over RBRVS"""
        source = InMemoryFeeScheduleSource()
        source.add_schedule("mpfs-2025", FeeScheduleKind.REFERENCE)
        source.add_entry("mpfs-2025", "99203", "99.99")
        resolver = FeeResolver.build(source, code_table=code_table, settings=billing_settings)

        quote = await resolver.resolve(_request("99203"))
        assert quote.price == Decimal("99.99")
        assert quote.schedule_id == "mpfs-2025"


# =============================================================================
# Failure Handling
# =============================================================================


@pytest.mark.unit
class TestTierFailures:
    """Test timeouts and errors fall through"""

    @pytest.mark.asyncio
    async def test_timeout_falls_through(self):
        """Test a slow tier is abandoned"""
        resolver = FeeResolver([SlowStrategy(), DefaultRateStrategy(Decimal("50"))], tier_timeout=0.05)
        resolution = await resolver.resolve_with_trace(_request("99213"))
        assert resolution.quote.price == Decimal("50.00")
        assert [a.outcome for a in resolution.attempts] == ["timeout", "matched"]

    @pytest.mark.asyncio
    async def test_error_falls_through(self):
        """Test a failing tier is recorded and skipped"""
        resolver = FeeResolver([BrokenStrategy(), DefaultRateStrategy(Decimal("50"))], tier_timeout=1)
        resolution = await resolver.resolve_with_trace(_request("99213"))
        assert resolution.attempts[0].outcome == "error"
        assert "unavailable" in resolution.attempts[0].detail
        assert resolution.quote.rate_source == RateSource.DEFAULT

    @pytest.mark.asyncio
    async def test_no_tier_answers(self):
        """Test FeeNotFound when every tier misses"""
        resolver = FeeResolver([EmptyStrategy()], tier_timeout=1)
        with pytest.raises(FeeNotFound):
            await resolver.resolve(_request("99213"))

    def test_empty_chain_rejected(self):
        """Test a resolver needs a strategy"""
        with pytest.raises(ValueError):
            FeeResolver([], tier_timeout=1)
