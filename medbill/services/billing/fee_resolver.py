"""
Fee Resolver.

Prices a (code system, code, modifiers) triple with an ordered list of
rate strategies, each returning a quote or None:

    contracted (payer + provider schedule)
      -> chargemaster (provider standard charge)
      -> reference (reference schedule, else Medicare RBRVS)
      -> default (fixed amount)

Schedule lookups match all four modifier slots exactly, so 99213 and
99213-25 are separately priced. Every tier runs under its own timeout;
a slow or failing tier falls through to the next one.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from medbill.core.config import BillingSettings, get_billing_settings
from medbill.core.enums import AuditEventType, CodeSystem, FeeScheduleKind, RateSource
from medbill.core.errors import FeeNotFound
from medbill.models.fee_schedule import FeeSchedule, FeeScheduleItem, normalize_modifiers
from medbill.services.billing.audit import AuditEmitter
from medbill.services.billing.code_tables import CodeTable
from medbill.services.billing.records import CENTS, FeeQuote

logger = logging.getLogger(__name__)


# =============================================================================
# Data Models
# =============================================================================


@dataclass
class FeeScheduleEntry:
    """Priced row; modifiers always hold four slots."""

    schedule_id: str
    code_system: CodeSystem
    code: str
    modifiers: tuple[str, str, str, str]
    price: Decimal
    unit: str = "UN"

    @property
    def active_modifiers(self) -> tuple[str, ...]:
        return tuple(m for m in self.modifiers if m)


@dataclass
class FeeRequest:
    """What to price and for whom."""

    code_system: CodeSystem
    code: str
    modifiers: tuple[str, ...] = ()
    payer_id: Optional[str] = None
    provider_id: Optional[str] = None
    service_date: Optional[date] = None
    encounter_id: Optional[str] = None


@dataclass(frozen=True)
class PayerRateMultiplier:
    """Reference-rate multiplier applied when the payer id contains the pattern."""

    pattern: str
    multiplier: Decimal


PAYER_RATE_MULTIPLIERS: tuple[PayerRateMultiplier, ...] = (
    PayerRateMultiplier("medicare", Decimal("1.0")),
    PayerRateMultiplier("medicaid", Decimal("0.7")),
    PayerRateMultiplier("blue_cross", Decimal("1.4")),
    PayerRateMultiplier("aetna", Decimal("1.35")),
    PayerRateMultiplier("united", Decimal("1.38")),
    PayerRateMultiplier("cigna", Decimal("1.32")),
    PayerRateMultiplier("commercial", Decimal("1.3")),
)


def payer_multiplier(payer_id: Optional[str], default: Decimal) -> Decimal:
    """First table entry whose pattern occurs in the payer id."""
    normalized = (payer_id or "").lower().replace("-", "_").replace(" ", "_")
    for entry in PAYER_RATE_MULTIPLIERS:
        if entry.pattern in normalized:
            return entry.multiplier
    return default


def to_cents(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENTS, rounding=ROUND_HALF_UP)


# =============================================================================
# Fee Schedule Sources
# =============================================================================


class FeeScheduleSource(ABC):
    """Read-only fee schedule collaborator."""

    @abstractmethod
    async def find_schedule(
        self,
        kind: FeeScheduleKind,
        payer_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        on: Optional[date] = None,
    ) -> Optional[str]:
        """Id of the schedule that applies, or None."""
        pass

    @abstractmethod
    async def lookup_fee(
        self,
        schedule_id: str,
        code_system: CodeSystem,
        code: str,
        modifiers: Optional[tuple[str, ...]] = None,
    ) -> Optional[FeeScheduleEntry]:
        """Exact match on schedule, code system, code and all four modifier slots."""
        pass


@dataclass
class _ScheduleHeader:
    schedule_id: str
    kind: FeeScheduleKind
    payer_id: Optional[str] = None
    provider_id: Optional[str] = None
    effective_date: Optional[date] = None
    expiry_date: Optional[date] = None

    def applies(self, on: Optional[date]) -> bool:
        if on is None:
            return True
        if self.effective_date and self.effective_date > on:
            return False
        if self.expiry_date and self.expiry_date < on:
            return False
        return True


class InMemoryFeeScheduleSource(FeeScheduleSource):
    """Fee schedules held in dicts."""

    def __init__(self) -> None:
        self._schedules: dict[str, _ScheduleHeader] = {}
        self._entries: dict[tuple[str, CodeSystem, str, tuple[str, str, str, str]], FeeScheduleEntry] = {}

    def add_schedule(
        self,
        schedule_id: str,
        kind: FeeScheduleKind,
        payer_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        effective_date: Optional[date] = None,
        expiry_date: Optional[date] = None,
    ) -> None:
        self._schedules[schedule_id] = _ScheduleHeader(
            schedule_id, kind, payer_id, provider_id, effective_date, expiry_date
        )

    def add_entry(
        self,
        schedule_id: str,
        code: str,
        price: Decimal | str,
        modifiers: tuple[str, ...] = (),
        code_system: CodeSystem = CodeSystem.CPT,
        unit: str = "UN",
    ) -> FeeScheduleEntry:
        """Add a priced row; a duplicate key replaces the previous price."""
        if schedule_id not in self._schedules:
            raise KeyError(f"Unknown fee schedule {schedule_id}")
        slots = normalize_modifiers(modifiers)
        entry = FeeScheduleEntry(
            schedule_id=schedule_id,
            code_system=code_system,
            code=code.upper(),
            modifiers=slots,
            price=to_cents(Decimal(price)),
            unit=unit,
        )
        self._entries[(schedule_id, code_system, entry.code, slots)] = entry
        return entry

    async def find_schedule(
        self,
        kind: FeeScheduleKind,
        payer_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        on: Optional[date] = None,
    ) -> Optional[str]:
        for header in self._schedules.values():
            if header.kind != kind or not header.applies(on):
                continue
            if payer_id is not None and header.payer_id != payer_id:
                continue
            if provider_id is not None and header.provider_id != provider_id:
                continue
            return header.schedule_id
        return None

    async def lookup_fee(
        self,
        schedule_id: str,
        code_system: CodeSystem,
        code: str,
        modifiers: Optional[tuple[str, ...]] = None,
    ) -> Optional[FeeScheduleEntry]:
        key = (schedule_id, code_system, code.strip().upper(), normalize_modifiers(modifiers))
        return self._entries.get(key)


class SqlFeeScheduleSource(FeeScheduleSource):
    """Fee schedules in fee_schedules / fee_schedule_items."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def find_schedule(
        self,
        kind: FeeScheduleKind,
        payer_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        on: Optional[date] = None,
    ) -> Optional[str]:
        conditions = [FeeSchedule.kind == kind, FeeSchedule.is_active.is_(True)]
        if payer_id is not None:
            conditions.append(FeeSchedule.payer_id == payer_id)
        if provider_id is not None:
            conditions.append(FeeSchedule.provider_id == provider_id)
        if on is not None:
            conditions.append(FeeSchedule.effective_date <= on)
            conditions.append(
                or_(FeeSchedule.expiry_date.is_(None), FeeSchedule.expiry_date >= on)
            )

        async with self._session_maker() as session:
            result = await session.execute(
                select(FeeSchedule.id)
                .where(and_(*conditions))
                .order_by(FeeSchedule.effective_date.desc())
                .limit(1)
            )
            schedule_id = result.scalar_one_or_none()
        return str(schedule_id) if schedule_id else None

    async def lookup_fee(
        self,
        schedule_id: str,
        code_system: CodeSystem,
        code: str,
        modifiers: Optional[tuple[str, ...]] = None,
    ) -> Optional[FeeScheduleEntry]:
        m1, m2, m3, m4 = normalize_modifiers(modifiers)
        async with self._session_maker() as session:
            result = await session.execute(
                select(FeeScheduleItem).where(
                    and_(
                        FeeScheduleItem.fee_schedule_id == UUID(schedule_id),
                        FeeScheduleItem.code_system == code_system,
                        FeeScheduleItem.code == code.strip().upper(),
                        FeeScheduleItem.modifier1 == m1,
                        FeeScheduleItem.modifier2 == m2,
                        FeeScheduleItem.modifier3 == m3,
                        FeeScheduleItem.modifier4 == m4,
                    )
                )
            )
            item = result.scalar_one_or_none()

        if item is None:
            return None
        return FeeScheduleEntry(
            schedule_id=schedule_id,
            code_system=item.code_system,
            code=item.code,
            modifiers=item.modifiers,
            price=to_cents(item.price),
            unit=item.unit,
        )


# =============================================================================
# Rate Strategies
# =============================================================================


class RateStrategy(ABC):
    """One tier of the fallback chain."""

    rate_source: RateSource

    @abstractmethod
    async def resolve(self, request: FeeRequest) -> Optional[FeeQuote]:
        """Return a quote, or None when this tier has no price."""
        pass


class _ScheduleStrategy(RateStrategy):
    """Tier that reads one kind of fee schedule."""

    kind: FeeScheduleKind

    def __init__(self, source: Optional[FeeScheduleSource]):
        self.source = source

    def _schedule_filter(self, request: FeeRequest) -> Optional[dict[str, str]]:
        """Schedule selection arguments, None when the request cannot use this tier."""
        return {}

    async def resolve(self, request: FeeRequest) -> Optional[FeeQuote]:
        criteria = self._schedule_filter(request)
        if self.source is None or criteria is None:
            return None
        schedule_id = await self.source.find_schedule(
            self.kind, on=request.service_date, **criteria
        )
        if schedule_id is None:
            return None
        entry = await self.source.lookup_fee(
            schedule_id, request.code_system, request.code, request.modifiers
        )
        if entry is None:
            return None
        return FeeQuote(
            code_system=request.code_system,
            code=request.code,
            modifiers=request.modifiers,
            price=entry.price,
            rate_source=self.rate_source,
            schedule_id=schedule_id,
            unit=entry.unit,
        )


class ContractedRateStrategy(_ScheduleStrategy):
    """Payer + provider contracted schedule."""

    rate_source = RateSource.CONTRACTED
    kind = FeeScheduleKind.CONTRACTED

    def _schedule_filter(self, request: FeeRequest) -> Optional[dict[str, str]]:
        if not request.payer_id or not request.provider_id:
            return None
        return {"payer_id": request.payer_id, "provider_id": request.provider_id}


class ChargemasterRateStrategy(_ScheduleStrategy):
    """Provider's standard charge."""

    rate_source = RateSource.CHARGEMASTER
    kind = FeeScheduleKind.CHARGEMASTER

    def _schedule_filter(self, request: FeeRequest) -> Optional[dict[str, str]]:
        if not request.provider_id:
            return None
        return {"provider_id": request.provider_id}


class ReferenceRateStrategy(_ScheduleStrategy):
    """
    Published reference rate.

    A loaded reference schedule wins; otherwise the Medicare RBRVS
    formula is applied to the code's RVUs:
        (work + practice + malpractice) x conversion factor x payer multiplier
    """

    rate_source = RateSource.REFERENCE
    kind = FeeScheduleKind.REFERENCE

    def __init__(
        self,
        source: Optional[FeeScheduleSource],
        code_table: Optional[CodeTable],
        settings: Optional[BillingSettings] = None,
    ):
        super().__init__(source)
        self.code_table = code_table
        self.settings = settings or get_billing_settings()

    async def resolve(self, request: FeeRequest) -> Optional[FeeQuote]:
        quote = await super().resolve(request)
        if quote is not None:
            return quote

        if self.code_table is None:
            return None
        entry = await self.code_table.get(request.code_system, request.code)
        if entry is None or entry.total_rvu is None:
            return None

        multiplier = payer_multiplier(request.payer_id, self.settings.DEFAULT_PAYER_MULTIPLIER)
        price = to_cents(entry.total_rvu * self.settings.MEDICARE_CONVERSION_FACTOR * multiplier)
        logger.debug(
            f"RBRVS rate for {request.code}: {entry.total_rvu} RVU x "
            f"{self.settings.MEDICARE_CONVERSION_FACTOR} x {multiplier} = {price}"
        )
        return FeeQuote(
            code_system=request.code_system,
            code=request.code,
            modifiers=request.modifiers,
            price=price,
            rate_source=self.rate_source,
        )


class DefaultRateStrategy(RateStrategy):
    """Fixed amount; always answers."""

    rate_source = RateSource.DEFAULT

    def __init__(self, amount: Decimal):
        self.amount = to_cents(amount)

    async def resolve(self, request: FeeRequest) -> Optional[FeeQuote]:
        return FeeQuote(
            code_system=request.code_system,
            code=request.code,
            modifiers=request.modifiers,
            price=self.amount,
            rate_source=self.rate_source,
        )


# =============================================================================
# Resolver
# =============================================================================


@dataclass
class TierAttempt:
    """Outcome of one tier during a resolution."""

    rate_source: RateSource
    outcome: str  # matched | miss | timeout | error
    detail: str = ""


@dataclass
class FeeResolution:
    """Quote plus the attempts that led to it."""

    quote: FeeQuote
    attempts: list[TierAttempt] = field(default_factory=list)


class FeeResolver:
    """
    Walks the rate strategies in order until one produces a price.

    Usage:
        resolver = FeeResolver.build(source, code_table)
        quote = await resolver.resolve(FeeRequest(CodeSystem.CPT, "99213", ("25",), ...))
    """

    def __init__(
        self,
        strategies: list[RateStrategy],
        source: Optional[FeeScheduleSource] = None,
        tier_timeout: Optional[float] = None,
        audit: Optional[AuditEmitter] = None,
    ):
        if not strategies:
            raise ValueError("FeeResolver needs at least one rate strategy")
        self.strategies = strategies
        self.source = source
        self.tier_timeout = tier_timeout or get_billing_settings().FEE_TIER_TIMEOUT_SECONDS
        self.audit = audit

    @classmethod
    def build(
        cls,
        source: Optional[FeeScheduleSource] = None,
        code_table: Optional[CodeTable] = None,
        settings: Optional[BillingSettings] = None,
        audit: Optional[AuditEmitter] = None,
    ) -> "FeeResolver":
        """Standard four-tier chain."""
        settings = settings or get_billing_settings()
        strategies: list[RateStrategy] = []
        if source is not None:
            strategies.append(ContractedRateStrategy(source))
            strategies.append(ChargemasterRateStrategy(source))
        strategies.append(ReferenceRateStrategy(source, code_table, settings))
        strategies.append(DefaultRateStrategy(settings.DEFAULT_FEE_AMOUNT))
        return cls(
            strategies,
            source=source,
            tier_timeout=settings.FEE_TIER_TIMEOUT_SECONDS,
            audit=audit,
        )

    async def lookup_fee(
        self,
        schedule_id: str,
        code_system: CodeSystem,
        code: str,
        modifiers: Optional[tuple[str, ...]] = None,
    ) -> Optional[FeeScheduleEntry]:
        """Direct schedule lookup without the fallback chain."""
        if self.source is None:
            return None
        return await self.source.lookup_fee(schedule_id, code_system, code, modifiers)

    async def resolve(self, request: FeeRequest) -> FeeQuote:
        return (await self.resolve_with_trace(request)).quote

    async def resolve_with_trace(self, request: FeeRequest) -> FeeResolution:
        """
        Price a request through the fallback chain.

        Raises:
            FeeNotFound: If every tier, including the default, came back empty
        """
        attempts: list[TierAttempt] = []

        for strategy in self.strategies:
            try:
                quote = await asyncio.wait_for(strategy.resolve(request), timeout=self.tier_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Fee tier {strategy.rate_source.value} timed out after "
                    f"{self.tier_timeout}s for {request.code}"
                )
                attempts.append(TierAttempt(strategy.rate_source, "timeout"))
                continue
            except Exception as e:
                logger.warning(f"Fee tier {strategy.rate_source.value} failed for {request.code}: {e}")
                attempts.append(TierAttempt(strategy.rate_source, "error", str(e)))
                continue

            if quote is None:
                attempts.append(TierAttempt(strategy.rate_source, "miss"))
                continue

            attempts.append(TierAttempt(strategy.rate_source, "matched"))
            quote.tiers_tried = [a.rate_source for a in attempts]
            await self._audit_fallback(request, quote, attempts)
            return FeeResolution(quote=quote, attempts=attempts)

        raise FeeNotFound(request.code, request.modifiers, request.encounter_id)

    async def _audit_fallback(
        self,
        request: FeeRequest,
        quote: FeeQuote,
        attempts: list[TierAttempt],
    ) -> None:
        if quote.rate_source == RateSource.CONTRACTED:
            return
        logger.info(
            f"Fee for {request.code} resolved from {quote.rate_source.value} tier: {quote.price}"
        )
        if self.audit is None:
            return
        await self.audit.record(
            AuditEventType.FEE_FALLBACK_USED,
            f"{request.code} priced from {quote.rate_source.value} tier",
            encounter_id=request.encounter_id,
            code=request.code,
            modifiers=list(request.modifiers),
            rate_source=quote.rate_source.value,
            price=str(quote.price),
            attempts=[{"tier": a.rate_source.value, "outcome": a.outcome} for a in attempts],
        )
