"""
X12 Control Number Sequencer.

Issues ISA, GS and ST control numbers. Each counter is independent,
strictly increasing and never hands out the same value twice:

- InMemoryControlNumberSequencer serializes increments with one
  asyncio.Lock per counter (single process only).
- SqlControlNumberSequencer increments with a single
  UPDATE ... RETURNING inside a committed transaction, so concurrent
  processes are serialized by the row lock and a crash after return
  can never re-issue a value.

When a counter passes its digit-width ceiling the configured
OverflowPolicy applies: ERROR raises ControlNumberExhausted without
advancing the counter, WRAP restarts it at 1.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from medbill.core.config import get_billing_settings
from medbill.core.enums import ControlNumberName, OverflowPolicy
from medbill.core.errors import ControlNumberExhausted
from medbill.models.control_number import ControlNumberCounter
from medbill.services.billing.records import ControlNumbers

logger = logging.getLogger(__name__)


WIDTHS: dict[ControlNumberName, int] = {
    ControlNumberName.ISA: 9,
    ControlNumberName.GS: 9,
    ControlNumberName.ST: 4,
}

CEILINGS: dict[ControlNumberName, int] = {
    name: 10**width - 1 for name, width in WIDTHS.items()
}


def format_control_number(name: ControlNumberName | str, value: int) -> str:
    """Zero-pad a control number to its envelope width."""
    name = ControlNumberName(name)
    if value < 1 or value > CEILINGS[name]:
        raise ValueError(f"{name.value} control number {value} out of range")
    return str(value).zfill(WIDTHS[name])


class ControlNumberSequencer(ABC):
    """Issues envelope control numbers."""

    def __init__(self, policies: Optional[dict[ControlNumberName, OverflowPolicy]] = None):
        if policies is None:
            settings = get_billing_settings()
            policies = {name: settings.overflow_policy(name) for name in ControlNumberName}
        self.policies = policies

    @abstractmethod
    async def next(self, name: ControlNumberName | str) -> int:
        """Atomically increment a counter and return the new value."""
        pass

    async def next_envelope(self) -> ControlNumbers:
        """Draw one ISA, GS and ST number for a single-claim interchange."""
        isa = await self.next(ControlNumberName.ISA)
        gs = await self.next(ControlNumberName.GS)
        st = await self.next(ControlNumberName.ST)
        return ControlNumbers(isa=isa, gs=gs, st=st)

    def _apply_ceiling(self, name: ControlNumberName, candidate: int) -> Optional[int]:
        """
        Check a freshly incremented value against the ceiling.

        Returns None when the value is in range, 1 when the counter
        must wrap. Raises under the error policy.
        """
        ceiling = CEILINGS[name]
        if candidate <= ceiling:
            return None
        policy = self.policies.get(name, OverflowPolicy.ERROR)
        if policy == OverflowPolicy.WRAP:
            logger.warning(f"Control number '{name.value}' wrapped after {ceiling}")
            return 1
        logger.error(f"Control number '{name.value}' exhausted at {ceiling}")
        raise ControlNumberExhausted(name.value, ceiling)


class InMemoryControlNumberSequencer(ControlNumberSequencer):
    """
    Mutex-guarded in-process counters.

    Only safe when a single process issues control numbers.
    """

    def __init__(
        self,
        start: Optional[dict[ControlNumberName, int]] = None,
        policies: Optional[dict[ControlNumberName, OverflowPolicy]] = None,
    ):
        super().__init__(policies)
        self._values: dict[ControlNumberName, int] = {name: 0 for name in ControlNumberName}
        if start:
            self._values.update(start)
        self._locks: dict[ControlNumberName, asyncio.Lock] = {
            name: asyncio.Lock() for name in ControlNumberName
        }

    async def next(self, name: ControlNumberName | str) -> int:
        name = ControlNumberName(name)
        async with self._locks[name]:
            candidate = self._values[name] + 1
            wrapped = self._apply_ceiling(name, candidate)
            value = wrapped if wrapped is not None else candidate
            self._values[name] = value
            return value

    def current(self, name: ControlNumberName | str) -> int:
        """Last issued value (0 if none)."""
        return self._values[ControlNumberName(name)]


class SqlControlNumberSequencer(ControlNumberSequencer):
    """Counters persisted in control_number_counters."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        policies: Optional[dict[ControlNumberName, OverflowPolicy]] = None,
    ):
        super().__init__(policies)
        self._session_maker = session_maker
        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def _ensure_counters(self) -> None:
        """Create missing counter rows once per sequencer instance."""
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            for name in ControlNumberName:
                async with self._session_maker() as session:
                    existing = await session.get(ControlNumberCounter, name.value)
                    if existing is not None:
                        continue
                    session.add(ControlNumberCounter(name=name.value, value=0, wrap_count=0))
                    try:
                        await session.commit()
                        logger.info(f"Created control number counter '{name.value}'")
                    except IntegrityError:
                        # another process created it first
                        await session.rollback()
            self._initialized = True

    async def next(self, name: ControlNumberName | str) -> int:
        name = ControlNumberName(name)
        await self._ensure_counters()

        async with self._session_maker() as session:
            async with session.begin():
                result = await session.execute(
                    update(ControlNumberCounter)
                    .where(ControlNumberCounter.name == name.value)
                    .values(value=ControlNumberCounter.value + 1)
                    .returning(ControlNumberCounter.value)
                    .execution_options(synchronize_session=False)
                )
                candidate = result.scalar_one()

                # Raising here rolls the increment back
                wrapped = self._apply_ceiling(name, candidate)
                if wrapped is None:
                    return candidate

                await session.execute(
                    update(ControlNumberCounter)
                    .where(ControlNumberCounter.name == name.value)
                    .values(value=wrapped, wrap_count=ControlNumberCounter.wrap_count + 1)
                    .execution_options(synchronize_session=False)
                )
                return wrapped

    async def current(self, name: ControlNumberName | str) -> int:
        """Last issued value (0 if none)."""
        name = ControlNumberName(name)
        await self._ensure_counters()
        async with self._session_maker() as session:
            result = await session.execute(
                select(ControlNumberCounter.value).where(ControlNumberCounter.name == name.value)
            )
            return result.scalar_one()
