"""
Claim Store.

Persists generated claims with their 837P text and applies status
transitions through the ClaimStatusMachine. Claim content never changes
after save; only the status moves, and every move is written to the
status history.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from medbill.core.enums import ClaimStatus
from medbill.models.claim import Claim as ClaimRow
from medbill.models.claim import ClaimLine as ClaimLineRow
from medbill.models.claim import ClaimStatusHistory
from medbill.services.billing.claim_status import ClaimStatusMachine, StatusChange, TransitionEvent
from medbill.services.billing.records import Claim
from medbill.services.edi.x12_837_generator import X12Interchange

logger = logging.getLogger(__name__)


class ClaimNotFoundError(LookupError):
    """No stored claim with the given id."""

    pass


class DuplicateClaimError(ValueError):
    """A claim with the same id has already been stored."""

    pass


class ClaimStore(ABC):
    """Claim persistence collaborator."""

    def __init__(self, machine: Optional[ClaimStatusMachine] = None):
        self.machine = machine or ClaimStatusMachine()

    @abstractmethod
    async def save(self, claim: Claim, interchange: X12Interchange) -> None:
        pass

    @abstractmethod
    async def get_status(self, claim_id: str) -> Optional[ClaimStatus]:
        pass

    @abstractmethod
    async def get_x12(self, claim_id: str) -> Optional[str]:
        pass

    @abstractmethod
    async def history(self, claim_id: str) -> list[StatusChange]:
        pass

    @abstractmethod
    async def _write_status(self, change: StatusChange) -> None:
        pass

    async def transition(
        self,
        claim_id: str,
        event: TransitionEvent,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> StatusChange:
        """
        Move a stored claim through the status machine.

        Raises:
            ClaimNotFoundError: If the claim was never stored
            InvalidTransitionError: If the event is not allowed from the current status
        """
        current = await self.get_status(claim_id)
        if current is None:
            raise ClaimNotFoundError(f"Claim not found: {claim_id}")
        change = self.machine.apply(claim_id, current, event, actor=actor, reason=reason)
        await self._write_status(change)
        return change


# =============================================================================
# In-Memory Store
# =============================================================================


@dataclass
class _StoredClaim:
    claim: Claim
    interchange: X12Interchange
    status: ClaimStatus
    history: list[StatusChange] = field(default_factory=list)


class InMemoryClaimStore(ClaimStore):
    """Dict-backed store for tests and single-process use."""

    def __init__(self, machine: Optional[ClaimStatusMachine] = None):
        super().__init__(machine)
        self._claims: dict[str, _StoredClaim] = {}

    async def save(self, claim: Claim, interchange: X12Interchange) -> None:
        if claim.claim_id in self._claims:
            raise DuplicateClaimError(f"Claim already stored: {claim.claim_id}")
        self._claims[claim.claim_id] = _StoredClaim(claim, interchange, claim.status)

    def get(self, claim_id: str) -> Optional[Claim]:
        stored = self._claims.get(claim_id)
        return stored.claim if stored else None

    async def get_status(self, claim_id: str) -> Optional[ClaimStatus]:
        stored = self._claims.get(claim_id)
        return stored.status if stored else None

    async def get_x12(self, claim_id: str) -> Optional[str]:
        stored = self._claims.get(claim_id)
        return stored.interchange.content if stored else None

    async def history(self, claim_id: str) -> list[StatusChange]:
        stored = self._claims.get(claim_id)
        return list(stored.history) if stored else []

    async def _write_status(self, change: StatusChange) -> None:
        stored = self._claims[change.claim_id]
        stored.status = change.new_status
        stored.claim.status = change.new_status
        stored.history.append(change)

    def __len__(self) -> int:
        return len(self._claims)


# =============================================================================
# SQL Store
# =============================================================================


class SqlClaimStore(ClaimStore):
    """Claims in claims / claim_lines / claim_status_history."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        machine: Optional[ClaimStatusMachine] = None,
    ):
        super().__init__(machine)
        self._session_maker = session_maker

    async def save(self, claim: Claim, interchange: X12Interchange) -> None:
        numbers = interchange.control_numbers
        row = ClaimRow(
            claim_id=claim.claim_id,
            encounter_id=claim.encounter_id,
            payer_id=claim.payer.payer_id if claim.payer else "",
            provider_id=claim.provider.provider_id if claim.provider else "",
            service_date=claim.service_date,
            status=claim.status,
            diagnoses=list(claim.diagnoses),
            total_charge=claim.total_charge,
            isa_control_number=numbers.isa_text,
            gs_control_number=numbers.gs_text,
            st_control_number=numbers.st_text,
            segment_count=interchange.segment_count,
            claim_count=interchange.claim_count,
            x12_content=interchange.content,
            requires_manual_review=claim.requires_manual_review,
            review_flags=[f.to_dict() for f in claim.review_flags] or None,
        )
        row.lines = [
            ClaimLineRow(
                position=line.line_number,
                procedure_code=line.procedure_code,
                modifiers=list(line.modifiers),
                charge_amount=line.charge_amount,
                units=line.units,
                diagnosis_pointers=list(line.diagnosis_pointers),
                rate_source=line.rate_source,
            )
            for line in claim.lines
        ]

        async with self._session_maker() as session:
            existing = await session.execute(select(ClaimRow.id).where(ClaimRow.claim_id == claim.claim_id))
            if existing.scalar_one_or_none() is not None:
                raise DuplicateClaimError(f"Claim already stored: {claim.claim_id}")
            session.add(row)
            await session.commit()

        logger.info(f"Stored claim {claim.claim_id} (ISA {numbers.isa_text}, {len(claim.lines)} lines)")

    async def _load(self, session: AsyncSession, claim_id: str, with_history: bool = False) -> Optional[ClaimRow]:
        query = select(ClaimRow).where(ClaimRow.claim_id == claim_id)
        if with_history:
            query = query.options(selectinload(ClaimRow.status_history))
        result = await session.execute(query)
        return result.scalar_one_or_none()

    async def get_status(self, claim_id: str) -> Optional[ClaimStatus]:
        async with self._session_maker() as session:
            row = await self._load(session, claim_id)
            return row.status if row else None

    async def get_x12(self, claim_id: str) -> Optional[str]:
        async with self._session_maker() as session:
            row = await self._load(session, claim_id)
            return row.x12_content if row else None

    async def history(self, claim_id: str) -> list[StatusChange]:
        async with self._session_maker() as session:
            row = await self._load(session, claim_id, with_history=True)
            if row is None:
                return []
            return [
                StatusChange(
                    claim_id=claim_id,
                    previous_status=entry.previous_status,
                    new_status=entry.new_status,
                    event=TransitionEvent(entry.event),
                    actor=entry.actor,
                    reason=entry.reason,
                    changed_at=entry.changed_at,
                )
                for entry in row.status_history
            ]

    async def _write_status(self, change: StatusChange) -> None:
        async with self._session_maker() as session:
            row = await self._load(session, change.claim_id)
            if row is None:
                raise ClaimNotFoundError(f"Claim not found: {change.claim_id}")
            row.status = change.new_status
            session.add(
                ClaimStatusHistory(
                    claim_pk=row.id,
                    previous_status=change.previous_status,
                    new_status=change.new_status,
                    event=change.event.value,
                    actor=change.actor or "system",
                    reason=change.reason,
                    changed_at=change.changed_at,
                )
            )
            await session.commit()
