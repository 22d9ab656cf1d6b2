"""
Code Table Collaborator.

Read-only access to CPT/HCPCS/ICD-10 reference rows: validity, status,
descriptions, effective dates and RBRVS relative value units. The
decision engine only trusts rows whose status is active on the date of
service.

Two backends share the same interface:
- InMemoryCodeTable for tests and embedded use
- SqlCodeTable over the reference_codes table
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from medbill.core.enums import CodeStatus, CodeSystem
from medbill.models.reference_code import ReferenceCode

logger = logging.getLogger(__name__)

_TOKEN_PATTERN = re.compile(r"[a-z0-9]+")
_STOP_WORDS = frozenset(
    {"and", "the", "for", "with", "of", "or", "to", "in", "on", "by", "per", "each", "a", "an"}
)


@dataclass
class CodeEntry:
    """One code table row."""

    code_system: CodeSystem
    code: str
    long_desc: str = ""
    short_desc: str = ""
    status: CodeStatus = CodeStatus.ACTIVE
    effective_from: Optional[date] = None
    effective_to: Optional[date] = None
    work_rvu: Optional[Decimal] = None
    practice_rvu: Optional[Decimal] = None
    malpractice_rvu: Optional[Decimal] = None

    def is_active_on(self, on: Optional[date] = None) -> bool:
        """Active status and, when a date is given, inside the effective window."""
        if self.status != CodeStatus.ACTIVE:
            return False
        if on is None:
            return True
        if self.effective_from and self.effective_from > on:
            return False
        if self.effective_to and self.effective_to < on:
            return False
        return True

    @property
    def total_rvu(self) -> Optional[Decimal]:
        """Sum of RVU components, None when the row carries none."""
        parts = [self.work_rvu, self.practice_rvu, self.malpractice_rvu]
        if all(p is None for p in parts):
            return None
        return sum((p or Decimal("0") for p in parts), Decimal("0"))


@dataclass
class CodeMatch:
    """Full-text search hit with its overlap score (0.0 - 1.0)."""

    entry: CodeEntry
    score: float


def tokenize_description(text: str) -> set[str]:
    """Lowercase word tokens without stop words."""
    return {
        token
        for token in _TOKEN_PATTERN.findall((text or "").lower())
        if token not in _STOP_WORDS and len(token) > 1
    }


def score_description(query_tokens: set[str], description: str) -> float:
    """Share of query tokens present in the description."""
    if not query_tokens:
        return 0.0
    return len(query_tokens & tokenize_description(description)) / len(query_tokens)


def rank_matches(
    query: str,
    entries: Iterable[CodeEntry],
    on: Optional[date] = None,
    limit: int = 5,
) -> list[CodeMatch]:
    """Score active entries against a description, best first."""
    query_tokens = tokenize_description(query)
    matches = []
    for entry in entries:
        if not entry.is_active_on(on):
            continue
        score = score_description(query_tokens, entry.long_desc or entry.short_desc)
        if score > 0:
            matches.append(CodeMatch(entry=entry, score=score))
    # Ties go to the lower code so the result is stable
    matches.sort(key=lambda m: (-m.score, m.entry.code))
    return matches[:limit]


class CodeTable(ABC):
    """Reference code lookups."""

    @abstractmethod
    async def get(self, code_system: CodeSystem, code: str) -> Optional[CodeEntry]:
        """Fetch one row regardless of status."""
        pass

    @abstractmethod
    async def search(
        self,
        code_system: CodeSystem,
        description: str,
        on: Optional[date] = None,
        limit: int = 5,
    ) -> list[CodeMatch]:
        """Full-text match of a description against long descriptions."""
        pass


class InMemoryCodeTable(CodeTable):
    """Code table held in a dict."""

    def __init__(self, entries: Optional[Iterable[CodeEntry]] = None):
        self._entries: dict[tuple[CodeSystem, str], CodeEntry] = {}
        for entry in entries or []:
            self.add(entry)

    def add(self, entry: CodeEntry) -> None:
        self._entries[(entry.code_system, entry.code.upper())] = entry

    async def get(self, code_system: CodeSystem, code: str) -> Optional[CodeEntry]:
        return self._entries.get((code_system, code.strip().upper()))

    async def search(
        self,
        code_system: CodeSystem,
        description: str,
        on: Optional[date] = None,
        limit: int = 5,
    ) -> list[CodeMatch]:
        candidates = [e for (system, _), e in self._entries.items() if system == code_system]
        return rank_matches(description, candidates, on=on, limit=limit)


class SqlCodeTable(CodeTable):
    """Code table backed by reference_codes."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    @staticmethod
    def _to_entry(row: ReferenceCode) -> CodeEntry:
        return CodeEntry(
            code_system=CodeSystem(row.code_system),
            code=row.code,
            long_desc=row.long_desc or "",
            short_desc=row.short_desc or "",
            status=CodeStatus(row.status),
            effective_from=row.effective_from,
            effective_to=row.effective_to,
            work_rvu=row.work_rvu,
            practice_rvu=row.practice_rvu,
            malpractice_rvu=row.malpractice_rvu,
        )

    async def get(self, code_system: CodeSystem, code: str) -> Optional[CodeEntry]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(ReferenceCode).where(
                    and_(
                        ReferenceCode.code_system == code_system.value,
                        ReferenceCode.code == code.strip().upper(),
                    )
                )
            )
            row = result.scalar_one_or_none()
        return self._to_entry(row) if row else None

    async def search(
        self,
        code_system: CodeSystem,
        description: str,
        on: Optional[date] = None,
        limit: int = 5,
    ) -> list[CodeMatch]:
        tokens = tokenize_description(description)
        if not tokens:
            return []

        async with self._session_maker() as session:
            result = await session.execute(
                select(ReferenceCode).where(
                    and_(
                        ReferenceCode.code_system == code_system.value,
                        ReferenceCode.status == CodeStatus.ACTIVE.value,
                        or_(*[ReferenceCode.long_desc.ilike(f"%{t}%") for t in tokens]),
                    )
                )
            )
            rows = result.scalars().all()

        logger.debug(f"Code search '{description}' returned {len(rows)} candidate rows")
        return rank_matches(description, [self._to_entry(r) for r in rows], on=on, limit=limit)
