"""
Billing Audit Events.

The pipeline emits an event for every manual-review flag, fee fallback
tier, eligibility denial, failed suggestion source and generated
claim. Persistence of the audit trail belongs to the compliance
collaborator; this module only defines the event and the emitters.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from medbill.core.enums import AuditEventType
from medbill.utils.logging import get_logger


class AuditEvent(BaseModel):
    """Structured audit event."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: AuditEventType
    encounter_id: Optional[str] = None
    claim_id: Optional[str] = None
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AuditEmitter(ABC):
    """Destination for audit events."""

    @abstractmethod
    async def emit(self, event: AuditEvent) -> None:
        pass

    async def record(
        self,
        event_type: AuditEventType,
        message: str,
        encounter_id: Optional[str] = None,
        claim_id: Optional[str] = None,
        **details: Any,
    ) -> AuditEvent:
        """Build and emit an event in one call."""
        event = AuditEvent(
            event_type=event_type,
            encounter_id=encounter_id,
            claim_id=claim_id,
            message=message,
            details=details,
        )
        await self.emit(event)
        return event


class LoggingAuditEmitter(AuditEmitter):
    """Writes events as structured loguru records."""

    def __init__(self, name: str = "medbill.audit"):
        self._logger = get_logger(name)

    async def emit(self, event: AuditEvent) -> None:
        self._logger.bind(
            audit=True,
            event_id=event.event_id,
            event_type=event.event_type.value,
            encounter_id=event.encounter_id,
            claim_id=event.claim_id,
            details=event.details,
        ).info(f"[{event.event_type.value}] {event.message}")


class InMemoryAuditEmitter(AuditEmitter):
    """Keeps events in a list; used by tests and the API's debug mode."""

    def __init__(self, max_events: int = 10000):
        self.events: list[AuditEvent] = []
        self.max_events = max_events

    async def emit(self, event: AuditEvent) -> None:
        self.events.append(event)
        if len(self.events) > self.max_events:
            self.events = self.events[-self.max_events:]

    def of_type(self, event_type: AuditEventType) -> list[AuditEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def clear(self) -> None:
        self.events.clear()
