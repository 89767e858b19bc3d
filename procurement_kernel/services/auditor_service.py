"""
AuditorService -- append-only, hash-chained record of every state change.

Every request status change, approval step resolution, item edit and
reception is recorded here by the store and the two engines, inside the
same unit of work as the change itself: the event commits or rolls back
with it.

Each event stores ``payload_hash = H(payload)`` and
``hash = H(entity_type | entity_id | action | payload_hash | prev_hash)``,
where ``prev_hash`` is the hash of the event with the previous ``seq``.
``seq`` comes from the locked ``audit_event`` counter, which also
serializes concurrent writers reading the chain tail.

The engines never read audit data back; ``validate_chain`` and
``get_trace`` serve tamper checks and forensic review.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from procurement_kernel.domain.clock import Clock, SystemClock
from procurement_kernel.exceptions import AuditChainBrokenError
from procurement_kernel.logging_config import get_logger
from procurement_kernel.models.audit_event import AuditAction, AuditEvent
from procurement_kernel.services.base import BaseService
from procurement_kernel.services.sequence_service import SequenceService
from procurement_kernel.utils.hashing import hash_audit_event, hash_payload, to_json_safe

logger = get_logger("services.auditor")


@dataclass(frozen=True)
class AuditTraceEntry:
    seq: int
    action: AuditAction
    occurred_at: datetime
    actor_id: int
    payload: dict[str, Any]
    hash: str


@dataclass(frozen=True)
class AuditTrace:
    """Audit history of one entity, oldest event first."""

    entity_type: str
    entity_id: str
    entries: tuple[AuditTraceEntry, ...]

    @property
    def is_empty(self) -> bool:
        return not self.entries

    @property
    def actions(self) -> tuple[AuditAction, ...]:
        return tuple(entry.action for entry in self.entries)

    @property
    def last_action(self) -> AuditAction | None:
        return self.actions[-1] if self.entries else None


class AuditorService(BaseService):
    """Writes and verifies the audit chain. Flushes, never commits."""

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._sequence_service = SequenceService(session)

    def _get_last_hash(self) -> str | None:
        return self.session.scalar(
            select(AuditEvent.hash).order_by(AuditEvent.seq.desc()).limit(1)
        )

    def record(
        self,
        entity_type: str,
        entity_id: str | int,
        action: AuditAction,
        actor_id: int,
        payload: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """
        Append an audit event with hash chain linkage.

        The seq counter row is locked first, so the read of the previous
        hash is serialized with every other writer of the chain.
        """
        seq = self._sequence_service.next_value(SequenceService.AUDIT_EVENT)
        prev_hash = self._get_last_hash()
        entity_key = str(entity_id)
        body = to_json_safe(payload or {})
        body_hash = hash_payload(body)

        event = AuditEvent(
            seq=seq,
            entity_type=entity_type,
            entity_id=entity_key,
            action=action.value,
            actor_id=actor_id,
            occurred_at=self._clock.now(),
            payload=body,
            payload_hash=body_hash,
            prev_hash=prev_hash,
            hash=hash_audit_event(entity_type, entity_key, action.value, body_hash, prev_hash),
        )
        self.session.add(event)
        self.session.flush()

        logger.debug(
            "audit_event_created",
            extra={"entity_type": entity_type, "entity_id": entity_key, "action": action.value, "seq": seq},
        )
        return event

    # Chain validation

    def validate_chain(self) -> bool:
        """
        Walk the chain oldest first, checking each link and recomputed hash.

        Raises:
            AuditChainBrokenError: At the first event whose ``prev_hash``
                does not name its predecessor or whose stored hash does
                not match its contents.
        """
        events = self.session.scalars(select(AuditEvent).order_by(AuditEvent.seq)).all()

        predecessor_hash: str | None = None
        for event in events:
            if event.prev_hash != predecessor_hash:
                self._chain_broken(event, predecessor_hash or "None", event.prev_hash or "None")
            recomputed = hash_audit_event(
                entity_type=event.entity_type,
                entity_id=event.entity_id,
                action=event.action,
                payload_hash=hash_payload(event.payload or {}),
                prev_hash=event.prev_hash,
            )
            if recomputed != event.hash:
                self._chain_broken(event, recomputed, event.hash)
            predecessor_hash = event.hash

        logger.info("audit_chain_valid", extra={"event_count": len(events)})
        return True

    @staticmethod
    def _chain_broken(event: AuditEvent, expected: str, actual: str) -> None:
        logger.critical(
            "audit_chain_broken",
            extra={"seq": event.seq, "entity_type": event.entity_type, "entity_id": event.entity_id},
        )
        raise AuditChainBrokenError(str(event.seq), expected, actual)

    # Trace and query methods

    def get_trace(self, entity_type: str, entity_id: str | int) -> AuditTrace:
        """All audit events for one entity, oldest first."""
        entity_key = str(entity_id)
        events = self.session.scalars(
            select(AuditEvent)
            .where(AuditEvent.entity_type == entity_type, AuditEvent.entity_id == entity_key)
            .order_by(AuditEvent.seq)
        )
        entries = tuple(
            AuditTraceEntry(
                seq=event.seq,
                action=AuditAction(event.action),
                occurred_at=event.occurred_at,
                actor_id=event.actor_id,
                payload=event.payload or {},
                hash=event.hash,
            )
            for event in events
        )
        return AuditTrace(entity_type=entity_type, entity_id=entity_key, entries=entries)

    def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        """Most recent audit events first."""
        return list(
            self.session.scalars(select(AuditEvent).order_by(AuditEvent.seq.desc()).limit(limit))
        )
