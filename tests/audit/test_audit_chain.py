"""
Audit chain tests.

Verifies:
- Every lifecycle step of a request leaves an audit event
- The hash chain validates end to end and links each event to its predecessor
- Tampering with a stored payload is detected
- Audit events cannot be modified or deleted through the ORM
"""

import pytest
from sqlalchemy import select, update

from tests.conftest import APPROVER_A, COORDINATOR, REQUESTER
from procurement_kernel.exceptions import AuditChainBrokenError, ImmutabilityViolationError
from procurement_kernel.models.audit_event import AuditAction, AuditEvent


def _all_events(session) -> list[AuditEvent]:
    return list(session.execute(select(AuditEvent).order_by(AuditEvent.seq)).scalars().all())


class TestAuditTrace:
    def test_full_lifecycle_trace(self, fulfillment_tracker, approved_request, auditor_service):
        lines = [(i.id, i.requested_quantity) for i in approved_request.items]
        for item_id, quantity in lines:
            fulfillment_tracker.receive(item_id, REQUESTER.user_id, quantity)

        trace = auditor_service.get_trace("PurchaseRequest", approved_request.public_code)
        assert trace.actions == (
            AuditAction.REQUEST_CREATED,
            AuditAction.REQUEST_SUBMITTED,
            AuditAction.REQUEST_APPROVED,
            AuditAction.RECEPTION_RECORDED,
            AuditAction.REQUEST_IN_PROGRESS,
            AuditAction.RECEPTION_RECORDED,
            AuditAction.REQUEST_CLOSED,
        )
        approved = trace.entries[2]
        assert approved.actor_id == COORDINATOR.user_id
        assert approved.payload["from_status"] == "PENDING_APPROVAL"
        assert approved.payload["to_status"] == "APPROVED"

    def test_step_trace_records_decider(self, approval_engine, submitted_request, auditor_service):
        approval_engine.decide(submitted_request.public_code, APPROVER_A, "approve", "fine")
        step = next(s for s in submitted_request.approval_steps if s.approver_id == APPROVER_A.user_id)

        trace = auditor_service.get_trace("ApprovalStep", step.id)
        assert trace.last_action is AuditAction.STEP_APPROVED
        assert trace.entries[0].actor_id == APPROVER_A.user_id
        assert trace.entries[0].payload["level"] == 1

    def test_unknown_entity_has_empty_trace(self, auditor_service):
        assert auditor_service.get_trace("PurchaseRequest", "XX-000001").is_empty


class TestChainValidation:
    def test_empty_chain_is_valid(self, auditor_service):
        assert auditor_service.validate_chain()

    def test_chain_links_every_event(self, session, approved_request, auditor_service):
        events = _all_events(session)

        assert events[0].is_genesis
        for previous, current in zip(events, events[1:]):
            assert current.prev_hash == previous.hash
            assert current.seq > previous.seq
        assert auditor_service.validate_chain()

    def test_tampered_payload_detected(self, session, approved_request, auditor_service):
        target = _all_events(session)[1]
        session.execute(
            update(AuditEvent)
            .where(AuditEvent.id == target.id)
            .values(payload={"forged": True})
        )
        session.expire_all()

        with pytest.raises(AuditChainBrokenError) as exc_info:
            auditor_service.validate_chain()
        assert exc_info.value.audit_event_id == str(target.seq)

    def test_broken_link_detected(self, session, approved_request, auditor_service):
        target = _all_events(session)[2]
        session.execute(
            update(AuditEvent).where(AuditEvent.id == target.id).values(prev_hash="0" * 64)
        )
        session.expire_all()

        with pytest.raises(AuditChainBrokenError):
            auditor_service.validate_chain()


class TestAuditImmutability:
    def test_update_refused(self, session, submitted_request):
        event = _all_events(session)[0]
        event.actor_id = 999
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_delete_refused(self, session, submitted_request):
        event = _all_events(session)[0]
        session.delete(event)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
