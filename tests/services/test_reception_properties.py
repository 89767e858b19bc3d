"""
Property-based tests for the reception invariants.

For any sequence of attempted receptions against an approved request:
- an item's received total never exceeds its requested quantity;
- a refused reception leaves no record behind;
- the request is IN_PROGRESS after the first reception and CLOSED exactly
  when every item is complete.
"""

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from tests.conftest import APPROVER_A, COORDINATOR, PROVIDER_ID, REQUESTER, item
from procurement_kernel.domain.approval_policy import StaticApprovalPolicy
from procurement_kernel.domain.clock import DeterministicClock
from procurement_kernel.domain.dtos import PlannedStep
from procurement_kernel.domain.lifecycle import RequestStatus
from procurement_kernel.db.engine import build_engine, create_tables
from procurement_kernel.exceptions import InvalidStateError, OverReceiptError
from procurement_kernel.models.reception import ReceptionRecord
from procurement_kernel.services.approval_engine import ApprovalCascadeEngine
from procurement_kernel.services.auditor_service import AuditorService
from procurement_kernel.services.fulfillment_tracker import FulfillmentTracker
from procurement_kernel.services.request_store import RequestStore

REQUESTED = (10, 5)

attempts = st.lists(
    st.tuples(st.integers(min_value=0, max_value=1), st.integers(min_value=1, max_value=12)),
    min_size=1,
    max_size=20,
)


def _record_count(session) -> int:
    return session.execute(select(func.count()).select_from(ReceptionRecord)).scalar_one()


class TestReceptionInvariants:
    @given(sequence=attempts)
    @settings(max_examples=50, deadline=None, suppress_health_check=[HealthCheck.too_slow, HealthCheck.function_scoped_fixture])
    def test_received_never_exceeds_requested(self, sequence):
        engine = build_engine("sqlite://")
        create_tables(engine)
        session = sessionmaker(bind=engine, expire_on_commit=False)()
        try:
            clock = DeterministicClock()
            store = RequestStore(session, AuditorService(session, clock), clock)
            approvals = ApprovalCascadeEngine(
                session,
                store,
                StaticApprovalPolicy([PlannedStep(APPROVER_A.user_id, 1), PlannedStep(COORDINATOR.user_id, 2)]),
                clock,
            )
            tracker = FulfillmentTracker(session, store, clock)

            request, _ = store.create_request(
                REQUESTER,
                PROVIDER_ID,
                [item("Item A", REQUESTED[0]), item("Item B", REQUESTED[1])],
            )
            approvals.submit(request, REQUESTER)
            approvals.decide(request.public_code, APPROVER_A, "approve")
            approvals.decide(request.public_code, COORDINATOR, "approve")
            item_ids = [i.id for i in request.items]

            received = [0, 0]
            for index, quantity in sequence:
                records_before = _record_count(session)
                outstanding = REQUESTED[index] - received[index]
                try:
                    tracker.receive(item_ids[index], REQUESTER.user_id, quantity)
                except OverReceiptError:
                    assert quantity > outstanding
                    assert _record_count(session) == records_before
                except InvalidStateError:
                    assert sum(received) == sum(REQUESTED)
                    assert _record_count(session) == records_before
                else:
                    assert quantity <= outstanding
                    received[index] += quantity

                for position, item_id in enumerate(item_ids):
                    total = session.execute(
                        select(func.coalesce(func.sum(ReceptionRecord.quantity_received), 0))
                        .where(ReceptionRecord.item_id == item_id)
                    ).scalar_one()
                    assert total == received[position] <= REQUESTED[position]

                status = RequestStatus(request.status)
                if sum(received) == sum(REQUESTED):
                    assert status is RequestStatus.CLOSED
                elif sum(received) > 0:
                    assert status is RequestStatus.IN_PROGRESS
                else:
                    assert status is RequestStatus.APPROVED
        finally:
            session.close()
            engine.dispose()
