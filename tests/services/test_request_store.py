"""Tests for RequestStore: creation, codes, duplicates, item edits and listings."""

from datetime import date
from decimal import Decimal

import pytest

from tests.conftest import (
    ADMIN,
    APPROVER_A,
    COORDINATOR,
    OUTSIDER,
    PROVIDER_ID,
    REQUESTER,
    item,
)
from procurement_kernel.domain.dtos import ItemChanges, ListFilter
from procurement_kernel.domain.lifecycle import RequestStatus
from procurement_kernel.domain.settings import DuplicateCheckPolicy, KernelSettings
from procurement_kernel.exceptions import (
    DuplicateItemError,
    InvalidStateError,
    InvalidTransitionError,
    ItemNotFoundError,
    RequestNotFoundError,
    ValidationError,
)
from procurement_kernel.services.approval_engine import ApprovalCascadeEngine
from procurement_kernel.services.request_store import RequestStore


def _store_with(session, auditor_service, deterministic_clock, **settings) -> RequestStore:
    return RequestStore(
        session, auditor_service, deterministic_clock, KernelSettings(**settings),
    )


class TestCreateRequest:
    def test_creates_draft_with_initials_code(self, request_store):
        request, warnings = request_store.create_request(
            REQUESTER, PROVIDER_ID, [item(" printer toner ", 3, specification="black")],
        )

        assert request.public_code == "AT-000001"
        assert request.status == RequestStatus.DRAFT.value
        assert request.requester_id == REQUESTER.user_id
        assert request.dependency_id == REQUESTER.dependency_id
        assert warnings == ()
        assert request.items[0].description == "PRINTER TONER"
        assert request.items[0].specification == "BLACK"

    def test_codes_are_sequential_per_prefix(self, request_store):
        first, _ = request_store.create_request(REQUESTER, PROVIDER_ID, [item("A")])
        second, _ = request_store.create_request(REQUESTER, PROVIDER_ID, [item("B")])
        other, _ = request_store.create_request(ADMIN, PROVIDER_ID, [item("C")])

        assert first.public_code == "AT-000001"
        assert second.public_code == "AT-000002"
        assert other.public_code == "AG-000001"

    def test_code_width_from_settings(self, session, auditor_service, deterministic_clock):
        store = _store_with(session, auditor_service, deterministic_clock, code_number_width=4)
        request, _ = store.create_request(REQUESTER, PROVIDER_ID, [item()])
        assert request.public_code == "AT-0001"

    def test_total_value_and_urgency(self, request_store):
        request, _ = request_store.create_request(
            REQUESTER,
            PROVIDER_ID,
            [
                item("Paper", 4, unit_price=Decimal("2.50")),
                item("Pens", 2, unit_price="1.25", priority="urgent"),
                item("Stapler", 1),
            ],
        )
        assert request.total_value == Decimal("12.50")
        assert request.is_urgent

    def test_no_items_rejected(self, request_store):
        with pytest.raises(ValidationError):
            request_store.create_request(REQUESTER, PROVIDER_ID, [])

    @pytest.mark.parametrize("quantity", [0, -1, 1.5, True])
    def test_bad_quantity_rejected(self, request_store, quantity):
        with pytest.raises(ValidationError) as exc_info:
            request_store.create_request(REQUESTER, PROVIDER_ID, [item(quantity=quantity)])
        assert exc_info.value.field == "quantity"

    def test_negative_price_rejected(self, request_store):
        with pytest.raises(ValidationError):
            request_store.create_request(
                REQUESTER, PROVIDER_ID, [item(unit_price=Decimal("-1"))],
            )

    def test_blank_description_rejected(self, request_store):
        with pytest.raises(ValidationError):
            request_store.create_request(REQUESTER, PROVIDER_ID, [item("   ")])

    def test_creation_is_audited(self, request_store, auditor_service):
        request, _ = request_store.create_request(REQUESTER, PROVIDER_ID, [item()])
        trace = auditor_service.get_trace("PurchaseRequest", request.public_code)
        assert [a.value for a in trace.actions] == ["request_created"]
        assert trace.entries[0].actor_id == REQUESTER.user_id


class TestDuplicateCheck:
    @pytest.fixture
    def guarded_store(self, session, auditor_service, deterministic_clock):
        return _store_with(
            session,
            auditor_service,
            deterministic_clock,
            duplicate_check=DuplicateCheckPolicy(enabled=True, window_days=7),
        )

    def test_same_item_within_window_blocked(self, guarded_store, deterministic_clock):
        first, _ = guarded_store.create_request(REQUESTER, PROVIDER_ID, [item()])
        deterministic_clock.advance_days(3)

        with pytest.raises(DuplicateItemError) as exc_info:
            guarded_store.create_request(REQUESTER, PROVIDER_ID, [item("printer TONER")])

        assert exc_info.value.existing_code == first.public_code
        assert exc_info.value.window_days == 7

    def test_outside_window_allowed(self, guarded_store, deterministic_clock):
        guarded_store.create_request(REQUESTER, PROVIDER_ID, [item()])
        deterministic_clock.advance_days(8)
        _, warnings = guarded_store.create_request(REQUESTER, PROVIDER_ID, [item()])
        assert warnings == ()

    def test_different_specification_allowed(self, guarded_store):
        guarded_store.create_request(REQUESTER, PROVIDER_ID, [item(specification="black")])
        _, warnings = guarded_store.create_request(
            REQUESTER, PROVIDER_ID, [item(specification="cyan")],
        )
        assert warnings == ()

    def test_other_requester_allowed(self, guarded_store):
        guarded_store.create_request(REQUESTER, PROVIDER_ID, [item()])
        _, warnings = guarded_store.create_request(OUTSIDER, PROVIDER_ID, [item()])
        assert warnings == ()

    def test_rejected_request_does_not_count(
        self, session, guarded_store, approval_policy, deterministic_clock,
    ):
        engine = ApprovalCascadeEngine(session, guarded_store, approval_policy, deterministic_clock)
        first, _ = guarded_store.create_request(REQUESTER, PROVIDER_ID, [item()])
        engine.submit(first, REQUESTER)
        engine.decide(first.public_code, APPROVER_A, "reject", "wrong provider")

        second, warnings = guarded_store.create_request(REQUESTER, PROVIDER_ID, [item()])
        assert second.public_code == "AT-000002"
        assert warnings == ()

    def test_grace_period_only_warns(self, session, auditor_service, deterministic_clock):
        store = _store_with(
            session,
            auditor_service,
            deterministic_clock,
            duplicate_check=DuplicateCheckPolicy(
                enabled=True, window_days=7, grace_period_end=date(2024, 1, 31),
            ),
        )
        first, _ = store.create_request(REQUESTER, PROVIDER_ID, [item()])
        second, warnings = store.create_request(REQUESTER, PROVIDER_ID, [item()])

        assert second.status == RequestStatus.DRAFT.value
        assert len(warnings) == 1
        assert first.public_code in warnings[0]

    def test_disabled_by_default(self, request_store):
        request_store.create_request(REQUESTER, PROVIDER_ID, [item()])
        _, warnings = request_store.create_request(REQUESTER, PROVIDER_ID, [item()])
        assert warnings == ()


class TestLoading:
    def test_get_by_code_normalizes(self, request_store):
        request, _ = request_store.create_request(REQUESTER, PROVIDER_ID, [item()])
        assert request_store.get_by_code(" at-000001 ") is request

    def test_unknown_code(self, request_store):
        with pytest.raises(RequestNotFoundError):
            request_store.get_by_code("AT-999999")

    def test_unknown_item(self, request_store):
        with pytest.raises(ItemNotFoundError):
            request_store.get_item_for_update(424242)

    def test_legacy_code_repaired_when_enabled(self, session, auditor_service, deterministic_clock):
        store = _store_with(session, auditor_service, deterministic_clock, legacy_code_repair=True)
        request, _ = store.create_request(REQUESTER, PROVIDER_ID, [item()])
        assert store.get_by_code("AT-0000010") is request

    def test_legacy_code_not_repaired_by_default(self, request_store):
        request_store.create_request(REQUESTER, PROVIDER_ID, [item()])
        with pytest.raises(RequestNotFoundError):
            request_store.get_by_code("AT-0000010")


class TestTransition:
    def test_forbidden_transition(self, request_store):
        request, _ = request_store.create_request(REQUESTER, PROVIDER_ID, [item()])
        with pytest.raises(InvalidTransitionError):
            request_store.transition(request, RequestStatus.CLOSED, ADMIN.user_id)
        assert request.status == RequestStatus.DRAFT.value


class TestItemEditing:
    def test_edit_recomputes_total(self, request_store):
        request, _ = request_store.create_request(REQUESTER, PROVIDER_ID, [item(quantity=10)])
        target = request_store.get_item_for_update(request.items[0].id)

        request_store.edit_item(
            target,
            ItemChanges(quantity=4, unit_price=Decimal("2.5"), priority="urgent"),
            REQUESTER.user_id,
        )

        assert target.requested_quantity == 4
        assert request.total_value == Decimal("10.0")
        assert request.is_urgent

    def test_empty_changes_rejected(self, request_store):
        request, _ = request_store.create_request(REQUESTER, PROVIDER_ID, [item()])
        target = request_store.get_item_for_update(request.items[0].id)
        with pytest.raises(ValidationError):
            request_store.edit_item(target, ItemChanges(), REQUESTER.user_id)

    def test_edit_while_pending_allowed(self, request_store, submitted_request):
        target = request_store.get_item_for_update(submitted_request.items[0].id)
        request_store.edit_item(target, ItemChanges(quantity=7), APPROVER_A.user_id)
        assert target.requested_quantity == 7

    def test_edit_after_approval_refused(self, request_store, approved_request):
        target = request_store.get_item_for_update(approved_request.items[0].id)
        with pytest.raises(InvalidStateError):
            request_store.edit_item(target, ItemChanges(quantity=1), ADMIN.user_id)

    def test_remove_item(self, request_store, auditor_service):
        request, _ = request_store.create_request(
            REQUESTER, PROVIDER_ID, [item("Item A"), item("Item B")],
        )
        target = request_store.get_item_for_update(request.items[1].id)

        request_store.remove_item(target, REQUESTER.user_id)

        assert [i.description for i in request.items] == ["ITEM A"]
        trace = auditor_service.get_trace("PurchaseRequest", request.public_code)
        assert trace.last_action.value == "item_removed"

    def test_last_item_cannot_be_removed(self, request_store):
        request, _ = request_store.create_request(REQUESTER, PROVIDER_ID, [item()])
        target = request_store.get_item_for_update(request.items[0].id)
        with pytest.raises(ValidationError):
            request_store.remove_item(target, REQUESTER.user_id)


class TestListing:
    @pytest.fixture
    def population(self, request_store, approval_engine):
        own, _ = request_store.create_request(REQUESTER, PROVIDER_ID, [item("Own")])
        approval_engine.submit(own, REQUESTER)
        draft, _ = request_store.create_request(REQUESTER, PROVIDER_ID, [item("Draft")])
        foreign, _ = request_store.create_request(OUTSIDER, PROVIDER_ID, [item("Foreign")])
        return own, draft, foreign

    @staticmethod
    def _codes(summaries) -> set[str]:
        return {s.public_code for s in summaries}

    def test_requester_sees_own(self, request_store, population):
        own, draft, _ = population
        assert self._codes(request_store.list_requests(REQUESTER)) == {own.public_code, draft.public_code}

    def test_outsider_sees_only_own(self, request_store, population):
        _, _, foreign = population
        assert self._codes(request_store.list_requests(OUTSIDER)) == {foreign.public_code}

    def test_approver_sees_authorized_dependency(self, request_store, population):
        own, draft, _ = population
        assert self._codes(request_store.list_requests(APPROVER_A)) == {own.public_code, draft.public_code}

    def test_approver_sees_requests_holding_a_step(self, request_store, population):
        own, _, foreign = population
        # Scope {20} covers the outsider's dependency; the step covers the other.
        assert self._codes(request_store.list_requests(COORDINATOR)) == {own.public_code, foreign.public_code}

    def test_administrator_sees_everything(self, request_store, population):
        assert len(request_store.list_requests(ADMIN)) == 3

    def test_status_filter_and_limit(self, request_store, population):
        own, _, _ = population
        pending = request_store.list_requests(
            ADMIN, ListFilter(status=RequestStatus.PENDING_APPROVAL),
        )
        assert self._codes(pending) == {own.public_code}
        assert len(request_store.list_requests(ADMIN, ListFilter(limit=2))) == 2


class TestPendingInbox:
    def test_only_current_level_appears(self, request_store, approval_engine, submitted_request):
        code = submitted_request.public_code
        assert [s.public_code for s in request_store.pending_for_approver(APPROVER_A.user_id)] == [code]
        assert request_store.pending_for_approver(COORDINATOR.user_id) == []

        approval_engine.decide(code, APPROVER_A, "approve")

        assert [s.public_code for s in request_store.pending_for_approver(COORDINATOR.user_id)] == [code]
        assert request_store.pending_for_approver(APPROVER_A.user_id) == []
