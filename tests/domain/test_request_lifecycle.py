"""Tests for the purchase request state machine and step status model."""

import pytest

from procurement_kernel.domain.lifecycle import (
    ITEM_EDITABLE_STATUSES,
    RECEIVABLE_STATUSES,
    REQUEST_TRANSITIONS,
    REQUEST_WORKFLOW,
    TERMINAL_REQUEST_STATUSES,
    RequestStatus,
    TerminationReason,
    find_transition,
    validate_transition,
)
from procurement_kernel.exceptions import InvalidTransitionError


class TestRequestWorkflow:
    def test_initial_state_is_draft(self):
        assert REQUEST_WORKFLOW.initial_state is RequestStatus.DRAFT

    @pytest.mark.parametrize(
        "from_status,to_status,action",
        [
            (RequestStatus.DRAFT, RequestStatus.PENDING_APPROVAL, "submit"),
            (RequestStatus.PENDING_APPROVAL, RequestStatus.APPROVED, "approve"),
            (RequestStatus.PENDING_APPROVAL, RequestStatus.REJECTED, "reject"),
            (RequestStatus.APPROVED, RequestStatus.IN_PROGRESS, "start_fulfillment"),
            (RequestStatus.IN_PROGRESS, RequestStatus.CLOSED, "close"),
        ],
    )
    def test_valid_transitions(self, from_status, to_status, action):
        transition = validate_transition("SC-000001", from_status, to_status)
        assert transition.action == action

    @pytest.mark.parametrize(
        "from_status,to_status",
        [
            (RequestStatus.DRAFT, RequestStatus.APPROVED),
            (RequestStatus.APPROVED, RequestStatus.CLOSED),
            (RequestStatus.APPROVED, RequestStatus.APPROVED),
            (RequestStatus.REJECTED, RequestStatus.PENDING_APPROVAL),
            (RequestStatus.CLOSED, RequestStatus.IN_PROGRESS),
            (RequestStatus.IN_PROGRESS, RequestStatus.APPROVED),
        ],
    )
    def test_invalid_transitions_raise(self, from_status, to_status):
        with pytest.raises(InvalidTransitionError) as exc_info:
            validate_transition("SC-000001", from_status, to_status)
        assert exc_info.value.from_status == from_status.value
        assert exc_info.value.to_status == to_status.value
        assert exc_info.value.code == "INVALID_TRANSITION"

    def test_terminal_states(self):
        assert TERMINAL_REQUEST_STATUSES == {RequestStatus.REJECTED, RequestStatus.CLOSED}

    def test_every_state_is_reachable_from_draft(self):
        reached = {RequestStatus.DRAFT}
        frontier = [RequestStatus.DRAFT]
        while frontier:
            for target in REQUEST_TRANSITIONS[frontier.pop()]:
                if target not in reached:
                    reached.add(target)
                    frontier.append(target)
        assert reached == set(RequestStatus)

    def test_find_transition_returns_none_for_missing_edge(self):
        assert find_transition(RequestStatus.CLOSED, RequestStatus.DRAFT) is None

    def test_items_are_not_editable_after_approval(self):
        assert RequestStatus.APPROVED not in ITEM_EDITABLE_STATUSES
        assert RequestStatus.IN_PROGRESS not in ITEM_EDITABLE_STATUSES
        assert RequestStatus.CLOSED not in ITEM_EDITABLE_STATUSES

    def test_only_approved_and_in_progress_receive(self):
        assert RECEIVABLE_STATUSES == {RequestStatus.APPROVED, RequestStatus.IN_PROGRESS}


class TestTerminationReason:
    def test_peer_approval_reads_as_skipped(self):
        assert TerminationReason.PEER_APPROVED.label == "skipped"

    @pytest.mark.parametrize(
        "reason", [TerminationReason.REJECTION_CASCADE, TerminationReason.ADMIN_OVERRIDE],
    )
    def test_cascades_read_as_cancelled(self, reason):
        assert reason.label == "cancelled"
