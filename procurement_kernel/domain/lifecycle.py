"""
Purchase request lifecycle (``procurement_kernel.domain.lifecycle``).

Responsibility
--------------
The request state machine and the approval-step status model.  Pure value
objects, ZERO I/O.

Request lifecycle::

    DRAFT -> PENDING_APPROVAL -> APPROVED -> IN_PROGRESS -> CLOSED
                              \\-> REJECTED

REJECTED and CLOSED are terminal.  Every status change made by the engines
goes through ``validate_transition`` so a transition can never be applied
twice or out of order.

Approval steps leave ``pending`` exactly once: by the approver's own
decision (approved / rejected) or by being terminalized without a decision
(``terminated``) with a ``TerminationReason``.
"""

from dataclasses import dataclass
from enum import Enum

from procurement_kernel.exceptions import InvalidTransitionError
from procurement_kernel.logging_config import get_logger

logger = get_logger("domain.lifecycle")


class RequestStatus(str, Enum):
    """Purchase request lifecycle states."""

    DRAFT = "DRAFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    IN_PROGRESS = "IN_PROGRESS"
    CLOSED = "CLOSED"


class StepStatus(str, Enum):
    """Approval step states."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    TERMINATED = "terminated"


class TerminationReason(str, Enum):
    """Why a step was terminalized without its approver deciding."""

    PEER_APPROVED = "peer_approved"
    REJECTION_CASCADE = "rejection_cascade"
    ADMIN_OVERRIDE = "admin_override"

    @property
    def label(self) -> str:
        """Audit-trail label: same-level peers are skipped, the rest cancelled."""
        if self is TerminationReason.PEER_APPROVED:
            return "skipped"
        return "cancelled"


PEER_APPROVED_COMMENT = "approved by peer at same level"
REJECTION_CASCADE_COMMENT = "cancelled by rejection"
ADMIN_OVERRIDE_COMMENT = "cancelled by administrator override"
SELF_AUTHORIZED_COMMENT = "self-authorized by requester"


# -----------------------------------------------------------------------------
# State machine
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class Guard:
    """A condition for a transition."""
    name: str
    description: str


@dataclass(frozen=True)
class Transition:
    """A valid state transition."""
    from_state: RequestStatus
    to_state: RequestStatus
    action: str
    guard: Guard | None = None


@dataclass(frozen=True)
class Workflow:
    """A state machine definition."""
    name: str
    description: str
    initial_state: RequestStatus
    states: tuple[RequestStatus, ...]
    transitions: tuple[Transition, ...]


HAS_ITEMS_AND_APPROVERS = Guard(
    name="has_items_and_approvers",
    description="At least one item and one approver other than the requester",
)

ALL_STEPS_APPROVED = Guard(
    name="all_steps_approved",
    description="No approval step remains pending",
)

FIRST_RECEPTION = Guard(
    name="first_reception",
    description="First reception recorded on any item",
)

ALL_ITEMS_RECEIVED = Guard(
    name="all_items_received",
    description="Total received quantity reached total requested quantity",
)

REQUEST_WORKFLOW = Workflow(
    name="purchase_request",
    description="Purchase request lifecycle",
    initial_state=RequestStatus.DRAFT,
    states=tuple(RequestStatus),
    transitions=(
        Transition(RequestStatus.DRAFT, RequestStatus.PENDING_APPROVAL, action="submit",
                   guard=HAS_ITEMS_AND_APPROVERS),
        Transition(RequestStatus.PENDING_APPROVAL, RequestStatus.APPROVED, action="approve",
                   guard=ALL_STEPS_APPROVED),
        Transition(RequestStatus.PENDING_APPROVAL, RequestStatus.REJECTED, action="reject"),
        Transition(RequestStatus.APPROVED, RequestStatus.IN_PROGRESS, action="start_fulfillment",
                   guard=FIRST_RECEPTION),
        Transition(RequestStatus.IN_PROGRESS, RequestStatus.CLOSED, action="close",
                   guard=ALL_ITEMS_RECEIVED),
    ),
)

REQUEST_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    status: frozenset(
        t.to_state for t in REQUEST_WORKFLOW.transitions if t.from_state is status
    )
    for status in RequestStatus
}

TERMINAL_REQUEST_STATUSES: frozenset[RequestStatus] = frozenset(
    status for status, targets in REQUEST_TRANSITIONS.items() if not targets
)

# Items may be edited until the request is approved.
ITEM_EDITABLE_STATUSES: frozenset[RequestStatus] = frozenset({
    RequestStatus.DRAFT,
    RequestStatus.PENDING_APPROVAL,
    RequestStatus.REJECTED,
})

RECEIVABLE_STATUSES: frozenset[RequestStatus] = frozenset({
    RequestStatus.APPROVED,
    RequestStatus.IN_PROGRESS,
})

logger.debug(
    "request_workflow_registered",
    extra={
        "workflow_name": REQUEST_WORKFLOW.name,
        "state_count": len(REQUEST_WORKFLOW.states),
        "transition_count": len(REQUEST_WORKFLOW.transitions),
        "terminal_states": sorted(s.value for s in TERMINAL_REQUEST_STATUSES),
    },
)


def find_transition(from_status: RequestStatus, to_status: RequestStatus) -> Transition | None:
    for transition in REQUEST_WORKFLOW.transitions:
        if transition.from_state is from_status and transition.to_state is to_status:
            return transition
    return None


def validate_transition(
    request_code: str,
    from_status: RequestStatus,
    to_status: RequestStatus,
) -> Transition:
    """
    Return the workflow transition for ``from_status -> to_status``.

    Raises:
        InvalidTransitionError: If the state machine has no such edge
            (including re-applying a transition that already happened).
    """
    transition = find_transition(RequestStatus(from_status), RequestStatus(to_status))
    if transition is None:
        raise InvalidTransitionError(
            request_code, RequestStatus(from_status).value, RequestStatus(to_status).value
        )
    return transition
