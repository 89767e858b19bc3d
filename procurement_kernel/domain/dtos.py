"""
Data Transfer Objects for the procurement kernel.

Frozen value objects that cross the boundary between the facade, the
engines and the request store.  ORM models never leave a unit of work;
callers only ever see these.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum

from procurement_kernel.domain.lifecycle import RequestStatus, StepStatus, TerminationReason


def _clean(value: str | None) -> str:
    return (value or "").strip().upper()


class DecisionAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"

    @classmethod
    def parse(cls, value: "str | DecisionAction") -> "DecisionAction":
        if isinstance(value, DecisionAction):
            return value
        return cls(value.strip().lower())


class ItemReceptionState(str, Enum):
    """Fulfillment state of a single item."""

    PENDING = "pending"
    PARTIAL = "partial"
    COMPLETE = "complete"

    @classmethod
    def of(cls, requested: int, received: int) -> "ItemReceptionState":
        if received <= 0:
            return cls.PENDING
        if received < requested:
            return cls.PARTIAL
        return cls.COMPLETE


@dataclass(frozen=True)
class ItemSpec:
    """One line item as supplied by the requester."""

    description: str
    quantity: int
    specification: str = ""
    unit_price: Decimal | None = None
    priority: str = ""
    observations: str = ""


@dataclass(frozen=True)
class ItemChanges:
    """Partial update of a request item.  ``None`` means unchanged."""

    description: str | None = None
    specification: str | None = None
    quantity: int | None = None
    unit_price: Decimal | None = None
    priority: str | None = None
    observations: str | None = None
    admin_comment: str | None = None

    def is_empty(self) -> bool:
        return all(getattr(self, name) is None for name in self.__dataclass_fields__)


@dataclass(frozen=True)
class InvoiceRef:
    """Invoice reference (prefix + number), stored trimmed and upper-cased."""

    prefix: str
    number: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "prefix", _clean(self.prefix))
        object.__setattr__(self, "number", _clean(self.number))

    def __str__(self) -> str:
        return f"{self.prefix}-{self.number}" if self.prefix else self.number


@dataclass(frozen=True)
class PlannedStep:
    """One approver slot produced by the approval policy."""

    approver_id: int
    level: int
    pre_approved: bool = False


@dataclass(frozen=True)
class ListFilter:
    status: RequestStatus | None = None
    requester_id: int | None = None
    dependency_id: int | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    limit: int = 200


# -----------------------------------------------------------------------------
# Snapshots
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class ReceptionSnapshot:
    id: int
    item_id: int
    quantity_received: int
    received_at: datetime
    received_by_id: int
    invoice: InvoiceRef | None
    comment: str


@dataclass(frozen=True)
class ApprovalStepSnapshot:
    id: int
    approver_id: int
    level: int
    status: StepStatus
    termination_reason: TerminationReason | None
    comment: str
    decided_at: datetime | None
    decided_by_id: int | None

    @property
    def display_status(self) -> str:
        if self.termination_reason is not None:
            return self.termination_reason.label
        return self.status.value


@dataclass(frozen=True)
class RequestItemSnapshot:
    id: int
    description: str
    specification: str
    requested_quantity: int
    unit_price: Decimal | None
    priority: str
    observations: str
    admin_comment: str
    received_quantity: int
    receptions: tuple[ReceptionSnapshot, ...] = ()

    @property
    def outstanding_quantity(self) -> int:
        return self.requested_quantity - self.received_quantity

    @property
    def reception_state(self) -> ItemReceptionState:
        return ItemReceptionState.of(self.requested_quantity, self.received_quantity)


@dataclass(frozen=True)
class RequestSnapshot:
    """Full request: items with their receptions, and the approval chain."""

    id: int
    public_code: str
    request_type: str
    requester_id: int
    provider_id: int
    dependency_id: int | None
    status: RequestStatus
    is_urgent: bool
    notes: str
    admin_comment: str
    rejection_comment: str
    total_value: Decimal
    created_at: datetime
    submitted_at: datetime | None
    approved_at: datetime | None
    approved_by_id: int | None
    closed_at: datetime | None
    items: tuple[RequestItemSnapshot, ...] = ()
    approval_steps: tuple[ApprovalStepSnapshot, ...] = ()

    @property
    def total_requested(self) -> int:
        return sum(item.requested_quantity for item in self.items)

    @property
    def total_received(self) -> int:
        return sum(item.received_quantity for item in self.items)

    def item(self, item_id: int) -> RequestItemSnapshot:
        for item in self.items:
            if item.id == item_id:
                return item
        raise KeyError(item_id)

    def steps_at(self, level: int) -> tuple[ApprovalStepSnapshot, ...]:
        return tuple(s for s in self.approval_steps if s.level == level)


@dataclass(frozen=True)
class RequestSummary:
    """List-view row."""

    id: int
    public_code: str
    status: RequestStatus
    requester_id: int
    provider_id: int
    dependency_id: int | None
    is_urgent: bool
    total_value: Decimal
    created_at: datetime


# -----------------------------------------------------------------------------
# Operation results
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class SubmissionResult:
    public_code: str
    status: RequestStatus
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class DecisionResult:
    public_code: str
    status: RequestStatus
    action: DecisionAction
    override: bool = False
    terminated_step_ids: tuple[int, ...] = ()


@dataclass(frozen=True)
class ItemProgress:
    item_id: int
    requested: int
    received: int

    @property
    def outstanding(self) -> int:
        return self.requested - self.received

    @property
    def state(self) -> ItemReceptionState:
        return ItemReceptionState.of(self.requested, self.received)


@dataclass(frozen=True)
class ReceiveResult:
    reception_id: int
    item: ItemProgress
    request_status: RequestStatus
    public_code: str
    transitions: tuple[RequestStatus, ...] = field(default=())


@dataclass(frozen=True)
class ReceptionLine:
    """One item's share of a batch reception."""

    item_id: int
    quantity: int
    invoice: InvoiceRef | None = None
    comment: str = ""
    unit_price: Decimal | None = None


@dataclass(frozen=True)
class BatchReceiveResult:
    public_code: str
    request_status: RequestStatus
    reception_ids: tuple[int, ...]
    items: tuple[ItemProgress, ...]
    transitions: tuple[RequestStatus, ...] = field(default=())
