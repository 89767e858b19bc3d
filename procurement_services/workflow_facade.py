"""
WorkflowFacade -- the single entry point for callers of the procurement kernel.

Responsibility:
    Translates external calls into Request Store, Approval Cascade Engine
    and Fulfillment Tracker operations.  It gates every call on the
    caller's role and scope, checks the shape of the input, opens one
    UnitOfWork per call, and maps kernel errors to user-facing messages.
    It holds no request state of its own.

Architecture position:
    Services layer.  Composes kernel services; the kernel never imports
    this module.

Invariants enforced:
    - One call = one transaction: everything a call changes commits
      together or rolls back together.
    - Input shape (required fields, positive quantities, prices) is
      validated before a transaction is opened.
    - The acting principal is an explicit argument on every call.
    - Every call runs with ``actor_id``, ``operation`` and a
      ``correlation_id`` bound in the LogContext.

Failure modes:
    - AuthorizationError before any state is read where the role alone
      decides; after the locked read where scope decides.
    - Any ProcurementKernelError propagates unchanged; use
      ``describe_error`` to render it.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, Generator, Mapping, Sequence
from uuid import uuid4

from sqlalchemy.orm import Session, sessionmaker

from procurement_config.bridges import build_approval_policy, build_kernel_settings
from procurement_config.schema import ProcurementConfig
from procurement_kernel.db.unit_of_work import UnitOfWork
from procurement_kernel.domain.approval_policy import ApprovalPolicy
from procurement_kernel.domain.clock import Clock, SystemClock
from procurement_kernel.domain.dtos import (
    DecisionAction,
    DecisionResult,
    InvoiceRef,
    ItemChanges,
    ItemSpec,
    BatchReceiveResult,
    ListFilter,
    ReceiveResult,
    ReceptionLine,
    RequestSnapshot,
    RequestSummary,
    SubmissionResult,
)
from procurement_kernel.domain.invoice_registry import InvoiceRegistry
from procurement_kernel.domain.lifecycle import RequestStatus
from procurement_kernel.domain.principal import Principal, Role
from procurement_kernel.domain.settings import KernelSettings
from procurement_kernel.exceptions import ProcurementKernelError, ValidationError
from procurement_kernel.logging_config import LogContext, get_logger
from procurement_kernel.models.purchase_request import PurchaseRequest
from procurement_kernel.services.approval_engine import ApprovalCascadeEngine
from procurement_kernel.services.fulfillment_tracker import FulfillmentTracker
from procurement_kernel.services.request_store import (
    RequestStore,
    normalize_item,
    parse_status_filter,
    parse_unit_price,
    require_positive_quantity,
)
from procurement_services import authorization
from procurement_services.authorization import require

logger = get_logger("services.workflow_facade")

ItemInput = ItemSpec | Mapping[str, Any]
ReceptionInput = ReceptionLine | Mapping[str, Any]


@dataclass(frozen=True)
class ErrorResponse:
    """What a caller shows for a failed operation."""

    code: str
    status_code: int
    message: str
    retryable: bool = False


@dataclass
class _Services:
    store: RequestStore
    approvals: ApprovalCascadeEngine
    fulfillment: FulfillmentTracker


def _coerce_item(item: ItemInput) -> ItemSpec:
    if isinstance(item, ItemSpec):
        return item
    try:
        return ItemSpec(
            description=item["description"],
            quantity=item["quantity"],
            specification=item.get("specification", ""),
            unit_price=item.get("unit_price"),
            priority=item.get("priority", ""),
            observations=item.get("observations", ""),
        )
    except KeyError as exc:
        raise ValidationError(f"Item is missing {exc.args[0]!r}", field=exc.args[0]) from None


def _require_id(value: Any, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{field} must be a positive id, got {value!r}", field=field)
    return value


def _optional_text(value: Any, field: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be text, got {value!r}", field=field)
    return value


def _invoice_ref(prefix: Any, number: Any) -> InvoiceRef | None:
    prefix = _optional_text(prefix, "invoice_prefix")
    number = _optional_text(number, "invoice_number")
    if number.strip():
        return InvoiceRef(prefix=prefix, number=number)
    if prefix.strip():
        raise ValidationError("Invoice prefix given without a number", field="invoice_number")
    return None


def _coerce_reception(line: ReceptionInput) -> ReceptionLine:
    if isinstance(line, ReceptionLine):
        item_id, quantity = line.item_id, line.quantity
        invoice, comment, unit_price = line.invoice, line.comment, line.unit_price
    elif isinstance(line, Mapping):
        try:
            item_id, quantity = line["item_id"], line["quantity_received"]
        except KeyError as exc:
            raise ValidationError(f"Reception is missing {exc.args[0]!r}", field=exc.args[0]) from None
        invoice = _invoice_ref(line.get("invoice_prefix"), line.get("invoice_number"))
        comment, unit_price = line.get("comment"), line.get("unit_price")
    else:
        raise ValidationError(f"Not a reception line: {line!r}", field="receptions")
    return ReceptionLine(
        item_id=_require_id(item_id, "item_id"),
        quantity=require_positive_quantity(quantity, "quantity_received"),
        invoice=invoice,
        comment=_optional_text(comment, "comment"),
        unit_price=parse_unit_price(unit_price),
    )


class WorkflowFacade:
    """
    Dispatches authenticated calls to the kernel engines.

    Args:
        session_factory: Opens one session per call.
        policy: Plans approval chains on submission.
        clock: Source of every timestamp.
        settings: Kernel settings (code format, duplicate check, ...).
        invoice_registry: Optional invoice lookup used at reception.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        policy: ApprovalPolicy,
        clock: Clock | None = None,
        settings: KernelSettings | None = None,
        invoice_registry: InvoiceRegistry | None = None,
    ):
        self._session_factory = session_factory
        self._policy = policy
        self._clock = clock or SystemClock()
        self._settings = settings or KernelSettings()
        self._invoice_registry = invoice_registry

    def _services(self, session: Session) -> _Services:
        store = RequestStore(session, clock=self._clock, settings=self._settings)
        return _Services(
            store=store,
            approvals=ApprovalCascadeEngine(session, store, self._policy, self._clock),
            fulfillment=FulfillmentTracker(
                session, store, self._clock, self._invoice_registry,
            ),
        )

    @contextmanager
    def _operation(
        self,
        principal: Principal,
        operation: str,
        request_code: str | None = None,
    ) -> Generator[_Services, None, None]:
        correlation_id = LogContext.get_all().get("correlation_id") or uuid4().hex
        with LogContext.bind(
            correlation_id=correlation_id,
            actor_id=principal.user_id,
            operation=operation,
            request_code=request_code,
        ):
            with UnitOfWork(self._session_factory, operation) as uow:
                yield self._services(uow.session)
            logger.debug("workflow_operation_completed")

    # ------------------------------------------------------------------
    # Creation and submission
    # ------------------------------------------------------------------

    def _prepare_items(self, items: Sequence[ItemInput]) -> list[ItemSpec]:
        if not items:
            raise ValidationError("A request needs at least one item", field="items")
        return [normalize_item(_coerce_item(item)) for item in items]

    def create_draft(
        self,
        principal: Principal,
        provider_id: int,
        items: Sequence[ItemInput],
        notes: str = "",
        request_type: str = "PURCHASE",
    ) -> RequestSnapshot:
        """Create a DRAFT request; its public code is allocated immediately."""
        require(authorization.check_capability(principal, "create_draft"), principal, "create_draft")
        provider_id = _require_id(provider_id, "provider_id")
        specs = self._prepare_items(items)

        with self._operation(principal, "create_draft") as svc:
            request, _ = svc.store.create_request(
                principal, provider_id, specs, notes=notes, request_type=request_type,
            )
            return svc.store.snapshot(request)

    def submit(
        self,
        principal: Principal,
        provider_id: int,
        items: Sequence[ItemInput],
        notes: str = "",
        request_type: str = "PURCHASE",
    ) -> SubmissionResult:
        """
        Create a request and submit it for approval in one transaction.

        Raises:
            AuthorizationError: The principal may not create requests.
            ValidationError: Bad input, or no approver besides the requester.
            DuplicateItemError: An item was requested recently.
        """
        require(authorization.check_capability(principal, "submit"), principal, "submit")
        provider_id = _require_id(provider_id, "provider_id")
        specs = self._prepare_items(items)

        with self._operation(principal, "submit") as svc:
            request, warnings = svc.store.create_request(
                principal, provider_id, specs, notes=notes, request_type=request_type,
            )
            svc.approvals.submit(request, principal)
            return SubmissionResult(
                public_code=request.public_code,
                status=RequestStatus(request.status),
                warnings=warnings,
            )

    def submit_draft(self, principal: Principal, public_code: str) -> SubmissionResult:
        """Submit an existing DRAFT.  Only its requester or an administrator may."""
        require(authorization.check_capability(principal, "submit_draft"), principal, "submit_draft")

        with self._operation(principal, "submit_draft", public_code) as svc:
            request = svc.store.get_by_code(public_code, for_update=True)
            require(authorization.can_submit_draft(principal, request), principal, "submit_draft")
            requester = principal
            if request.requester_id != principal.user_id:
                requester = Principal(
                    user_id=request.requester_id,
                    role=Role.REQUESTER,
                    dependency_id=request.dependency_id,
                )
            svc.approvals.submit(request, requester, actor_id=principal.user_id)
            return SubmissionResult(
                public_code=request.public_code,
                status=RequestStatus(request.status),
            )

    # ------------------------------------------------------------------
    # Approval
    # ------------------------------------------------------------------

    def decide(
        self,
        principal: Principal,
        public_code: str,
        action: DecisionAction | str,
        comment: str = "",
    ) -> DecisionResult:
        """
        Approve or reject as ``principal``.

        Administrators take the override path.  Holding a pending step at
        the current level is the approver's standing to decide.
        """
        require(authorization.check_capability(principal, "decide"), principal, "decide")
        try:
            action = DecisionAction.parse(action)
        except ValueError:
            raise ValidationError(f"Unknown decision action: {action!r}", field="action") from None
        if action is DecisionAction.REJECT and not (comment or "").strip():
            raise ValidationError("A rejection requires a comment", field="comment")

        with self._operation(principal, "decide", public_code) as svc:
            return svc.approvals.decide(public_code, principal, action, comment)

    def pending_approvals(self, principal: Principal) -> list[RequestSummary]:
        """Requests waiting on the principal's decision, newest first."""
        require(
            authorization.check_capability(principal, "pending_approvals"),
            principal,
            "pending_approvals",
        )
        with self._operation(principal, "pending_approvals") as svc:
            return svc.store.pending_for_approver(principal.user_id)

    # ------------------------------------------------------------------
    # Fulfillment
    # ------------------------------------------------------------------

    def receive(
        self,
        principal: Principal,
        item_id: int,
        quantity_received: int,
        invoice_prefix: str | None = None,
        invoice_number: str | None = None,
        comment: str = "",
        unit_price: Decimal | str | None = None,
    ) -> ReceiveResult:
        """
        Record goods received against one item.

        Raises:
            OverReceiptError: More than the outstanding quantity.
            InvalidStateError: The request is not approved yet, or closed.
        """
        require(authorization.check_capability(principal, "receive"), principal, "receive")
        item_id = _require_id(item_id, "item_id")
        quantity = require_positive_quantity(quantity_received, "quantity_received")
        price = parse_unit_price(unit_price)
        invoice = _invoice_ref(invoice_prefix, invoice_number)
        comment = _optional_text(comment, "comment")

        with self._operation(principal, "receive") as svc:
            item = svc.store.get_item_for_update(item_id)
            with LogContext.bind(request_code=item.request.public_code):
                require(authorization.can_receive(principal, item.request), principal, "receive")
                return svc.fulfillment.receive(
                    item_id,
                    principal.user_id,
                    quantity,
                    invoice=invoice,
                    comment=comment,
                    unit_price=price,
                )

    def receive_many(
        self, principal: Principal, receptions: Sequence[ReceptionInput],
    ) -> BatchReceiveResult:
        """
        Record goods received against several items of one request.

        Each reception is a ``ReceptionLine`` or a mapping with
        ``item_id``, ``quantity_received`` and optionally
        ``invoice_prefix``, ``invoice_number``, ``comment`` and
        ``unit_price``.  Every line is checked before the transaction
        opens; if any line fails inside it, none is recorded.

        Raises:
            ValidationError: Empty batch, a malformed line, or items from
                more than one request.
            OverReceiptError: A line exceeds its outstanding quantity.
            InvalidStateError: The request is not approved yet, or closed.
        """
        require(authorization.check_capability(principal, "receive_many"), principal, "receive_many")
        if isinstance(receptions, (str, bytes, Mapping)):
            raise ValidationError("receptions must be a sequence of lines", field="receptions")
        lines = [_coerce_reception(line) for line in receptions]
        if not lines:
            raise ValidationError("A reception batch needs at least one line", field="receptions")

        with self._operation(principal, "receive_many") as svc:
            request, _ = svc.store.get_items_for_update([line.item_id for line in lines])
            with LogContext.bind(request_code=request.public_code):
                require(authorization.can_receive(principal, request), principal, "receive_many")
                return svc.fulfillment.receive_many(lines, principal.user_id)

    # ------------------------------------------------------------------
    # Item editing
    # ------------------------------------------------------------------

    def edit_item(self, principal: Principal, item_id: int, changes: ItemChanges) -> RequestSnapshot:
        """
        Change an item of a request that is not yet approved.

        Raises:
            InvalidStateError: The request is APPROVED or later.
            AuthorizationError: The principal may not edit at this stage.
        """
        item_id = _require_id(item_id, "item_id")
        if changes.is_empty():
            raise ValidationError("No item changes supplied", field="changes")
        if changes.quantity is not None:
            require_positive_quantity(changes.quantity)
        parse_unit_price(changes.unit_price)

        with self._operation(principal, "edit_item") as svc:
            item = svc.store.get_item_for_update(item_id)
            request = item.request
            with LogContext.bind(request_code=request.public_code):
                self._authorize_item_change(svc, principal, request, "edit_item", "edit items of")
                svc.store.edit_item(item, changes, principal.user_id)
                return svc.store.snapshot(request)

    def remove_item(self, principal: Principal, item_id: int) -> RequestSnapshot:
        """Remove an item; a request never loses its last item."""
        item_id = _require_id(item_id, "item_id")

        with self._operation(principal, "remove_item") as svc:
            item = svc.store.get_item_for_update(item_id)
            request = item.request
            with LogContext.bind(request_code=request.public_code):
                self._authorize_item_change(svc, principal, request, "remove_item", "remove items of")
                svc.store.remove_item(item, principal.user_id)
                return svc.store.snapshot(request)

    @staticmethod
    def _authorize_item_change(
        svc: _Services,
        principal: Principal,
        request: PurchaseRequest,
        operation: str,
        verb: str,
    ) -> None:
        require(authorization.can_view(principal, request), principal, operation)
        svc.store.require_editable(request, verb)
        require(authorization.can_edit_items(principal, request), principal, operation)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def query(self, principal: Principal, public_code: str) -> RequestSnapshot:
        """Full snapshot of a request: items, approval steps and receptions."""
        with self._operation(principal, "query", public_code) as svc:
            request = svc.store.get_by_code(public_code)
            require(authorization.can_view(principal, request), principal, "query")
            return svc.store.snapshot(request)

    def list_requests(
        self, principal: Principal, filters: ListFilter | None = None,
    ) -> list[RequestSummary]:
        if filters is not None:
            if filters.limit < 1:
                raise ValidationError("limit must be positive", field="limit")
            if filters.status is not None:
                filters = replace(filters, status=parse_status_filter(filters.status))
        with self._operation(principal, "list_requests") as svc:
            return svc.store.list_requests(principal, filters)

    # ------------------------------------------------------------------
    # Errors
    # ------------------------------------------------------------------

    @staticmethod
    def describe_error(exc: ProcurementKernelError) -> ErrorResponse:
        """Render a kernel error for the caller."""
        return ErrorResponse(
            code=exc.code,
            status_code=exc.status_code,
            message=exc.user_message,
            retryable=exc.retryable,
        )


def build_workflow_facade(
    config: ProcurementConfig,
    session_factory: sessionmaker[Session],
    clock: Clock | None = None,
    invoice_registry: InvoiceRegistry | None = None,
) -> WorkflowFacade:
    """Wire a facade from a loaded configuration."""
    return WorkflowFacade(
        session_factory,
        build_approval_policy(config),
        clock=clock,
        settings=build_kernel_settings(config),
        invoice_registry=invoice_registry,
    )
