"""
RequestStore -- durable, transactional storage of purchase requests.

Responsibility:
    Creates requests with their items, allocates public codes, loads
    requests and items (optionally under row locks), applies lifecycle
    status transitions, edits items while the request is editable, and
    builds the read-side snapshots and listings.

Architecture position:
    Kernel > Services.  Used by ApprovalCascadeEngine, FulfillmentTracker
    and the workflow facade, always with the session of one UnitOfWork.

Invariants enforced:
    - Every status change goes through ``transition()``, which validates
      it against the lifecycle state machine and records an audit event in
      the same transaction.
    - Requested quantities are positive; unit prices are non-negative.
    - Lock order is request row first, then its children, in every
      operation, so concurrent operations on one request cannot deadlock.

Failure modes:
    - ValidationError / DuplicateItemError on bad input.
    - RequestNotFoundError / ItemNotFoundError on unknown references.
    - InvalidStateError when editing items of an approved request.
    - InvalidTransitionError on a transition the state machine forbids.
"""

from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Sequence

from sqlalchemy import Select, exists, or_, select
from sqlalchemy.orm import Session, aliased, lazyload

from procurement_kernel.domain.clock import Clock, SystemClock
from procurement_kernel.domain.dtos import (
    ApprovalStepSnapshot,
    InvoiceRef,
    ItemChanges,
    ItemSpec,
    ListFilter,
    ReceptionSnapshot,
    RequestItemSnapshot,
    RequestSnapshot,
    RequestSummary,
)
from procurement_kernel.domain.lifecycle import (
    ITEM_EDITABLE_STATUSES,
    RequestStatus,
    StepStatus,
    TerminationReason,
    Transition,
    validate_transition,
)
from procurement_kernel.domain.principal import Capability, Principal, Role, has_capability
from procurement_kernel.domain.public_code import (
    format_public_code,
    initials_prefix,
    normalize_public_code,
    repair_legacy_code,
)
from procurement_kernel.domain.settings import KernelSettings
from procurement_kernel.exceptions import (
    DuplicateItemError,
    InvalidStateError,
    ItemNotFoundError,
    RequestNotFoundError,
    ValidationError,
)
from procurement_kernel.logging_config import get_logger
from procurement_kernel.models.approval_step import ApprovalStep
from procurement_kernel.models.audit_event import AuditAction
from procurement_kernel.models.purchase_request import PurchaseRequest, RequestItem
from procurement_kernel.models.reception import ReceptionRecord
from procurement_kernel.services.auditor_service import AuditorService
from procurement_kernel.services.base import BaseService
from procurement_kernel.services.sequence_service import SequenceService

logger = get_logger("services.request_store")

ENTITY_TYPE = "PurchaseRequest"

_STATUS_AUDIT_ACTIONS: dict[RequestStatus, AuditAction] = {
    RequestStatus.PENDING_APPROVAL: AuditAction.REQUEST_SUBMITTED,
    RequestStatus.APPROVED: AuditAction.REQUEST_APPROVED,
    RequestStatus.REJECTED: AuditAction.REQUEST_REJECTED,
    RequestStatus.IN_PROGRESS: AuditAction.REQUEST_IN_PROGRESS,
    RequestStatus.CLOSED: AuditAction.REQUEST_CLOSED,
}


def _upper(value: str | None) -> str:
    return (value or "").strip().upper()


def require_positive_quantity(value: Any, field: str = "quantity") -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be a whole number, got {value!r}", field=field)
    if value <= 0:
        raise ValidationError(f"{field} must be positive, got {value}", field=field)
    return value


def parse_unit_price(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        price = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"unit_price is not a number: {value!r}", field="unit_price") from None
    if not price.is_finite() or price < 0:
        raise ValidationError(f"unit_price must be >= 0, got {value}", field="unit_price")
    return price


def parse_status_filter(value: Any) -> RequestStatus:
    if isinstance(value, RequestStatus):
        return value
    try:
        return RequestStatus(str(value).strip().upper())
    except ValueError:
        raise ValidationError(f"Unknown request status: {value!r}", field="status") from None


def normalize_item(spec: ItemSpec) -> ItemSpec:
    """Validate one line item and return it with its text fields normalized."""
    description = _upper(spec.description)
    if not description:
        raise ValidationError("Item description is required", field="description")
    return ItemSpec(
        description=description,
        quantity=require_positive_quantity(spec.quantity),
        specification=_upper(spec.specification),
        unit_price=parse_unit_price(spec.unit_price),
        priority=_upper(spec.priority),
        observations=_upper(spec.observations),
    )


class RequestStore(BaseService):
    """
    Persistence of purchase requests, items, steps and receptions.

    Does NOT call ``session.commit()``.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService | None = None,
        clock: Clock | None = None,
        settings: KernelSettings | None = None,
    ):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._auditor = auditor or AuditorService(session, self._clock)
        self._settings = settings or KernelSettings()
        self._sequences = SequenceService(session)

    @property
    def auditor(self) -> AuditorService:
        return self._auditor

    @property
    def settings(self) -> KernelSettings:
        return self._settings

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_request(
        self,
        requester: Principal,
        provider_id: int,
        items: Sequence[ItemSpec],
        notes: str = "",
        request_type: str = "PURCHASE",
    ) -> tuple[PurchaseRequest, tuple[str, ...]]:
        """
        Insert a DRAFT request with its items.

        Returns the request and any duplicate-item warnings raised during
        the grace period.

        Raises:
            ValidationError: No items, or an invalid item.
            DuplicateItemError: An item was requested recently (outside
                the grace period).
        """
        if not items:
            raise ValidationError("A request needs at least one item", field="items")
        normalized = [normalize_item(item) for item in items]
        warnings = self._check_duplicates(requester.user_id, normalized)

        request = PurchaseRequest(
            public_code=self._allocate_code(requester),
            request_type=_upper(request_type) or "PURCHASE",
            requester_id=requester.user_id,
            provider_id=provider_id,
            dependency_id=requester.dependency_id,
            status=RequestStatus.DRAFT.value,
            is_urgent=self._is_urgent(normalized),
            notes=(notes or "").strip(),
            created_at=self._clock.now(),
            items=[
                RequestItem(
                    description=item.description,
                    specification=item.specification,
                    requested_quantity=item.quantity,
                    unit_price=item.unit_price,
                    priority=item.priority,
                    observations=item.observations,
                )
                for item in normalized
            ],
        )
        request.recompute_total_value()
        self.session.add(request)
        self.session.flush()

        self._auditor.record(
            ENTITY_TYPE,
            request.public_code,
            AuditAction.REQUEST_CREATED,
            requester.user_id,
            {
                "request_type": request.request_type,
                "item_count": len(request.items),
                "total_value": request.total_value,
                "is_urgent": request.is_urgent,
            },
        )
        logger.info(
            "request_created",
            extra={
                "request_code": request.public_code,
                "requester_id": requester.user_id,
                "item_count": len(request.items),
                "is_urgent": request.is_urgent,
            },
        )
        return request, warnings

    def _allocate_code(self, requester: Principal) -> str:
        prefix = initials_prefix(requester.display_name, self._settings.default_code_prefix)
        number = self._sequences.next_value(SequenceService.request_code(prefix))
        return format_public_code(prefix, number, self._settings.code_number_width)

    def _is_urgent(self, items: Sequence[ItemSpec]) -> bool:
        return any(item.priority in self._settings.urgent_priority_tags for item in items)

    def _check_duplicates(self, requester_id: int, items: Sequence[ItemSpec]) -> tuple[str, ...]:
        policy = self._settings.duplicate_check
        if not policy.enabled:
            return ()

        since = self._clock.now() - timedelta(days=policy.window_days)
        rows = self.session.execute(
            select(RequestItem.description, RequestItem.specification, PurchaseRequest.public_code)
            .join(PurchaseRequest, RequestItem.request_id == PurchaseRequest.id)
            .where(
                PurchaseRequest.requester_id == requester_id,
                PurchaseRequest.created_at >= since,
                PurchaseRequest.status != RequestStatus.REJECTED.value,
                RequestItem.description.in_(sorted({item.description for item in items})),
            )
            .order_by(PurchaseRequest.id.desc())
        ).all()
        previous: dict[tuple[str, str], str] = {}
        for description, specification, code in rows:
            previous.setdefault((description, specification), code)

        warnings: list[str] = []
        for item in items:
            code = previous.get((item.description, item.specification))
            if code is None:
                continue
            if not policy.in_grace_period(self._clock.today()):
                logger.info(
                    "duplicate_item_blocked",
                    extra={"requester_id": requester_id, "existing_code": code},
                )
                raise DuplicateItemError(item.description, code, policy.window_days)
            warnings.append(
                f"'{item.description}' was already requested in {code} "
                f"within the last {policy.window_days} days"
            )
            logger.warning(
                "duplicate_item_allowed_in_grace_period",
                extra={
                    "requester_id": requester_id,
                    "existing_code": code,
                    "grace_period_end": policy.grace_period_end,
                },
            )
        return tuple(warnings)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @staticmethod
    def _locked(stmt: Select, for_update: bool) -> Select:
        if for_update:
            stmt = stmt.with_for_update()
        return stmt.execution_options(populate_existing=True)

    def get_by_code(self, public_code: str, for_update: bool = False) -> PurchaseRequest:
        """
        Load a request by its public code.

        With legacy code repair enabled, a code carrying the historical
        extra trailing zero is retried in its repaired form.
        """
        code = normalize_public_code(public_code)
        request = self._find_by_code(code, for_update)
        if request is None and self._settings.legacy_code_repair:
            repaired = repair_legacy_code(code, self._settings.code_number_width)
            if repaired != code:
                request = self._find_by_code(repaired, for_update)
                if request is not None:
                    logger.info(
                        "legacy_code_repaired",
                        extra={"given_code": code, "repaired_code": repaired},
                    )
        if request is None:
            raise RequestNotFoundError(public_code)
        return request

    def _find_by_code(self, code: str, for_update: bool) -> PurchaseRequest | None:
        return self.session.execute(
            self._locked(select(PurchaseRequest).where(PurchaseRequest.public_code == code), for_update)
        ).scalar_one_or_none()

    def get_by_id(self, request_id: int, for_update: bool = False) -> PurchaseRequest:
        request = self.session.execute(
            self._locked(select(PurchaseRequest).where(PurchaseRequest.id == request_id), for_update)
        ).scalar_one_or_none()
        if request is None:
            raise RequestNotFoundError(request_id)
        return request

    def get_item_for_update(self, item_id: int) -> RequestItem:
        """
        Lock an item's request, then the item itself.

        The owning request id is resolved with a plain read first so the
        request row is always locked before its children.
        """
        request_id = self.session.execute(
            select(RequestItem.request_id).where(RequestItem.id == item_id)
        ).scalar_one_or_none()
        if request_id is None:
            raise ItemNotFoundError(item_id)
        self.get_by_id(request_id, for_update=True)
        item = self.session.execute(
            self._locked(select(RequestItem).where(RequestItem.id == item_id), True)
        ).scalar_one()
        return item

    def get_items_for_update(
        self, item_ids: Sequence[int],
    ) -> tuple[PurchaseRequest, dict[int, RequestItem]]:
        """
        Lock the one request that owns every item in ``item_ids``, then the
        items, ordered by id.

        Raises:
            ItemNotFoundError: An id names no item.
            ValidationError: The items belong to more than one request.
        """
        wanted = sorted(set(item_ids))
        owners = dict(
            self.session.execute(
                select(RequestItem.id, RequestItem.request_id).where(RequestItem.id.in_(wanted))
            ).all()
        )
        for item_id in wanted:
            if item_id not in owners:
                raise ItemNotFoundError(item_id)
        request_ids = set(owners.values())
        if len(request_ids) > 1:
            raise ValidationError(
                "All items of one reception batch must belong to the same request",
                field="item_id",
            )
        request = self.get_by_id(request_ids.pop(), for_update=True)
        items = self.session.execute(
            self._locked(
                select(RequestItem).where(RequestItem.id.in_(wanted)).order_by(RequestItem.id),
                True,
            )
        ).scalars().all()
        return request, {item.id: item for item in items}

    def lock_steps(self, request: PurchaseRequest) -> list[ApprovalStep]:
        """Re-read every approval step of ``request`` under row locks."""
        return list(
            self.session.execute(
                self._locked(
                    select(ApprovalStep)
                    .where(ApprovalStep.request_id == request.id)
                    .order_by(ApprovalStep.level, ApprovalStep.id),
                    True,
                )
            ).scalars().all()
        )

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def transition(
        self,
        request: PurchaseRequest,
        to_status: RequestStatus,
        actor_id: int,
        payload: dict[str, Any] | None = None,
    ) -> Transition:
        """
        Move ``request`` to ``to_status`` and audit it.

        Raises:
            InvalidTransitionError: If the lifecycle has no such edge.
        """
        from_status = RequestStatus(request.status)
        transition = validate_transition(request.public_code, from_status, to_status)
        request.status = to_status.value
        self.session.flush()

        self._auditor.record(
            ENTITY_TYPE,
            request.public_code,
            _STATUS_AUDIT_ACTIONS[to_status],
            actor_id,
            {
                "from_status": from_status.value,
                "to_status": to_status.value,
                "action": transition.action,
                **(payload or {}),
            },
        )
        logger.info(
            "request_status_changed",
            extra={
                "request_code": request.public_code,
                "from_status": from_status.value,
                "to_status": to_status.value,
                "transition_action": transition.action,
                "actor_id": actor_id,
            },
        )
        return transition

    # ------------------------------------------------------------------
    # Item editing
    # ------------------------------------------------------------------

    def require_editable(self, request: PurchaseRequest, operation: str) -> None:
        if RequestStatus(request.status) not in ITEM_EDITABLE_STATUSES:
            raise InvalidStateError(request.public_code, request.status, operation)

    def edit_item(self, item: RequestItem, changes: ItemChanges, actor_id: int) -> RequestItem:
        """
        Apply ``changes`` to an item of an editable request.

        Raises:
            InvalidStateError: The request is APPROVED or later.
            ValidationError: Empty change set or invalid values.
        """
        request = item.request
        self.require_editable(request, "edit items of")
        if changes.is_empty():
            raise ValidationError("No item changes supplied", field="changes")

        changed: dict[str, Any] = {}
        if changes.description is not None:
            description = _upper(changes.description)
            if not description:
                raise ValidationError("Item description is required", field="description")
            changed["description"] = description
        if changes.quantity is not None:
            changed["requested_quantity"] = require_positive_quantity(changes.quantity)
        if changes.unit_price is not None:
            changed["unit_price"] = parse_unit_price(changes.unit_price)
        for name in ("specification", "priority", "observations", "admin_comment"):
            value = getattr(changes, name)
            if value is not None:
                changed[name] = _upper(value)

        for name, value in changed.items():
            setattr(item, name, value)
        request.recompute_total_value()
        request.is_urgent = any(
            i.priority in self._settings.urgent_priority_tags for i in request.items
        )
        self.session.flush()

        self._auditor.record(
            ENTITY_TYPE,
            request.public_code,
            AuditAction.ITEM_EDITED,
            actor_id,
            {"item_id": item.id, "changes": changed},
        )
        logger.info(
            "request_item_edited",
            extra={
                "request_code": request.public_code,
                "item_id": item.id,
                "fields": sorted(changed),
            },
        )
        return item

    def remove_item(self, item: RequestItem, actor_id: int) -> PurchaseRequest:
        """
        Remove an item from an editable request.

        Raises:
            InvalidStateError: The request is APPROVED or later.
            ValidationError: It is the request's last item.
        """
        request = item.request
        self.require_editable(request, "remove items of")
        if len(request.items) <= 1:
            raise ValidationError("A request must keep at least one item", field="items")

        item_id = item.id
        description = item.description
        request.items.remove(item)
        request.recompute_total_value()
        request.is_urgent = any(
            i.priority in self._settings.urgent_priority_tags for i in request.items
        )
        self.session.flush()

        self._auditor.record(
            ENTITY_TYPE,
            request.public_code,
            AuditAction.ITEM_REMOVED,
            actor_id,
            {"item_id": item_id, "description": description},
        )
        logger.info(
            "request_item_removed",
            extra={"request_code": request.public_code, "item_id": item_id},
        )
        return request

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def snapshot(self, request: PurchaseRequest) -> RequestSnapshot:
        return RequestSnapshot(
            id=request.id,
            public_code=request.public_code,
            request_type=request.request_type,
            requester_id=request.requester_id,
            provider_id=request.provider_id,
            dependency_id=request.dependency_id,
            status=RequestStatus(request.status),
            is_urgent=request.is_urgent,
            notes=request.notes,
            admin_comment=request.admin_comment,
            rejection_comment=request.rejection_comment,
            total_value=request.total_value,
            created_at=request.created_at,
            submitted_at=request.submitted_at,
            approved_at=request.approved_at,
            approved_by_id=request.approved_by_id,
            closed_at=request.closed_at,
            items=tuple(_item_snapshot(item) for item in request.items),
            approval_steps=tuple(_step_snapshot(step) for step in request.approval_steps),
        )

    def list_requests(self, viewer: Principal, filters: ListFilter | None = None) -> list[RequestSummary]:
        """
        Requests visible to ``viewer``, newest first.

        Administrators see everything; approvers see their own requests,
        those of their authorized dependencies and those where they hold a
        step; requesters see their own.
        """
        filters = filters or ListFilter()
        stmt = select(PurchaseRequest).options(lazyload("*"))

        if not has_capability(viewer, Capability.VIEW_ALL):
            visible = [PurchaseRequest.requester_id == viewer.user_id]
            if viewer.role is Role.APPROVER:
                if viewer.authorized_dependency_ids:
                    visible.append(
                        PurchaseRequest.dependency_id.in_(viewer.authorized_dependency_ids)
                    )
                visible.append(
                    exists().where(
                        ApprovalStep.request_id == PurchaseRequest.id,
                        ApprovalStep.approver_id == viewer.user_id,
                    )
                )
            stmt = stmt.where(or_(*visible))

        if filters.status is not None:
            stmt = stmt.where(PurchaseRequest.status == parse_status_filter(filters.status).value)
        if filters.requester_id is not None:
            stmt = stmt.where(PurchaseRequest.requester_id == filters.requester_id)
        if filters.dependency_id is not None:
            stmt = stmt.where(PurchaseRequest.dependency_id == filters.dependency_id)
        if filters.created_from is not None:
            stmt = stmt.where(PurchaseRequest.created_at >= filters.created_from)
        if filters.created_to is not None:
            stmt = stmt.where(PurchaseRequest.created_at <= filters.created_to)

        stmt = stmt.order_by(PurchaseRequest.created_at.desc(), PurchaseRequest.id.desc())
        stmt = stmt.limit(filters.limit)
        return [_summary(r) for r in self.session.execute(stmt).scalars().all()]

    def pending_for_approver(self, approver_id: int) -> list[RequestSummary]:
        """
        The approver's inbox: requests where they hold a pending step and
        no strictly lower level is still pending.
        """
        lower = aliased(ApprovalStep)
        blocked = exists().where(
            lower.request_id == ApprovalStep.request_id,
            lower.status == StepStatus.PENDING.value,
            lower.level < ApprovalStep.level,
        )
        stmt = (
            select(PurchaseRequest)
            .options(lazyload("*"))
            .join(ApprovalStep, ApprovalStep.request_id == PurchaseRequest.id)
            .where(
                ApprovalStep.approver_id == approver_id,
                ApprovalStep.status == StepStatus.PENDING.value,
                PurchaseRequest.status == RequestStatus.PENDING_APPROVAL.value,
                ~blocked,
            )
            .order_by(PurchaseRequest.created_at.desc(), PurchaseRequest.id.desc())
        )
        return [_summary(r) for r in self.session.execute(stmt).scalars().all()]


def _reception_snapshot(record: ReceptionRecord) -> ReceptionSnapshot:
    invoice = None
    if record.invoice_number:
        invoice = InvoiceRef(prefix=record.invoice_prefix or "", number=record.invoice_number)
    return ReceptionSnapshot(
        id=record.id,
        item_id=record.item_id,
        quantity_received=record.quantity_received,
        received_at=record.received_at,
        received_by_id=record.received_by_id,
        invoice=invoice,
        comment=record.comment,
    )


def _item_snapshot(item: RequestItem) -> RequestItemSnapshot:
    return RequestItemSnapshot(
        id=item.id,
        description=item.description,
        specification=item.specification,
        requested_quantity=item.requested_quantity,
        unit_price=item.unit_price,
        priority=item.priority,
        observations=item.observations,
        admin_comment=item.admin_comment,
        received_quantity=item.received_quantity,
        receptions=tuple(_reception_snapshot(r) for r in item.receptions),
    )


def _step_snapshot(step: ApprovalStep) -> ApprovalStepSnapshot:
    return ApprovalStepSnapshot(
        id=step.id,
        approver_id=step.approver_id,
        level=step.level,
        status=StepStatus(step.status),
        termination_reason=(
            TerminationReason(step.termination_reason) if step.termination_reason else None
        ),
        comment=step.comment,
        decided_at=step.decided_at,
        decided_by_id=step.decided_by_id,
    )


def _summary(request: PurchaseRequest) -> RequestSummary:
    return RequestSummary(
        id=request.id,
        public_code=request.public_code,
        status=RequestStatus(request.status),
        requester_id=request.requester_id,
        provider_id=request.provider_id,
        dependency_id=request.dependency_id,
        is_urgent=request.is_urgent,
        total_value=request.total_value,
        created_at=request.created_at,
    )
