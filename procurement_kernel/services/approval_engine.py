"""
ApprovalCascadeEngine -- ordered, multi-level approval of purchase requests.

Responsibility:
    Creates the approval chain when a request is submitted and resolves
    each decision: sequential level enforcement, "first decision wins"
    among peers at one level, rejection cascade, and administrator
    override.

Architecture position:
    Kernel > Services.  Works inside the caller's UnitOfWork through
    RequestStore.  The approval policy (who approves, at which level) is
    an injected collaborator.

Invariants enforced:
    - A step leaves ``pending`` exactly once.
    - No step may be decided while a strictly lower level still has a
      pending step.  Re-checked on freshly locked rows in every call.
    - Approving terminalizes the remaining pending peers at the same
      level (``peer_approved``); rejecting terminalizes every other
      pending step (``rejection_cascade``).
    - A requester who appears in the chain approves their own step at
      submit, and the other pending steps at that level are terminalized
      as ``peer_approved``.
    - The request becomes APPROVED only when no step is pending.

Concurrency:
    The request row and then its steps are read with SELECT ... FOR
    UPDATE.  A peer whose transaction waited on the lock re-reads its
    step after the winner commits, finds it terminated, and fails with
    NoPendingApprovalError.  There is no application-level mutex.

Failure modes:
    - NoPendingApprovalError: the actor holds no pending step, or the
      request is not awaiting approval.
    - OutOfOrderDecisionError: a lower level is still pending.
    - ValidationError: empty approval chain, or a rejection without comment.
    All are raised before any mutation; the UnitOfWork rolls back.
"""

from datetime import datetime
from typing import Sequence

from sqlalchemy.orm import Session

from procurement_kernel.domain.approval_policy import ApprovalPolicy
from procurement_kernel.domain.clock import Clock, SystemClock
from procurement_kernel.domain.dtos import DecisionAction, DecisionResult, PlannedStep
from procurement_kernel.domain.lifecycle import (
    ADMIN_OVERRIDE_COMMENT,
    PEER_APPROVED_COMMENT,
    REJECTION_CASCADE_COMMENT,
    SELF_AUTHORIZED_COMMENT,
    RequestStatus,
    StepStatus,
    TerminationReason,
)
from procurement_kernel.domain.principal import Capability, Principal, has_capability
from procurement_kernel.exceptions import (
    InvalidStateError,
    NoPendingApprovalError,
    OutOfOrderDecisionError,
    ValidationError,
)
from procurement_kernel.logging_config import get_logger
from procurement_kernel.models.approval_step import ApprovalStep
from procurement_kernel.models.audit_event import AuditAction
from procurement_kernel.models.purchase_request import PurchaseRequest
from procurement_kernel.services.base import BaseService
from procurement_kernel.services.request_store import ENTITY_TYPE, RequestStore

logger = get_logger("services.approval_engine")

STEP_ENTITY_TYPE = "ApprovalStep"

_TERMINATION_COMMENTS: dict[TerminationReason, str] = {
    TerminationReason.PEER_APPROVED: PEER_APPROVED_COMMENT,
    TerminationReason.REJECTION_CASCADE: REJECTION_CASCADE_COMMENT,
    TerminationReason.ADMIN_OVERRIDE: ADMIN_OVERRIDE_COMMENT,
}


class ApprovalCascadeEngine(BaseService):
    """
    Drives a request from DRAFT through PENDING_APPROVAL to APPROVED or
    REJECTED.

    Does NOT call ``session.commit()``.
    """

    def __init__(
        self,
        session: Session,
        store: RequestStore,
        policy: ApprovalPolicy,
        clock: Clock | None = None,
    ):
        super().__init__(session)
        self._store = store
        self._policy = policy
        self._clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(
        self,
        request: PurchaseRequest,
        requester: Principal,
        actor_id: int | None = None,
    ) -> list[ApprovalStep]:
        """
        Create the approval chain and move the request to PENDING_APPROVAL.

        The chain is planned for ``requester``; ``actor_id`` (default the
        requester) is recorded as the submitter.

        Preconditions:
            ``request`` was loaded under lock in the current unit of work.

        Raises:
            InvalidStateError: The request is not a DRAFT.
            ValidationError: No items, or no approver other than the
                requester.
        """
        if RequestStatus(request.status) is not RequestStatus.DRAFT:
            raise InvalidStateError(request.public_code, request.status, "submit")
        if not request.items:
            raise ValidationError("A request needs at least one item", field="items")

        plan = self._normalize_plan(self._policy.plan(requester), request.requester_id)
        self_authorized_levels = {p.level for p in plan if p.pre_approved}
        if not any(not p.pre_approved and p.level not in self_authorized_levels for p in plan):
            raise ValidationError(
                "No approver other than the requester is configured", field="approvers",
            )

        actor = requester.user_id if actor_id is None else actor_id
        now = self._clock.now()
        steps: list[ApprovalStep] = []
        for planned in plan:
            step = ApprovalStep(
                approver_id=planned.approver_id,
                level=planned.level,
                status=StepStatus.PENDING.value,
            )
            if planned.pre_approved:
                step.status = StepStatus.APPROVED.value
                step.comment = SELF_AUTHORIZED_COMMENT
                step.decided_at = now
                step.decided_by_id = planned.approver_id
            request.approval_steps.append(step)
            steps.append(step)

        request.submitted_at = now
        self.session.flush()

        for step in steps:
            if step.status == StepStatus.APPROVED.value:
                self._audit_step(step, AuditAction.STEP_APPROVED, actor, self_authorized=True)

        # A self-authorized step already decides its level for the peers.
        peers = [s for s in steps if s.is_pending and s.level in self_authorized_levels]
        self._terminate(peers, TerminationReason.PEER_APPROVED, requester, now)

        self._store.transition(
            request,
            RequestStatus.PENDING_APPROVAL,
            actor,
            {
                "step_count": len(steps),
                "levels": sorted({s.level for s in steps}),
            },
        )
        logger.info(
            "request_submitted",
            extra={
                "request_code": request.public_code,
                "step_count": len(steps),
                "first_level": request.current_level,
            },
        )
        return steps

    @staticmethod
    def _normalize_plan(plan: Sequence[PlannedStep], requester_id: int) -> list[PlannedStep]:
        """
        One step per approver, lowest level wins.

        Any step held by the requester becomes a pre-approved self step;
        a requester can never block or complete their own chain.
        """
        seen: set[int] = set()
        result: list[PlannedStep] = []
        for planned in sorted(plan, key=lambda p: p.level):
            if planned.level < 1:
                raise ValidationError(
                    f"Approval level must be >= 1, got {planned.level}", field="approvers",
                )
            if planned.approver_id in seen:
                continue
            seen.add(planned.approver_id)
            if planned.approver_id == requester_id and not planned.pre_approved:
                planned = PlannedStep(planned.approver_id, planned.level, pre_approved=True)
            result.append(planned)
        return result

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def decide(
        self,
        public_code: str,
        actor: Principal,
        action: DecisionAction | str,
        comment: str = "",
    ) -> DecisionResult:
        """
        Record an approve/reject decision by ``actor``.

        Principals with the OVERRIDE capability take the override path.

        Raises:
            ValidationError: Rejection without a comment.
            NoPendingApprovalError: No pending step for the actor.
            OutOfOrderDecisionError: A lower level is still pending.
        """
        action = DecisionAction.parse(action)
        comment = (comment or "").strip()
        if action is DecisionAction.REJECT and not comment:
            raise ValidationError("A rejection requires a comment", field="comment")

        request = self._store.get_by_code(public_code, for_update=True)
        steps = self._store.lock_steps(request)

        if RequestStatus(request.status) is not RequestStatus.PENDING_APPROVAL:
            raise NoPendingApprovalError(request.public_code, actor.user_id, request.status)

        if has_capability(actor, Capability.OVERRIDE):
            return self._override(request, steps, actor, action, comment)

        mine = next(
            (s for s in steps if s.approver_id == actor.user_id and s.is_pending), None,
        )
        if mine is None:
            raise NoPendingApprovalError(request.public_code, actor.user_id, request.status)

        blocking = [s.level for s in steps if s.is_pending and s.level < mine.level]
        if blocking:
            raise OutOfOrderDecisionError(
                request.public_code, actor.user_id, mine.level, min(blocking),
            )

        now = self._clock.now()
        if action is DecisionAction.REJECT:
            terminated = self._reject(request, steps, mine, actor, comment, now)
        else:
            terminated = self._approve(request, steps, mine, actor, comment, now)

        return DecisionResult(
            public_code=request.public_code,
            status=RequestStatus(request.status),
            action=action,
            terminated_step_ids=tuple(s.id for s in terminated),
        )

    def _resolve_step(
        self,
        step: ApprovalStep,
        status: StepStatus,
        actor: Principal,
        comment: str,
        now: datetime,
    ) -> None:
        step.status = status.value
        step.comment = comment
        step.decided_at = now
        step.decided_by_id = actor.user_id

    def _approve(
        self,
        request: PurchaseRequest,
        steps: list[ApprovalStep],
        mine: ApprovalStep,
        actor: Principal,
        comment: str,
        now: datetime,
    ) -> list[ApprovalStep]:
        self._resolve_step(mine, StepStatus.APPROVED, actor, comment, now)
        peers = [s for s in steps if s.is_pending and s.level == mine.level]
        self.session.flush()
        self._audit_step(mine, AuditAction.STEP_APPROVED, actor.user_id)

        terminated = self._terminate(peers, TerminationReason.PEER_APPROVED, actor, now)
        logger.info(
            "approval_step_decided",
            extra={
                "request_code": request.public_code,
                "level": mine.level,
                "decision": DecisionAction.APPROVE.value,
                "peers_skipped": len(terminated),
            },
        )

        if any(s.is_pending for s in steps):
            logger.info(
                "approval_level_advanced",
                extra={
                    "request_code": request.public_code,
                    "next_level": request.current_level,
                },
            )
        else:
            self._mark_approved(request, actor, now)
        return terminated

    def _reject(
        self,
        request: PurchaseRequest,
        steps: list[ApprovalStep],
        mine: ApprovalStep,
        actor: Principal,
        comment: str,
        now: datetime,
    ) -> list[ApprovalStep]:
        self._resolve_step(mine, StepStatus.REJECTED, actor, comment, now)
        others = [s for s in steps if s.is_pending]
        request.rejection_comment = comment
        self.session.flush()
        self._audit_step(mine, AuditAction.STEP_REJECTED, actor.user_id)

        terminated = self._terminate(others, TerminationReason.REJECTION_CASCADE, actor, now)
        self._store.transition(
            request,
            RequestStatus.REJECTED,
            actor.user_id,
            {"level": mine.level, "comment": comment, "cancelled_steps": len(terminated)},
        )
        logger.info(
            "request_rejected",
            extra={
                "request_code": request.public_code,
                "level": mine.level,
                "steps_cancelled": len(terminated),
            },
        )
        return terminated

    def _override(
        self,
        request: PurchaseRequest,
        steps: list[ApprovalStep],
        admin: Principal,
        action: DecisionAction,
        comment: str,
    ) -> DecisionResult:
        """
        Administrator decision regardless of level or order.

        The administrator's own pending step (if any) is resolved with the
        decision; every other pending step is terminated as
        ``admin_override``.
        """
        now = self._clock.now()
        own = next((s for s in steps if s.approver_id == admin.user_id and s.is_pending), None)
        if own is not None:
            decided = StepStatus.APPROVED if action is DecisionAction.APPROVE else StepStatus.REJECTED
            self._resolve_step(own, decided, admin, comment, now)
            self.session.flush()
            self._audit_step(
                own,
                AuditAction.STEP_APPROVED if decided is StepStatus.APPROVED else AuditAction.STEP_REJECTED,
                admin.user_id,
            )

        others = [s for s in steps if s.is_pending]
        terminated = self._terminate(others, TerminationReason.ADMIN_OVERRIDE, admin, now)

        self._store.auditor.record(
            ENTITY_TYPE,
            request.public_code,
            AuditAction.ADMIN_OVERRIDE,
            admin.user_id,
            {
                "action": action.value,
                "comment": comment,
                "terminated_step_ids": [s.id for s in terminated],
            },
        )

        if action is DecisionAction.APPROVE:
            if comment:
                request.admin_comment = comment
            self._mark_approved(request, admin, now)
        else:
            request.rejection_comment = comment
            self._store.transition(
                request,
                RequestStatus.REJECTED,
                admin.user_id,
                {"comment": comment, "override": True},
            )

        logger.warning(
            "admin_override_applied",
            extra={
                "request_code": request.public_code,
                "decision": action.value,
                "steps_cancelled": len(terminated),
            },
        )
        return DecisionResult(
            public_code=request.public_code,
            status=RequestStatus(request.status),
            action=action,
            override=True,
            terminated_step_ids=tuple(s.id for s in terminated),
        )

    def _mark_approved(self, request: PurchaseRequest, actor: Principal, now: datetime) -> None:
        request.approved_by_id = actor.user_id
        request.approved_at = now
        self._store.transition(request, RequestStatus.APPROVED, actor.user_id)
        logger.info(
            "request_approved",
            extra={"request_code": request.public_code, "approved_by_id": actor.user_id},
        )

    def _terminate(
        self,
        steps: list[ApprovalStep],
        reason: TerminationReason,
        actor: Principal,
        now: datetime,
    ) -> list[ApprovalStep]:
        terminated = [s for s in steps if s.is_pending]
        for step in terminated:
            step.status = StepStatus.TERMINATED.value
            step.termination_reason = reason.value
            step.comment = _TERMINATION_COMMENTS[reason]
            step.decided_at = now
            step.decided_by_id = actor.user_id
        self.session.flush()
        for step in terminated:
            self._audit_step(
                step,
                AuditAction.STEP_TERMINATED,
                actor.user_id,
                reason=reason.value,
                label=reason.label,
            )
        return terminated

    def _audit_step(self, step: ApprovalStep, action: AuditAction, actor_id: int, **extra) -> None:
        self._store.auditor.record(
            STEP_ENTITY_TYPE,
            step.id,
            action,
            actor_id,
            {
                "request_id": step.request_id,
                "approver_id": step.approver_id,
                "level": step.level,
                "status": step.status,
                **extra,
            },
        )
