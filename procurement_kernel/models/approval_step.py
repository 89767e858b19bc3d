"""
Module: procurement_kernel.models.approval_step
Responsibility: ORM persistence for the approval chain of a request.
Architecture position: Kernel > Models.

Invariants enforced:
    - level >= 1; status and termination_reason are from closed sets.
    - A step leaves ``pending`` exactly once: once decided or terminated,
      its status can no longer change (ORM listener).
    - A user holds at most one step per request.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    inspect,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from procurement_kernel.db.base import IdType, TrackedBase
from procurement_kernel.domain.lifecycle import StepStatus, TerminationReason
from procurement_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from procurement_kernel.models.purchase_request import PurchaseRequest


class ApprovalStep(TrackedBase):
    """One approver's slot at one level of a request's approval chain."""

    __tablename__ = "approval_steps"

    __table_args__ = (
        CheckConstraint("level >= 1", name="ck_approval_steps_level"),
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'terminated')",
            name="ck_approval_steps_valid_status",
        ),
        CheckConstraint(
            "(status = 'terminated') = (termination_reason IS NOT NULL)",
            name="ck_approval_steps_termination_reason",
        ),
        UniqueConstraint("request_id", "approver_id", name="uq_approval_steps_request_approver"),
        Index("ix_approval_steps_approver_status", "approver_id", "status"),
        Index("ix_approval_steps_request_level", "request_id", "level"),
    )

    request_id: Mapped[int] = mapped_column(
        IdType, ForeignKey("purchase_requests.id"), nullable=False,
    )
    approver_id: Mapped[int] = mapped_column(IdType, nullable=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    termination_reason: Mapped[str | None] = mapped_column(String(30), nullable=True)
    comment: Mapped[str] = mapped_column(Text, nullable=False, default="")
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    decided_by_id: Mapped[int | None] = mapped_column(IdType, nullable=True)

    request: Mapped[PurchaseRequest] = relationship(
        "PurchaseRequest", back_populates="approval_steps",
    )

    def __repr__(self) -> str:
        return (
            f"<ApprovalStep request={self.request_id} approver={self.approver_id} "
            f"level={self.level} status={self.status}>"
        )

    @property
    def is_pending(self) -> bool:
        return self.status == StepStatus.PENDING.value

    @property
    def display_status(self) -> str:
        if self.termination_reason is not None:
            return TerminationReason(self.termination_reason).label
        return self.status


@event.listens_for(ApprovalStep, "before_update")
def prevent_resolved_step_update(mapper, connection, target):
    """A step that has left pending is final."""
    history = inspect(target).attrs.status.history
    if not history.deleted:
        return
    previous = history.deleted[0]
    if previous != StepStatus.PENDING.value:
        raise ImmutabilityViolationError(
            entity_type="ApprovalStep",
            entity_id=str(target.id),
            reason=f"Step already {previous} -- cannot change to {target.status}",
        )
