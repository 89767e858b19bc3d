"""
Module: procurement_kernel.models.purchase_request
Responsibility: ORM persistence for purchase requests and their line items.
Architecture position: Kernel > Models.  May import from db/base.py,
    domain/ value types and exceptions only.

Invariants enforced:
    - status is one of the lifecycle states (check constraint); transitions
      are validated by the engines via domain.lifecycle.
    - requested_quantity > 0 and unit_price >= 0 (check constraints).
    - public_code is unique.
    - Requests are never hard-deleted: the ORM refuses DELETE.

Audit relevance:
    Every status change is recorded by AuditorService in the same
    transaction as the change itself.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from procurement_kernel.db.base import IdType, TrackedBase
from procurement_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from procurement_kernel.models.approval_step import ApprovalStep
    from procurement_kernel.models.reception import ReceptionRecord


class PurchaseRequest(TrackedBase):
    """
    A purchase request.

    Owns its items and approval steps.  ``created_at`` is always supplied
    from the injected clock so the duplicate-item window is deterministic.
    """

    __tablename__ = "purchase_requests"

    __table_args__ = (
        CheckConstraint(
            "status IN ('DRAFT', 'PENDING_APPROVAL', 'APPROVED', 'REJECTED', "
            "'IN_PROGRESS', 'CLOSED')",
            name="ck_purchase_requests_valid_status",
        ),
        CheckConstraint("total_value >= 0", name="ck_purchase_requests_total_value"),
        Index("ix_purchase_requests_requester_created", "requester_id", "created_at"),
        Index("ix_purchase_requests_dependency_status", "dependency_id", "status"),
    )

    public_code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    request_type: Mapped[str] = mapped_column(String(30), nullable=False, default="PURCHASE")
    requester_id: Mapped[int] = mapped_column(IdType, nullable=False)
    provider_id: Mapped[int] = mapped_column(IdType, nullable=False)
    dependency_id: Mapped[int | None] = mapped_column(IdType, nullable=True)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="DRAFT")
    is_urgent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    admin_comment: Mapped[str] = mapped_column(Text, nullable=False, default="")
    rejection_comment: Mapped[str] = mapped_column(Text, nullable=False, default="")
    total_value: Mapped[Decimal] = mapped_column(
        Numeric(18, 4), nullable=False, default=Decimal("0"),
    )
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_by_id: Mapped[int | None] = mapped_column(IdType, nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    items: Mapped[list[RequestItem]] = relationship(
        "RequestItem",
        back_populates="request",
        order_by="RequestItem.id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    approval_steps: Mapped[list[ApprovalStep]] = relationship(
        "ApprovalStep",
        back_populates="request",
        order_by="[ApprovalStep.level, ApprovalStep.id]",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<PurchaseRequest {self.public_code} status={self.status}>"

    @property
    def pending_steps(self) -> list[ApprovalStep]:
        return [step for step in self.approval_steps if step.status == "pending"]

    @property
    def current_level(self) -> int | None:
        """Lowest level that still has a pending step, or None."""
        levels = [step.level for step in self.pending_steps]
        return min(levels) if levels else None

    @property
    def current_approver_ids(self) -> frozenset[int]:
        """Approvers entitled to act right now."""
        level = self.current_level
        return frozenset(
            step.approver_id for step in self.pending_steps if step.level == level
        )

    def recompute_total_value(self) -> Decimal:
        self.total_value = sum(
            (item.line_total for item in self.items), Decimal("0")
        )
        return self.total_value


class RequestItem(TrackedBase):
    """One line of a purchase request."""

    __tablename__ = "request_items"

    __table_args__ = (
        CheckConstraint("requested_quantity > 0", name="ck_request_items_positive_quantity"),
        CheckConstraint(
            "unit_price IS NULL OR unit_price >= 0",
            name="ck_request_items_unit_price",
        ),
        Index("ix_request_items_request", "request_id"),
    )

    request_id: Mapped[int] = mapped_column(
        IdType, ForeignKey("purchase_requests.id"), nullable=False,
    )
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    specification: Mapped[str] = mapped_column(Text, nullable=False, default="")
    requested_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal | None] = mapped_column(Numeric(18, 4), nullable=True)
    priority: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    observations: Mapped[str] = mapped_column(Text, nullable=False, default="")
    admin_comment: Mapped[str] = mapped_column(Text, nullable=False, default="")

    request: Mapped[PurchaseRequest] = relationship("PurchaseRequest", back_populates="items")
    receptions: Mapped[list[ReceptionRecord]] = relationship(
        "ReceptionRecord",
        back_populates="item",
        order_by="ReceptionRecord.id",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<RequestItem {self.id} qty={self.requested_quantity}>"

    @property
    def line_total(self) -> Decimal:
        if self.unit_price is None:
            return Decimal("0")
        return self.unit_price * self.requested_quantity

    @property
    def received_quantity(self) -> int:
        return sum(r.quantity_received for r in self.receptions)


@event.listens_for(PurchaseRequest, "before_delete")
def prevent_request_delete(mapper, connection, target):
    """Requests are retained for audit, whatever their status."""
    raise ImmutabilityViolationError(
        entity_type="PurchaseRequest",
        entity_id=str(target.public_code),
        reason="Purchase requests are never deleted",
    )
