"""
Module: procurement_kernel.models.reception
Responsibility: ORM persistence for goods receptions against request items.
Architecture position: Kernel > Models.

Invariants enforced:
    - quantity_received > 0 (check constraint).
    - Reception records are append-only: UPDATE and DELETE are refused.
    - The per-item sum never exceeds the requested quantity; enforced by
      FulfillmentTracker under a lock on the item row.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import (
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

from procurement_kernel.db.base import Base, IdType
from procurement_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from procurement_kernel.models.purchase_request import RequestItem


class ReceptionRecord(Base):
    """A quantity of one item received on a given date."""

    __tablename__ = "reception_records"

    __table_args__ = (
        CheckConstraint("quantity_received > 0", name="ck_reception_records_positive_quantity"),
        Index("ix_reception_records_item", "item_id"),
        Index("ix_reception_records_invoice", "invoice_prefix", "invoice_number"),
    )

    item_id: Mapped[int] = mapped_column(
        IdType, ForeignKey("request_items.id"), nullable=False,
    )
    quantity_received: Mapped[int] = mapped_column(Integer, nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    received_by_id: Mapped[int] = mapped_column(IdType, nullable=False)
    invoice_prefix: Mapped[str | None] = mapped_column(String(20), nullable=True)
    invoice_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    unit_price: Mapped[Decimal | None] = mapped_column(Numeric(18, 4), nullable=True)
    comment: Mapped[str] = mapped_column(Text, nullable=False, default="")

    item: Mapped[RequestItem] = relationship("RequestItem", back_populates="receptions")

    def __repr__(self) -> str:
        return f"<ReceptionRecord item={self.item_id} qty={self.quantity_received}>"


@event.listens_for(ReceptionRecord, "before_update")
def prevent_reception_update(mapper, connection, target):
    """Prevent updates to reception records."""
    raise ImmutabilityViolationError(
        entity_type="ReceptionRecord",
        entity_id=str(target.id),
        reason="Reception records are immutable -- cannot modify",
    )


@event.listens_for(ReceptionRecord, "before_delete")
def prevent_reception_delete(mapper, connection, target):
    """Prevent deletion of reception records."""
    raise ImmutabilityViolationError(
        entity_type="ReceptionRecord",
        entity_id=str(target.id),
        reason="Reception records are immutable -- cannot delete",
    )
