"""
FulfillmentTracker -- partial receptions and the post-approval lifecycle.

Responsibility:
    Records goods received against request items and derives the request
    status: the first reception moves APPROVED to IN_PROGRESS, and the
    request is CLOSED once total received reaches total requested.

Architecture position:
    Kernel > Services.  Works inside the caller's UnitOfWork through
    RequestStore.

Invariants enforced:
    - For every item, sum(receptions) <= requested quantity.  The sum is
      recomputed from the database under the request and item row locks
      in every call.
    - APPROVED -> IN_PROGRESS happens exactly once; CLOSED only when
      total received >= total requested.
    - The reception, the optional price backfill and the status
      transitions commit together or not at all.
    - A batch of receptions commits as one: any failing line rolls back
      every line before it.

Failure modes:
    - InvalidStateError: request not APPROVED / IN_PROGRESS.
    - OverReceiptError: reception exceeds the outstanding quantity.
    - ValidationError: non-positive quantity, negative price, or an
      unregistered invoice when registration is required.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from procurement_kernel.domain.clock import Clock, SystemClock
from procurement_kernel.domain.dtos import (
    BatchReceiveResult,
    InvoiceRef,
    ItemProgress,
    ReceiveResult,
    ReceptionLine,
)
from procurement_kernel.domain.invoice_registry import InvoiceRegistry
from procurement_kernel.domain.lifecycle import RECEIVABLE_STATUSES, RequestStatus
from procurement_kernel.exceptions import InvalidStateError, OverReceiptError, ValidationError
from procurement_kernel.logging_config import get_logger
from procurement_kernel.models.audit_event import AuditAction
from procurement_kernel.models.purchase_request import PurchaseRequest, RequestItem
from procurement_kernel.models.reception import ReceptionRecord
from procurement_kernel.services.base import BaseService
from procurement_kernel.services.request_store import (
    ENTITY_TYPE,
    RequestStore,
    require_positive_quantity,
    parse_unit_price,
)

logger = get_logger("services.fulfillment_tracker")


class FulfillmentTracker(BaseService):
    """
    Receives goods against approved requests.

    Does NOT call ``session.commit()``.
    """

    def __init__(
        self,
        session: Session,
        store: RequestStore,
        clock: Clock | None = None,
        invoice_registry: InvoiceRegistry | None = None,
    ):
        super().__init__(session)
        self._store = store
        self._clock = clock or SystemClock()
        self._invoice_registry = invoice_registry

    def _already_received(self, item_id: int) -> int:
        return self.session.execute(
            select(func.coalesce(func.sum(ReceptionRecord.quantity_received), 0))
            .where(ReceptionRecord.item_id == item_id)
        ).scalar_one()

    def _check_invoice(self, invoice: InvoiceRef | None) -> None:
        if invoice is None or not self._store.settings.require_registered_invoice:
            return
        if self._invoice_registry is None or not self._invoice_registry.exists(invoice):
            raise ValidationError(f"Invoice {invoice} is not registered", field="invoice")

    def receive(
        self,
        item_id: int,
        received_by_id: int,
        quantity_received: Any,
        invoice: InvoiceRef | None = None,
        comment: str = "",
        unit_price: Decimal | None = None,
    ) -> ReceiveResult:
        """
        Record a reception on one item and advance the request status.

        Raises:
            ItemNotFoundError: Unknown item.
            InvalidStateError: Request not APPROVED / IN_PROGRESS.
            OverReceiptError: Would exceed the item's requested quantity.
        """
        line = ReceptionLine(item_id, quantity_received, invoice, comment, unit_price)
        batch = self.receive_many([line], received_by_id)
        return ReceiveResult(
            reception_id=batch.reception_ids[0],
            item=batch.items[0],
            request_status=batch.request_status,
            public_code=batch.public_code,
            transitions=batch.transitions,
        )

    def receive_many(
        self, lines: Sequence[ReceptionLine], received_by_id: int,
    ) -> BatchReceiveResult:
        """
        Record receptions on several items of one request, all or nothing.

        The request is locked once.  Lines naming the same item add up, so
        the over-receipt check sees earlier lines of the batch.  The status
        transitions are derived once, after the last line.

        Raises:
            ValidationError: Empty batch, a malformed line, or items from
                more than one request.
            ItemNotFoundError: Unknown item.
            InvalidStateError: Request not APPROVED / IN_PROGRESS.
            OverReceiptError: A line would exceed its item's requested
                quantity.  Nothing from the batch is kept.
        """
        if not lines:
            raise ValidationError("A reception batch needs at least one line", field="receptions")
        parsed = [
            (
                line,
                require_positive_quantity(line.quantity, "quantity_received"),
                parse_unit_price(line.unit_price),
            )
            for line in lines
        ]

        request, items = self._store.get_items_for_update([line.item_id for line in lines])
        status = RequestStatus(request.status)
        if status not in RECEIVABLE_STATUSES:
            raise InvalidStateError(request.public_code, request.status, "receive against")

        now = self._clock.now()
        reception_ids: list[int] = []
        progress: list[ItemProgress] = []
        for line, quantity, price in parsed:
            item = items[line.item_id]
            record, already = self._record(request, item, line, quantity, price, received_by_id, now)
            reception_ids.append(record.id)
            progress.append(
                ItemProgress(
                    item_id=item.id,
                    requested=item.requested_quantity,
                    received=already + quantity,
                )
            )

        transitions: list[RequestStatus] = []
        if status is RequestStatus.APPROVED:
            self._store.transition(
                request,
                RequestStatus.IN_PROGRESS,
                received_by_id,
                {"item_ids": sorted(items)},
            )
            transitions.append(RequestStatus.IN_PROGRESS)

        total_requested = sum(i.requested_quantity for i in request.items)
        total_received = sum(i.received_quantity for i in request.items)
        if total_received >= total_requested:
            request.closed_at = now
            self._store.transition(
                request,
                RequestStatus.CLOSED,
                received_by_id,
                {"total_requested": total_requested, "total_received": total_received},
            )
            transitions.append(RequestStatus.CLOSED)
            logger.info(
                "request_closed",
                extra={
                    "request_code": request.public_code,
                    "total_requested": total_requested,
                    "total_received": total_received,
                },
            )

        return BatchReceiveResult(
            public_code=request.public_code,
            request_status=RequestStatus(request.status),
            reception_ids=tuple(reception_ids),
            items=tuple(progress),
            transitions=tuple(transitions),
        )

    def _record(
        self,
        request: PurchaseRequest,
        item: RequestItem,
        line: ReceptionLine,
        quantity: int,
        price: Decimal | None,
        received_by_id: int,
        now: datetime,
    ) -> tuple[ReceptionRecord, int]:
        already = self._already_received(item.id)
        if already + quantity > item.requested_quantity:
            raise OverReceiptError(item.id, item.requested_quantity, already, quantity)
        invoice = line.invoice
        self._check_invoice(invoice)

        record = ReceptionRecord(
            quantity_received=quantity,
            received_at=now,
            received_by_id=received_by_id,
            invoice_prefix=(invoice.prefix or None) if invoice else None,
            invoice_number=invoice.number if invoice else None,
            unit_price=price,
            comment=(line.comment or "").strip().upper(),
        )
        item.receptions.append(record)

        # First-reception pricing: only fills a price that was never set.
        price_backfilled = item.unit_price is None and price is not None and price > 0
        if price_backfilled:
            item.unit_price = price
            request.recompute_total_value()
        self.session.flush()

        self._store.auditor.record(
            ENTITY_TYPE,
            request.public_code,
            AuditAction.RECEPTION_RECORDED,
            received_by_id,
            {
                "item_id": item.id,
                "reception_id": record.id,
                "quantity_received": quantity,
                "invoice": str(invoice) if invoice else None,
                "price_backfilled": price_backfilled,
            },
        )
        logger.info(
            "reception_recorded",
            extra={
                "request_code": request.public_code,
                "item_id": item.id,
                "quantity_received": quantity,
                "item_received_total": already + quantity,
                "item_requested": item.requested_quantity,
            },
        )
        return record, already
