"""ORM models for the procurement kernel."""

from procurement_kernel.models.approval_step import ApprovalStep
from procurement_kernel.models.audit_event import AuditAction, AuditEvent
from procurement_kernel.models.purchase_request import PurchaseRequest, RequestItem
from procurement_kernel.models.reception import ReceptionRecord
from procurement_kernel.models.sequence_counter import SequenceCounter

__all__ = [
    "ApprovalStep",
    "AuditAction",
    "AuditEvent",
    "PurchaseRequest",
    "ReceptionRecord",
    "RequestItem",
    "SequenceCounter",
    "import_all_models",
]


def import_all_models() -> tuple[type, ...]:
    """Return every mapped class; importing this package registers them on Base.metadata."""
    return (
        ApprovalStep,
        AuditEvent,
        PurchaseRequest,
        ReceptionRecord,
        RequestItem,
        SequenceCounter,
    )
