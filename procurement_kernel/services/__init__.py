"""Kernel services.  Each one flushes inside the caller's UnitOfWork."""

from procurement_kernel.services.approval_engine import ApprovalCascadeEngine
from procurement_kernel.services.auditor_service import AuditorService
from procurement_kernel.services.fulfillment_tracker import FulfillmentTracker
from procurement_kernel.services.request_store import RequestStore
from procurement_kernel.services.sequence_service import SequenceService

__all__ = [
    "ApprovalCascadeEngine",
    "AuditorService",
    "FulfillmentTracker",
    "RequestStore",
    "SequenceService",
]
