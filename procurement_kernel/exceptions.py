"""
Typed Exception Hierarchy for the Procurement Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the lifecycle engine (HTTP handlers, batch jobs, tests) must be
able to react to a failure without parsing its message:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)
  4. Every exception has a STATUS_CODE (HTTP-like class) and a
     USER_MESSAGE (human-readable text shown at the facade boundary)

Example - WRONG way to handle errors:
    try:
        facade.decide(principal, code, "approve")
    except Exception as e:
        if "turn" in str(e):  # FRAGILE - message might change
            ...

Example - RIGHT way:
    try:
        facade.decide(principal, code, "approve")
    except OutOfOrderDecisionError as e:
        respond(e.status_code, e.user_message, blocking_level=e.blocking_level)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from ProcurementKernelError:

    ProcurementKernelError (base)
    |
    +-- ValidationError
    |   +-- DuplicateItemError
    |
    +-- AuthorizationError
    |
    +-- NotFoundError
    |   +-- RequestNotFoundError
    |   +-- ItemNotFoundError
    |
    +-- ApprovalError
    |   +-- NoPendingApprovalError
    |   +-- OutOfOrderDecisionError
    |
    +-- FulfillmentError
    |   +-- OverReceiptError
    |
    +-- InvalidStateError
    |   +-- InvalidTransitionError
    |
    +-- ConcurrencyConflictError
    |
    +-- ImmutabilityViolationError
    |
    +-- AuditChainBrokenError
    |
    +-- InternalError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category      | Code                   | Status | When Raised
--------------|------------------------|--------|------------------------------
Validation    | VALIDATION_ERROR       | 400    | Malformed input, no approvers
              | DUPLICATE_ITEM         | 409    | Same item requested recently
--------------|------------------------|--------|------------------------------
Authorization | NOT_AUTHORIZED         | 403    | Role/scope does not allow it
--------------|------------------------|--------|------------------------------
Not found     | REQUEST_NOT_FOUND      | 404    | Unknown public code / id
              | ITEM_NOT_FOUND         | 404    | Unknown request item
--------------|------------------------|--------|------------------------------
Approval      | NO_PENDING_APPROVAL    | 409    | No standing to decide
              | OUT_OF_ORDER_DECISION  | 409    | Lower level still pending
--------------|------------------------|--------|------------------------------
Fulfillment   | OVER_RECEIPT           | 409    | Reception exceeds outstanding
--------------|------------------------|--------|------------------------------
State         | INVALID_STATE          | 409    | Wrong request status for op
              | INVALID_TRANSITION     | 409    | Transition not in state machine
--------------|------------------------|--------|------------------------------
Concurrency   | CONCURRENCY_CONFLICT   | 409    | Competing writer; retry all
--------------|------------------------|--------|------------------------------
Immutability  | IMMUTABILITY_VIOLATION | 409    | Reception/audit row modified
--------------|------------------------|--------|------------------------------
Audit         | AUDIT_CHAIN_BROKEN     | 500    | Hash chain validation failed
--------------|------------------------|--------|------------------------------
Internal      | INTERNAL_ERROR         | 500    | Unexpected database failure

===============================================================================
DESIGN DECISIONS
===============================================================================

1. WHY INHERIT FROM Exception (not ValueError, etc.)?
   Domain exceptions should be catchable as a group. Inheriting from
   built-in types mixes domain errors with programming errors.

2. WHY code/status_code/user_message CLASS ATTRIBUTES?
   They are static per exception type, readable without instantiation,
   and let the facade map any error to a response without a lookup table.

3. WHY STORE ALL CONTEXT AS ATTRIBUTES?
   Exceptions are logged as structured JSON (exc_* fields). Structured
   attributes survive; parsed message strings don't.

===============================================================================
"""


class ProcurementKernelError(Exception):
    """
    Base exception for all procurement kernel errors.

    All subclasses carry a ``code`` class attribute for machine-readable
    identification, a ``status_code`` and a ``user_message``.
    """

    code: str = "PROCUREMENT_KERNEL_ERROR"
    status_code: int = 500
    user_message: str = "the operation could not be completed"
    retryable: bool = False


# Validation


class ValidationError(ProcurementKernelError):
    """Malformed input, rejected before any transaction opens."""

    code: str = "VALIDATION_ERROR"
    status_code: int = 400
    user_message: str = "the request contains invalid data"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class DuplicateItemError(ValidationError):
    """An item was already requested by the same requester recently."""

    code: str = "DUPLICATE_ITEM"
    status_code: int = 409
    user_message: str = "this item was already requested recently"

    def __init__(self, description: str, existing_code: str, window_days: int):
        self.description = description
        self.existing_code = existing_code
        self.window_days = window_days
        super().__init__(
            f"Item '{description}' already requested in {existing_code} "
            f"within the last {window_days} days",
            field="items",
        )


# Authorization


class AuthorizationError(ProcurementKernelError):
    """The principal's role or scope does not allow the operation."""

    code: str = "NOT_AUTHORIZED"
    status_code: int = 403
    user_message: str = "you are not allowed to perform this action"

    def __init__(self, actor_id: int, operation: str, reason: str):
        self.actor_id = actor_id
        self.operation = operation
        self.reason = reason
        super().__init__(f"User {actor_id} may not {operation}: {reason}")


# Not found


class NotFoundError(ProcurementKernelError):
    """Base exception for missing entities."""

    code: str = "NOT_FOUND"
    status_code: int = 404
    user_message: str = "the referenced record does not exist"


class RequestNotFoundError(NotFoundError):
    """Purchase request with given public code or id was not found."""

    code: str = "REQUEST_NOT_FOUND"
    user_message: str = "purchase request not found"

    def __init__(self, reference: str | int):
        self.reference = str(reference)
        super().__init__(f"Purchase request not found: {reference}")


class ItemNotFoundError(NotFoundError):
    """Request item with given id was not found."""

    code: str = "ITEM_NOT_FOUND"
    user_message: str = "request item not found"

    def __init__(self, item_id: int):
        self.item_id = item_id
        super().__init__(f"Request item not found: {item_id}")


# Approval cascade


class ApprovalError(ProcurementKernelError):
    """Base exception for approval cascade errors."""

    code: str = "APPROVAL_ERROR"
    status_code: int = 409


class NoPendingApprovalError(ApprovalError):
    """
    The approver holds no pending step on the request.

    Raised when the step was already decided, the approver was never
    designated, or the request is not awaiting approval.
    """

    code: str = "NO_PENDING_APPROVAL"
    user_message: str = "you have no pending approval on this request"

    def __init__(self, request_code: str, approver_id: int, request_status: str):
        self.request_code = request_code
        self.approver_id = approver_id
        self.request_status = request_status
        super().__init__(
            f"No pending approval for user {approver_id} on {request_code} "
            f"(status {request_status})"
        )


class OutOfOrderDecisionError(ApprovalError):
    """A strictly lower approval level still has pending steps."""

    code: str = "OUT_OF_ORDER_DECISION"
    user_message: str = "not your turn to approve"

    def __init__(self, request_code: str, approver_id: int, level: int, blocking_level: int):
        self.request_code = request_code
        self.approver_id = approver_id
        self.level = level
        self.blocking_level = blocking_level
        super().__init__(
            f"User {approver_id} at level {level} cannot decide {request_code}: "
            f"level {blocking_level} is still pending"
        )


# Fulfillment


class FulfillmentError(ProcurementKernelError):
    """Base exception for reception errors."""

    code: str = "FULFILLMENT_ERROR"
    status_code: int = 409


class OverReceiptError(FulfillmentError):
    """Reception would exceed the item's outstanding quantity."""

    code: str = "OVER_RECEIPT"
    user_message: str = "received quantity exceeds pending amount"

    def __init__(self, item_id: int, requested: int, already_received: int, attempted: int):
        self.item_id = item_id
        self.requested = requested
        self.already_received = already_received
        self.attempted = attempted
        super().__init__(
            f"Receiving {attempted} on item {item_id} exceeds outstanding "
            f"quantity {requested - already_received} "
            f"(requested {requested}, received {already_received})"
        )


# State machine


class InvalidStateError(ProcurementKernelError):
    """Operation attempted against a request in an incompatible status."""

    code: str = "INVALID_STATE"
    status_code: int = 409
    user_message: str = "the request is not in a state that allows this action"

    def __init__(self, request_code: str, status: str, operation: str):
        self.request_code = request_code
        self.status = status
        self.operation = operation
        super().__init__(
            f"Cannot {operation} request {request_code} in status {status}"
        )


class InvalidTransitionError(InvalidStateError):
    """A status transition that the lifecycle state machine does not allow."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, request_code: str, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(request_code, from_status, f"transition to {to_status}")


# Concurrency


class ConcurrencyConflictError(ProcurementKernelError):
    """
    The database aborted the transaction because of a competing writer.

    Nothing was applied; retrying the whole operation is safe.
    """

    code: str = "CONCURRENCY_CONFLICT"
    status_code: int = 409
    user_message: str = "another user changed this request at the same time, please retry"
    retryable: bool = True

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"Concurrent update conflict during {operation}: {detail}")


# Immutability


class ImmutabilityViolationError(ProcurementKernelError):
    """Attempted to modify or delete an immutable record."""

    code: str = "IMMUTABILITY_VIOLATION"
    status_code: int = 409
    user_message: str = "this record can no longer be modified"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Audit


class AuditChainBrokenError(ProcurementKernelError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"
    status_code: int = 500
    user_message: str = "audit trail integrity check failed"

    def __init__(self, audit_event_id: str, expected_hash: str, actual_hash: str):
        self.audit_event_id = audit_event_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at {audit_event_id}: "
            f"expected {expected_hash}, found {actual_hash}"
        )


# Internal


class InternalError(ProcurementKernelError):
    """Unexpected database failure; details are logged, not shown."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    user_message: str = "an internal error occurred"

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"Internal error during {operation}: {detail}")
