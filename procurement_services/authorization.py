"""
procurement_services.authorization -- role and scope gating at the facade boundary.

Responsibility:
    Decide whether a principal may perform an operation, from the role's
    capabilities and, for approvers, the dependencies they are assigned
    to.  Each check returns ``(allowed, reason)``; ``require`` turns a
    denial into ``AuthorizationError``.

Architecture position:
    Services layer.  Called by WorkflowFacade before delegating to the
    kernel engines.  The kernel itself never checks roles except for the
    administrator override path.

Invariants:
    - Identity is always the explicit Principal argument; nothing is
      looked up from ambient state.
    - Role comparisons go through ``has_capability``; no string matching.
"""

from __future__ import annotations

from procurement_kernel.domain.lifecycle import RequestStatus
from procurement_kernel.domain.principal import Capability, Principal, Role, has_capability
from procurement_kernel.exceptions import AuthorizationError
from procurement_kernel.models.purchase_request import PurchaseRequest

OPERATION_CAPABILITIES: dict[str, Capability] = {
    "create_draft": Capability.CREATE,
    "submit": Capability.CREATE,
    "submit_draft": Capability.CREATE,
    "decide": Capability.DECIDE,
    "pending_approvals": Capability.DECIDE,
    "receive": Capability.RECEIVE,
    "receive_many": Capability.RECEIVE,
}

Check = tuple[bool, str]


def check_capability(principal: Principal, operation: str) -> Check:
    """Return whether the principal's role grants the operation's capability."""
    capability = OPERATION_CAPABILITIES[operation]
    if has_capability(principal, capability):
        return (True, "")
    return (False, f"role {principal.role.value} lacks capability {capability.value}")


def _holds_step(principal: Principal, request: PurchaseRequest) -> bool:
    return any(step.approver_id == principal.user_id for step in request.approval_steps)


def can_view(principal: Principal, request: PurchaseRequest) -> Check:
    if has_capability(principal, Capability.VIEW_ALL):
        return (True, "")
    if request.requester_id == principal.user_id:
        return (True, "")
    if principal.role is Role.APPROVER:
        if principal.can_act_on_dependency(request.dependency_id) or _holds_step(principal, request):
            return (True, "")
    return (False, f"request {request.public_code} is outside the user's scope")


def can_submit_draft(principal: Principal, request: PurchaseRequest) -> Check:
    if principal.is_administrator or request.requester_id == principal.user_id:
        return (True, "")
    return (False, "only the requester or an administrator may submit a draft")


def can_receive(principal: Principal, request: PurchaseRequest) -> Check:
    """
    Administrators receive anywhere; requesters on their own requests;
    approvers on their own requests and those of their dependencies.
    """
    allowed, reason = check_capability(principal, "receive")
    if not allowed:
        return (allowed, reason)
    if principal.is_administrator or request.requester_id == principal.user_id:
        return (True, "")
    if principal.role is Role.APPROVER and principal.can_act_on_dependency(request.dependency_id):
        return (True, "")
    return (False, f"request {request.public_code} is outside the user's scope")


def can_edit_items(principal: Principal, request: PurchaseRequest) -> Check:
    """
    Item edit rule.

    An administrator may edit while the request is editable, the
    requester while it is DRAFT or REJECTED, and the approver holding a
    step at the current level while it is PENDING_APPROVAL.  The caller
    rejects requests past approval before asking.
    """
    if has_capability(principal, Capability.EDIT_ANY_ITEM):
        return (True, "")
    status = RequestStatus(request.status)
    if status in (RequestStatus.DRAFT, RequestStatus.REJECTED):
        if request.requester_id == principal.user_id:
            return (True, "")
        return (False, f"only the requester may edit items while {status.value}")
    if status is RequestStatus.PENDING_APPROVAL:
        if principal.user_id in request.current_approver_ids:
            return (True, "")
        return (False, "only the current approver may edit items while pending approval")
    return (False, f"items cannot be edited while {status.value}")


def require(check: Check, principal: Principal, operation: str) -> None:
    """
    Raise AuthorizationError when ``check`` denies the operation.

    Raises:
        AuthorizationError: The check returned ``(False, reason)``.
    """
    allowed, reason = check
    if not allowed:
        raise AuthorizationError(principal.user_id, operation, reason)
