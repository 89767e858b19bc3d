"""
Config -> Kernel Bridges.

Functions that convert a ``ProcurementConfig`` into kernel-compatible
inputs.  These live in procurement_config (the producer) because the
kernel must NEVER import procurement_config.

Usage:
    from procurement_config import get_active_config
    from procurement_config.bridges import build_approval_policy, build_kernel_settings

    config = get_active_config()
    policy = build_approval_policy(config)
    settings = build_kernel_settings(config)
"""

from __future__ import annotations

from typing import Sequence

from procurement_config.schema import OrgChart, OrgUser, ProcurementConfig
from procurement_kernel.domain.dtos import PlannedStep
from procurement_kernel.domain.principal import Principal, Role
from procurement_kernel.domain.settings import DuplicateCheckPolicy, KernelSettings
from procurement_kernel.logging_config import get_logger

logger = get_logger("config.bridges")

_AUTHORIZER_ROLES = frozenset({Role.APPROVER, Role.ADMINISTRATOR})


def build_kernel_settings(config: ProcurementConfig) -> KernelSettings:
    settings = config.settings
    return KernelSettings(
        default_code_prefix=settings.default_code_prefix,
        code_number_width=settings.code_number_width,
        legacy_code_repair=settings.legacy_code_repair,
        urgent_priority_tags=frozenset(settings.urgent_priority_tags),
        require_registered_invoice=settings.require_registered_invoice,
        duplicate_check=DuplicateCheckPolicy(
            enabled=settings.duplicate_check.enabled,
            window_days=settings.duplicate_check.window_days,
            grace_period_end=settings.duplicate_check.grace_period_end,
        ),
    )


class OrgChartApprovalPolicy:
    """
    Routes a request through its requester's dependency, then up to a
    final authorizer.

    Level 1 holds every approver assigned to the requester's dependency
    (peers, first decision wins).  A requester who is one of those
    approvers gets a single self-authorized step instead.  The next level
    holds the final authorizer: the requester's coordinator when that user
    may approve, else the configured fallback administrator, else the
    first administrator in the org chart.  Nobody appears twice.
    """

    def __init__(self, org_chart: OrgChart, fallback_administrator_id: int | None = None):
        self._org_chart = org_chart
        self._fallback_administrator_id = fallback_administrator_id

    def plan(self, requester: Principal) -> Sequence[PlannedStep]:
        user = self._org_chart.user(requester.user_id)
        dependency_id = requester.dependency_id
        if dependency_id is None and user is not None:
            dependency_id = user.dependency_id

        steps: list[PlannedStep] = []
        dependency = self._org_chart.dependency(dependency_id)
        if dependency is not None:
            if requester.user_id in dependency.approver_ids:
                steps.append(PlannedStep(requester.user_id, 1, pre_approved=True))
            else:
                steps.extend(PlannedStep(a, 1) for a in dependency.approver_ids)

        authorizer = self._final_authorizer(requester.user_id, user)
        if authorizer is not None and authorizer not in {s.approver_id for s in steps}:
            next_level = max((s.level for s in steps), default=0) + 1
            steps.append(PlannedStep(authorizer, next_level))

        logger.debug(
            "approval_chain_planned",
            extra={
                "requester_id": requester.user_id,
                "dependency_id": dependency_id,
                "approver_ids": [s.approver_id for s in steps],
            },
        )
        return tuple(steps)

    def _final_authorizer(self, requester_id: int, user: OrgUser | None) -> int | None:
        if user is not None and user.coordinator_id is not None:
            coordinator = self._org_chart.user(user.coordinator_id)
            if (
                coordinator is not None
                and coordinator.role in _AUTHORIZER_ROLES
                and coordinator.id != requester_id
            ):
                return coordinator.id
        fallback = self._fallback_administrator_id
        if fallback is not None and fallback != requester_id:
            return fallback
        for admin in self._org_chart.administrators():
            if admin.id != requester_id:
                return admin.id
        return None


def build_approval_policy(config: ProcurementConfig) -> OrgChartApprovalPolicy:
    return OrgChartApprovalPolicy(
        config.org_chart,
        fallback_administrator_id=config.approval.fallback_administrator_id,
    )


def build_principal(config: ProcurementConfig, user_id: int) -> Principal:
    """
    Principal for a user of the org chart.

    The approver scope is every dependency the user is assigned to
    approve for.

    Raises:
        KeyError: The user is not in the org chart.
    """
    user = config.org_chart.user(user_id)
    if user is None:
        raise KeyError(f"User {user_id} is not in the org chart")
    return Principal(
        user_id=user.id,
        role=user.role,
        display_name=user.name,
        dependency_id=user.dependency_id,
        authorized_dependency_ids=config.org_chart.dependencies_approved_by(user.id),
    )
