"""
Approval policy protocol.

The org-chart/dependency configuration that decides who approves a
request, and at which level, lives outside the kernel.  The engine only
needs something that turns a requester into a list of planned steps.
"""

from typing import Protocol, Sequence

from procurement_kernel.domain.dtos import PlannedStep
from procurement_kernel.domain.principal import Principal


class ApprovalPolicy(Protocol):
    """Plans the approval chain for a requester."""

    def plan(self, requester: Principal) -> Sequence[PlannedStep]:
        """
        Return one PlannedStep per required approver.

        Steps sharing a level are peers ("first decision wins").  Lower
        levels act first.  A ``pre_approved`` step is recorded as
        already approved (self-authorization).
        """
        ...


class StaticApprovalPolicy:
    """Fixed chain regardless of requester.  Useful for scripts and tests."""

    def __init__(self, steps: Sequence[PlannedStep]):
        self._steps = tuple(steps)

    def plan(self, requester: Principal) -> Sequence[PlannedStep]:
        return self._steps
