"""
procurement_services -- Package init and public API.

Responsibility:
    The workflow facade and its authorization gating: the layer callers
    use to drive purchase requests through the kernel.

Architecture position:
    Services -- composes procurement_kernel services with configuration.

    Dependency direction:
        procurement_services/ -> procurement_kernel/  (allowed)
        procurement_services/ -> procurement_config/  (allowed)
        procurement_kernel/   -> procurement_services/ (FORBIDDEN)
"""

from procurement_services.workflow_facade import (
    ErrorResponse,
    WorkflowFacade,
    build_workflow_facade,
)

__all__ = [
    "ErrorResponse",
    "WorkflowFacade",
    "build_workflow_facade",
]
