"""
Principal -- the authenticated caller, passed explicitly into every operation.

Responsibility:
    Closed enumeration of roles, the capabilities each role grants, and the
    single capability check used by the facade.  There is no ambient or
    global identity lookup anywhere in the kernel.

Architecture position:
    Kernel > Domain -- pure, zero I/O.
"""

from dataclasses import dataclass, field
from enum import Enum


class Role(str, Enum):
    """Closed set of roles."""

    ADMINISTRATOR = "administrator"
    APPROVER = "approver"
    REQUESTER = "requester"

    @classmethod
    def parse(cls, value: "str | Role") -> "Role":
        """
        Parse a role label from an external source.

        Case and surrounding whitespace are ignored, and the legacy
        Spanish labels are accepted.

        Raises:
            ValueError: If the label names no known role.
        """
        if isinstance(value, Role):
            return value
        key = value.strip().lower()
        role = _ROLE_ALIASES.get(key)
        if role is None:
            raise ValueError(f"Unknown role: {value!r}")
        return role


_ROLE_ALIASES: dict[str, Role] = {
    "administrator": Role.ADMINISTRATOR,
    "admin": Role.ADMINISTRATOR,
    "administrador": Role.ADMINISTRATOR,
    "approver": Role.APPROVER,
    "aprobador": Role.APPROVER,
    "requester": Role.REQUESTER,
    "solicitante": Role.REQUESTER,
}


class Capability(str, Enum):
    """Operations gated by role."""

    CREATE = "create"
    DECIDE = "decide"
    OVERRIDE = "override"
    RECEIVE = "receive"
    VIEW_ALL = "view_all"
    EDIT_ANY_ITEM = "edit_any_item"


ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.ADMINISTRATOR: frozenset(Capability),
    Role.APPROVER: frozenset({
        Capability.CREATE,
        Capability.DECIDE,
        Capability.RECEIVE,
    }),
    Role.REQUESTER: frozenset({
        Capability.CREATE,
        Capability.RECEIVE,
    }),
}


@dataclass(frozen=True)
class Principal:
    """
    The acting user as supplied by the identity provider.

    ``authorized_dependency_ids`` is the approver's scope: the
    organizational dependencies whose requests they may act on.
    """

    user_id: int
    role: Role
    display_name: str = ""
    dependency_id: int | None = None
    authorized_dependency_ids: frozenset[int] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        object.__setattr__(self, "role", Role.parse(self.role))
        object.__setattr__(
            self, "authorized_dependency_ids", frozenset(self.authorized_dependency_ids)
        )

    @property
    def is_administrator(self) -> bool:
        return self.role is Role.ADMINISTRATOR

    def can_act_on_dependency(self, dependency_id: int | None) -> bool:
        if self.is_administrator:
            return True
        return dependency_id is not None and dependency_id in self.authorized_dependency_ids


def has_capability(principal: Principal, capability: Capability) -> bool:
    """The one capability check.  Everything else derives from it."""
    return capability in ROLE_CAPABILITIES[principal.role]
