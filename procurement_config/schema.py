"""
ProcurementConfig schema.

The human-authored configuration of a procurement deployment: engine
settings and the organization chart (users, dependencies and who
approves for each).  YAML documents are parsed into these types by the
loader and turned into kernel inputs by ``procurement_config.bridges``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date

from procurement_kernel.domain.principal import Role

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DuplicateCheckSettings:
    enabled: bool = False
    window_days: int = 7
    grace_period_end: date | None = None


@dataclass(frozen=True)
class Settings:
    """Engine-wide settings."""

    database_url: str = "sqlite:///./procurement.db"
    default_code_prefix: str = "SC"
    code_number_width: int = 6
    legacy_code_repair: bool = False
    urgent_priority_tags: tuple[str, ...] = ("URGENT",)
    require_registered_invoice: bool = False
    log_level: str = "INFO"
    duplicate_check: DuplicateCheckSettings = field(default_factory=DuplicateCheckSettings)


@dataclass(frozen=True)
class ApprovalSettings:
    """Routing fallbacks for the approval chain."""

    fallback_administrator_id: int | None = None


# ---------------------------------------------------------------------------
# Organization chart
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OrgUser:
    id: int
    name: str
    role: Role
    dependency_id: int | None = None
    coordinator_id: int | None = None


@dataclass(frozen=True)
class Dependency:
    """An organizational unit and the approvers assigned to it."""

    id: int
    name: str
    approver_ids: tuple[int, ...] = ()


@dataclass(frozen=True)
class OrgChart:
    users: tuple[OrgUser, ...] = ()
    dependencies: tuple[Dependency, ...] = ()

    def user(self, user_id: int) -> OrgUser | None:
        return next((u for u in self.users if u.id == user_id), None)

    def dependency(self, dependency_id: int | None) -> Dependency | None:
        if dependency_id is None:
            return None
        return next((d for d in self.dependencies if d.id == dependency_id), None)

    def dependencies_approved_by(self, user_id: int) -> frozenset[int]:
        return frozenset(d.id for d in self.dependencies if user_id in d.approver_ids)

    def administrators(self) -> tuple[OrgUser, ...]:
        return tuple(u for u in self.users if u.role is Role.ADMINISTRATOR)


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProcurementConfig:
    """
    A loaded configuration.

    ``checksum`` is the SHA-256 of the parsed source document and
    identifies the configuration in logs.
    """

    settings: Settings = field(default_factory=Settings)
    approval: ApprovalSettings = field(default_factory=ApprovalSettings)
    org_chart: OrgChart = field(default_factory=OrgChart)
    checksum: str = ""
    source_path: str | None = None
