"""
Configuration Loader (``procurement_config.loader``).

Responsibility
--------------
Loads a YAML configuration document and parses it into typed
``procurement_config.schema`` dataclass instances.  Runtime callers use
``procurement_config.get_active_config()`` rather than this module.

Invariants enforced
-------------------
* Parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; required fields have no silent defaults.
* Every parsed object is a frozen dataclass from ``schema.py``.
* The org chart is referentially consistent: unique ids, approvers and
  coordinators that exist, dependencies that exist.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Unknown role label, bad date or inconsistent org chart  -> ``ValueError``.
"""

from __future__ import annotations

from datetime import date
from pathlib import Path
from typing import Any

import yaml

from procurement_config.schema import (
    ApprovalSettings,
    Dependency,
    DuplicateCheckSettings,
    OrgChart,
    OrgUser,
    ProcurementConfig,
    Settings,
)
from procurement_kernel.domain.principal import Role
from procurement_kernel.utils.hashing import hash_payload


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration root must be a mapping: {path}")
    return data


def parse_date(value: Any) -> date:
    """Parse a date from YAML (string or date object)."""
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value)
    raise ValueError(f"Cannot parse date from {value!r}")


def _optional_int(value: Any) -> int | None:
    return None if value is None else int(value)


def parse_duplicate_check(data: dict[str, Any]) -> DuplicateCheckSettings:
    window_days = int(data.get("window_days", 7))
    if window_days < 1:
        raise ValueError(f"duplicate_check.window_days must be >= 1, got {window_days}")
    grace = data.get("grace_period_end")
    return DuplicateCheckSettings(
        enabled=bool(data.get("enabled", False)),
        window_days=window_days,
        grace_period_end=parse_date(grace) if grace else None,
    )


def parse_settings(data: dict[str, Any]) -> Settings:
    defaults = Settings()
    tags = data.get("urgent_priority_tags", list(defaults.urgent_priority_tags))
    return Settings(
        database_url=data.get("database_url", defaults.database_url),
        default_code_prefix=str(data.get("default_code_prefix", defaults.default_code_prefix)).upper(),
        code_number_width=int(data.get("code_number_width", defaults.code_number_width)),
        legacy_code_repair=bool(data.get("legacy_code_repair", False)),
        urgent_priority_tags=tuple(str(tag).strip().upper() for tag in tags),
        require_registered_invoice=bool(data.get("require_registered_invoice", False)),
        log_level=str(data.get("log_level", defaults.log_level)).upper(),
        duplicate_check=parse_duplicate_check(data.get("duplicate_check") or {}),
    )


def parse_approval(data: dict[str, Any]) -> ApprovalSettings:
    return ApprovalSettings(
        fallback_administrator_id=_optional_int(data.get("fallback_administrator_id")),
    )


def parse_user(data: dict[str, Any]) -> OrgUser:
    return OrgUser(
        id=int(data["id"]),
        name=data["name"],
        role=Role.parse(data["role"]),
        dependency_id=_optional_int(data.get("dependency_id")),
        coordinator_id=_optional_int(data.get("coordinator_id")),
    )


def parse_dependency(data: dict[str, Any]) -> Dependency:
    return Dependency(
        id=int(data["id"]),
        name=data["name"],
        approver_ids=tuple(int(a) for a in data.get("approver_ids", [])),
    )


def parse_org_chart(data: dict[str, Any]) -> OrgChart:
    """
    Parse and cross-check the organization chart.

    Raises:
        ValueError: duplicate ids or references to unknown users or
            dependencies.
    """
    chart = OrgChart(
        users=tuple(parse_user(u) for u in data.get("users", [])),
        dependencies=tuple(parse_dependency(d) for d in data.get("dependencies", [])),
    )
    errors = validate_org_chart(chart)
    if errors:
        raise ValueError(
            "Org chart validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        )
    return chart


def validate_org_chart(chart: OrgChart) -> list[str]:
    errors: list[str] = []
    user_ids = [u.id for u in chart.users]
    dependency_ids = [d.id for d in chart.dependencies]
    if len(set(user_ids)) != len(user_ids):
        errors.append("duplicate user id")
    if len(set(dependency_ids)) != len(dependency_ids):
        errors.append("duplicate dependency id")

    known_users = set(user_ids)
    known_dependencies = set(dependency_ids)
    for user in chart.users:
        if user.dependency_id is not None and user.dependency_id not in known_dependencies:
            errors.append(f"user {user.id} references unknown dependency {user.dependency_id}")
        if user.coordinator_id is not None and user.coordinator_id not in known_users:
            errors.append(f"user {user.id} references unknown coordinator {user.coordinator_id}")
    for dependency in chart.dependencies:
        for approver_id in dependency.approver_ids:
            approver = chart.user(approver_id)
            if approver is None:
                errors.append(
                    f"dependency {dependency.id} references unknown approver {approver_id}"
                )
            elif approver.role is Role.REQUESTER:
                errors.append(
                    f"dependency {dependency.id} approver {approver_id} has role requester"
                )
    return errors


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of the canonical JSON form of ``data``.

    Identical documents always produce identical checksums, whatever the
    key order in the YAML source.
    """
    return hash_payload(data)


def parse_config(data: dict[str, Any], source_path: Path | None = None) -> ProcurementConfig:
    """Parse a whole configuration document."""
    config = ProcurementConfig(
        settings=parse_settings(data.get("settings") or {}),
        approval=parse_approval(data.get("approval") or {}),
        org_chart=parse_org_chart(data.get("org_chart") or {}),
        checksum=compute_checksum(data),
        source_path=str(source_path) if source_path else None,
    )
    fallback = config.approval.fallback_administrator_id
    if fallback is not None and config.org_chart.users:
        user = config.org_chart.user(fallback)
        if user is None or user.role is Role.REQUESTER:
            raise ValueError(
                f"fallback_administrator_id {fallback} is not an approver or administrator"
            )
    return config


def load_config(path: Path) -> ProcurementConfig:
    return parse_config(load_yaml_file(path), source_path=path)
