"""Database layer - engine, base classes, unit of work."""

from procurement_kernel.db.base import Base, TrackedBase
from procurement_kernel.db.engine import (
    build_engine,
    create_tables,
    get_engine,
    get_session_factory,
    init_engine_from_url,
)
from procurement_kernel.db.unit_of_work import UnitOfWork

__all__ = [
    "Base",
    "TrackedBase",
    "build_engine",
    "create_tables",
    "get_engine",
    "get_session_factory",
    "init_engine_from_url",
    "UnitOfWork",
]
