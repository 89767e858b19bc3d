"""
Module: procurement_kernel.db.unit_of_work
Responsibility: One operation = one atomic database transaction.
Architecture position: Kernel > DB.  Imports exceptions and logging only.

Every engine operation runs inside exactly one UnitOfWork: the session is
opened on entry, committed on normal exit, and rolled back on any
exception, so a partial cascade or a reception without its status
transition is never visible to readers.

Failure modes:
    - ConcurrencyConflictError: the database aborted the transaction
      because of a competing writer (serialization failure, deadlock,
      lock timeout, SQLite "database is locked").  Safe to retry.
    - InternalError: any other SQLAlchemy error.  Logged with traceback.
    - Kernel errors raised by the operation propagate unchanged after
      the rollback.
"""

from types import TracebackType

from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from procurement_kernel.exceptions import (
    ConcurrencyConflictError,
    InternalError,
    ProcurementKernelError,
)
from procurement_kernel.logging_config import get_logger

logger = get_logger("db.unit_of_work")

# serialization_failure, deadlock_detected, lock_not_available
_CONFLICT_PGCODES = frozenset({"40001", "40P01", "55P03"})


def is_concurrency_failure(exc: BaseException) -> bool:
    """True when a database error means "a competing writer won"."""
    if not isinstance(exc, DBAPIError):
        return False
    orig = exc.orig
    if getattr(orig, "pgcode", None) in _CONFLICT_PGCODES:
        return True
    return "database is locked" in str(orig).lower()


def translate_database_error(exc: SQLAlchemyError, operation: str) -> ProcurementKernelError:
    """Map a SQLAlchemy error onto the kernel's error taxonomy."""
    if is_concurrency_failure(exc):
        return ConcurrencyConflictError(operation, str(getattr(exc, "orig", exc)))
    return InternalError(operation, type(exc).__name__)


class UnitOfWork:
    """
    Transaction boundary shared by the request store and both engines.

    Usage:
        with UnitOfWork(session_factory, "decide") as uow:
            engine = ApprovalCascadeEngine(uow.session, ...)
            engine.decide(...)
        # committed here, or rolled back and re-raised

    Services never call ``commit()`` themselves; they flush.
    """

    def __init__(self, session_factory: sessionmaker[Session], operation: str):
        self._session_factory = session_factory
        self.operation = operation
        self._session: Session | None = None

    @property
    def session(self) -> Session:
        if self._session is None:
            raise RuntimeError("UnitOfWork is not active")
        return self._session

    def __enter__(self) -> "UnitOfWork":
        self._session = self._session_factory()
        logger.debug("transaction_started", extra={"operation": self.operation})
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        session = self.session
        try:
            if exc is None:
                try:
                    session.commit()
                except SQLAlchemyError as commit_exc:
                    session.rollback()
                    self._raise_translated(commit_exc)
                logger.debug(
                    "transaction_committed", extra={"operation": self.operation}
                )
                return

            session.rollback()
            if isinstance(exc, ProcurementKernelError):
                logger.info(
                    "transaction_rolled_back",
                    extra={"operation": self.operation, "error_code": exc.code},
                )
                return
            if isinstance(exc, SQLAlchemyError):
                self._raise_translated(exc)
            logger.error(
                "transaction_rolled_back",
                extra={"operation": self.operation},
                exc_info=(exc_type, exc, tb),
            )
        finally:
            session.close()
            self._session = None

    def _raise_translated(self, exc: SQLAlchemyError) -> None:
        translated = translate_database_error(exc, self.operation)
        if isinstance(translated, ConcurrencyConflictError):
            logger.warning(
                "transaction_conflict",
                extra={"operation": self.operation, "detail": translated.detail},
            )
        else:
            logger.error(
                "transaction_failed",
                extra={"operation": self.operation},
                exc_info=exc,
            )
        raise translated from exc
