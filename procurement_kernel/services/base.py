"""
BaseService -- abstract base for all kernel services.

Every service receives the SQLAlchemy ``Session`` of the caller's
UnitOfWork and persists through ``session.flush()`` -- never
``session.commit()``.  The UnitOfWork owns commit/rollback, which is what
makes a multi-step cascade atomic.
"""

from abc import ABC

from sqlalchemy.orm import Session


class BaseService(ABC):
    """
    Abstract base class for all kernel services.

    Guarantees:
        The service never calls ``session.commit()`` or
        ``session.rollback()``.
    """

    def __init__(self, session: Session):
        self.session = session
