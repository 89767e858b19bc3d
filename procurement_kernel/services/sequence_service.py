"""
SequenceService -- gap-free counters behind audit seq and request codes.

One ``SequenceCounter`` row per name (``audit_event``,
``request_code:<PREFIX>``).  Allocation locks the row with
``SELECT ... FOR UPDATE`` and increments it in the caller's transaction,
so a counter never goes backwards and a rolled-back transaction leaves no
gap.  A first-use insert race is resolved through a savepoint.
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from procurement_kernel.logging_config import get_logger
from procurement_kernel.models.sequence_counter import SequenceCounter
from procurement_kernel.services.base import BaseService

logger = get_logger("services.sequence")


class SequenceService(BaseService):
    """
    Named counters for audit sequence numbers and request codes.

    Usage:
        number = sequences.next_value(SequenceService.request_code("AT"))
    """

    AUDIT_EVENT = "audit_event"

    @staticmethod
    def request_code(prefix: str) -> str:
        """Counter name for public request codes with ``prefix``."""
        return f"request_code:{prefix.upper()}"

    def _locked_counter(self, sequence_name: str) -> SequenceCounter | None:
        return self.session.scalars(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).one_or_none()

    def _create_counter(self, sequence_name: str) -> SequenceCounter | None:
        """
        Insert a counter starting at 1 inside a savepoint.

        Returns None when a concurrent transaction inserted the same name
        first; the caller then locks and increments that row instead.
        """
        savepoint = self.session.begin_nested()
        try:
            counter = SequenceCounter(name=sequence_name, current_value=1)
            self.session.add(counter)
            self.session.flush()
        except IntegrityError:
            savepoint.rollback()
            logger.debug("sequence_counter_race_retry", extra={"sequence_name": sequence_name})
            return None
        savepoint.commit()
        return counter

    def next_value(self, sequence_name: str) -> int:
        """
        Return the next value of ``sequence_name``, starting at 1.

        The counter row stays locked until the caller's transaction ends,
        so two transactions never receive the same value and a rollback
        gives the value back.
        """
        counter = self._locked_counter(sequence_name)
        if counter is None:
            created = self._create_counter(sequence_name)
            if created is not None:
                logger.debug("sequence_allocated", extra={"sequence_name": sequence_name, "value": 1})
                return 1
            counter = self._locked_counter(sequence_name)
            if counter is None:
                raise RuntimeError(f"sequence counter {sequence_name} vanished after insert race")

        counter.current_value += 1
        self.session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value
