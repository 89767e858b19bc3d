"""Tests for locked-counter allocation (SequenceService)."""

from sqlalchemy import select

from procurement_kernel.models.sequence_counter import SequenceCounter
from procurement_kernel.services.sequence_service import SequenceService


class TestNextValue:
    def test_starts_at_one_and_increments(self, session):
        sequences = SequenceService(session)
        name = SequenceService.request_code("AT")

        assert [sequences.next_value(name) for _ in range(3)] == [1, 2, 3]

    def test_counters_are_independent(self, session):
        sequences = SequenceService(session)

        sequences.next_value(SequenceService.request_code("AT"))
        sequences.next_value(SequenceService.request_code("AT"))

        assert sequences.next_value(SequenceService.request_code("AG")) == 1
        assert sequences.next_value(SequenceService.AUDIT_EVENT) == 1

    def test_prefix_is_case_insensitive(self):
        assert SequenceService.request_code("at") == "request_code:AT"

    def test_rollback_returns_the_value(self, session):
        sequences = SequenceService(session)
        name = SequenceService.request_code("AT")
        sequences.next_value(name)
        session.commit()

        assert sequences.next_value(name) == 2
        session.rollback()

        assert sequences.next_value(name) == 2

    def test_one_row_per_name(self, session):
        sequences = SequenceService(session)
        name = SequenceService.request_code("SC")
        for _ in range(4):
            sequences.next_value(name)

        rows = session.scalars(select(SequenceCounter).where(SequenceCounter.name == name)).all()
        assert len(rows) == 1
        assert rows[0].current_value == 4
