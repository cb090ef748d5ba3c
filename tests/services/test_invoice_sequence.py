"""
Tests for SequenceService (invoice number allocation).

Covers:
- Counter configuration (create, raise, never lower)
- Allocation hands out consecutive values
- Compare-and-set conflicts are retried, then surfaced as persistence failure
- Nothing is consumed when rendering fails or the transaction rolls back
"""

import pytest

from billing_kernel.exceptions import (
    PersistenceFailureError,
    SequenceConflictError,
    SequenceNotFoundError,
    ValidationError,
)
from billing_kernel.services.sequence_service import SequenceService


def _render(state):
    return f"{state.prefix}-{state.next_number:04d}"


@pytest.fixture
def sequences(session):
    svc = SequenceService(session)
    svc.configure("default", prefix="FAC", pattern="{PREFIX}-{NUMBER}")
    session.commit()
    return svc


class TestConfigure:
    def test_new_counter_starts_at_one(self, session):
        state = SequenceService(session).configure("store-2", prefix="B", pattern="{PREFIX}{NUMBER}")
        assert state.next_number == 1
        assert state.scope == "store-2"

    def test_explicit_start(self, session):
        state = SequenceService(session).configure("s", prefix="F", pattern="{NUMBER}", next_number=500)
        assert state.next_number == 500

    def test_update_keeps_counter(self, sequences):
        sequences.allocate("default", _render)
        state = sequences.configure("default", prefix="FV", pattern="{PREFIX}/{NUMBER}")
        assert state.prefix == "FV"
        assert state.pattern == "{PREFIX}/{NUMBER}"
        assert state.next_number == 2

    def test_raise_allowed(self, sequences):
        assert sequences.configure("default", "FAC", "{PREFIX}-{NUMBER}", next_number=100).next_number == 100

    def test_lowering_rejected(self, sequences):
        sequences.configure("default", "FAC", "{PREFIX}-{NUMBER}", next_number=10)
        with pytest.raises(ValidationError) as exc_info:
            sequences.configure("default", "FAC", "{PREFIX}-{NUMBER}", next_number=9)
        assert exc_info.value.field == "next_number"

    def test_non_positive_start_rejected(self, session):
        with pytest.raises(ValidationError):
            SequenceService(session).configure("s", "F", "{NUMBER}", next_number=0)

    def test_invalid_retry_budget(self, session):
        with pytest.raises(ValueError):
            SequenceService(session, max_retries=0)


class TestAllocate:
    def test_consecutive_values(self, sequences):
        first = sequences.allocate("default", _render)
        second = sequences.allocate("default", _render)

        assert (first.value, first.number) == (1, "FAC-0001")
        assert (second.value, second.number) == (2, "FAC-0002")
        assert first.attempts == 1
        assert sequences.peek("default").next_number == 3

    def test_unknown_scope(self, sequences):
        with pytest.raises(SequenceNotFoundError):
            sequences.allocate("missing", _render)

    def test_peek_unknown_scope(self, sequences):
        with pytest.raises(SequenceNotFoundError):
            sequences.peek("missing")

    def test_peek_does_not_consume(self, sequences):
        sequences.peek("default")
        sequences.peek("default")
        assert sequences.allocate("default", _render).value == 1

    def test_render_failure_consumes_nothing(self, sequences):
        def boom(state):
            raise RuntimeError("template error")

        with pytest.raises(RuntimeError):
            sequences.allocate("default", boom)

        assert sequences.peek("default").next_number == 1

    def test_rollback_returns_the_number(self, session, sequences):
        sequences.allocate("default", _render)
        session.rollback()

        assert sequences.peek("default").next_number == 1
        assert sequences.allocate("default", _render).number == "FAC-0001"

    def test_render_sees_locked_state(self, sequences):
        seen = []
        sequences.allocate("default", lambda state: seen.append(state) or "X")
        assert seen[0].next_number == 1
        assert seen[0].prefix == "FAC"


class TestConflictRetry:
    def test_conflict_is_retried(self, sequences, monkeypatch, captured_logs):
        original = sequences._compare_and_set
        calls = {"n": 0}

        def flaky(counter, observed):
            calls["n"] += 1
            if calls["n"] == 1:
                return False
            return original(counter, observed)

        monkeypatch.setattr(sequences, "_compare_and_set", flaky)

        allocated = sequences.allocate("default", _render)

        assert allocated.value == 1
        assert allocated.attempts == 2
        retries = [r for r in captured_logs() if r["message"] == "sequence_conflict_retry"]
        assert len(retries) == 1
        assert retries[0]["observed_number"] == 1

    def test_exhausted_retries(self, session, monkeypatch):
        svc = SequenceService(session, max_retries=3)
        svc.configure("default", "FAC", "{PREFIX}-{NUMBER}")
        monkeypatch.setattr(svc, "_compare_and_set", lambda counter, observed: False)

        with pytest.raises(PersistenceFailureError) as exc_info:
            svc.allocate("default", _render)

        assert isinstance(exc_info.value.cause, SequenceConflictError)
        assert svc.peek("default").next_number == 1
