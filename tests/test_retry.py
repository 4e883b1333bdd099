"""Tests for the retry and backoff policy."""

from datetime import UTC, datetime, timedelta

from opsqueue.v1.infra.jobs.retry import compute_backoff_seconds, decide_failure


class TestBackoff:
    """Exponential backoff with a cap."""

    def test_doubles_per_attempt(self):
        assert compute_backoff_seconds(1) == 30
        assert compute_backoff_seconds(2) == 60
        assert compute_backoff_seconds(3) == 120
        assert compute_backoff_seconds(4) == 240

    def test_capped_at_one_hour(self):
        assert compute_backoff_seconds(8) == 3600
        assert compute_backoff_seconds(500) == 3600

    def test_zero_attempts_uses_base(self):
        assert compute_backoff_seconds(0) == 30

    def test_custom_base_and_cap(self):
        assert compute_backoff_seconds(3, base=1, cap=3) == 3
        assert compute_backoff_seconds(2, base=1, cap=10) == 2


class TestDecideFailure:
    """Terminal versus retry decisions."""

    now = datetime(2026, 3, 2, 7, 0, tzinfo=UTC)

    def test_retry_schedules_next_run(self):
        decision = decide_failure(2, 5, self.now)

        assert decision.terminal is False
        assert decision.backoff_seconds == 60
        assert decision.next_run_at == self.now + timedelta(seconds=60)

    def test_terminal_when_attempts_exhausted(self):
        decision = decide_failure(5, 5, self.now)

        assert decision.terminal is True
        assert decision.next_run_at is None

    def test_terminal_when_over_budget(self):
        assert decide_failure(7, 5, self.now).terminal is True

    def test_zero_base_still_schedules_in_the_future(self):
        decision = decide_failure(1, 5, self.now, base=0)

        assert decision.terminal is False
        assert decision.backoff_seconds == 1
        assert decision.next_run_at > self.now
