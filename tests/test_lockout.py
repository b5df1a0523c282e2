"""Tests for the sliding-window lockout tracker."""

import threading
from datetime import timedelta

from tollgate.config import AuthPolicy
from tollgate.service.lockout import LockoutTracker


def _fail_at(clock, lockout, minutes, subject="cred-1"):
    clock.set(clock.start + timedelta(minutes=minutes))
    return lockout.record_failure(subject, ip_addr="203.0.113.7")


class TestSlidingWindow:
    def setup_method(self):
        self.subject = "cred-1"

    def test_no_failures_is_open(self, lockout):
        state = lockout.check_locked(self.subject)
        assert state.locked is False
        assert state.attempts_remaining == 5

    def test_fewer_than_max_failures_never_lock(self, lockout, clock):
        for minute in range(4):
            state = _fail_at(clock, lockout, minute)
            assert state.locked is False
        assert lockout.check_locked(self.subject).locked is False
        assert lockout.check_locked(self.subject).attempts_remaining == 1

    def test_five_failures_within_window_lock(self, lockout, clock):
        """Failures at 0,1,2,3 and 14 minutes lock on the fifth."""
        states = [_fail_at(clock, lockout, m) for m in (0, 1, 2, 3, 14)]

        assert [s.locked for s in states] == [False, False, False, False, True]
        assert [s.attempts_remaining for s in states[:4]] == [4, 3, 2, 1]
        assert states[-1].tripped is True
        assert states[-1].locked_until == clock.start + timedelta(minutes=44)
        assert states[-1].minutes_remaining == 30

    def test_attempt_while_locked_changes_nothing(self, lockout, clock, memory_store):
        for m in (0, 1, 2, 3, 14):
            _fail_at(clock, lockout, m)
        before = memory_store.get_lockout(self.subject)

        state = _fail_at(clock, lockout, 16)

        assert state.locked is True
        assert state.tripped is False
        assert state.minutes_remaining == 28
        after = memory_store.get_lockout(self.subject)
        assert after.locked_until == before.locked_until
        assert after.failures == before.failures

    def test_failures_spread_over_sixteen_minutes_do_not_lock(self, lockout, clock):
        states = [_fail_at(clock, lockout, m) for m in (0, 4, 8, 12, 16)]

        assert all(not s.locked for s in states)
        # The failure at t=0 slid out of the window at t=15
        assert states[-1].attempts_remaining == 1

    def test_failure_exactly_window_old_has_expired(self, lockout, clock):
        for m in (0, 1, 2, 3):
            _fail_at(clock, lockout, m)
        state = _fail_at(clock, lockout, 15)
        assert state.locked is False
        assert state.attempts_remaining == 1

    def test_minutes_remaining_rounds_up(self, lockout, clock):
        for m in (0, 1, 2, 3, 4):
            _fail_at(clock, lockout, m)
        clock.advance(seconds=30)
        assert lockout.check_locked(self.subject).minutes_remaining == 30
        clock.advance(minutes=29, seconds=29)
        assert lockout.check_locked(self.subject).minutes_remaining == 1


class TestResetAndExpiry:
    def test_success_resets_window(self, lockout, clock, memory_store):
        for _ in range(3):
            lockout.record_failure("cred-1")
        lockout.record_success("cred-1")

        assert memory_store.get_lockout("cred-1") is None
        assert lockout.check_locked("cred-1").attempts_remaining == 5
        assert lockout.record_failure("cred-1").attempts_remaining == 4

    def test_expired_lock_is_cleared_on_check(self, lockout, clock, memory_store):
        for _ in range(5):
            lockout.record_failure("cred-1")
        assert lockout.check_locked("cred-1").locked

        clock.advance(minutes=30)
        state = lockout.check_locked("cred-1")

        assert state.locked is False
        assert state.attempts_remaining == 5
        assert memory_store.get_lockout("cred-1") is None

    def test_failure_after_expiry_starts_fresh_count(self, lockout, clock):
        for _ in range(5):
            lockout.record_failure("cred-1")
        clock.advance(minutes=31)
        state = lockout.record_failure("cred-1")
        assert state.locked is False
        assert state.attempts_remaining == 4

    def test_operator_unlock(self, lockout):
        assert lockout.unlock("cred-1") is False
        for _ in range(5):
            lockout.record_failure("cred-1")
        assert lockout.unlock("cred-1") is True
        assert lockout.check_locked("cred-1").locked is False


class TestPolicyAndScope:
    def test_custom_policy_threshold(self, memory_store, clock):
        tracker = LockoutTracker(
            memory_store,
            AuthPolicy(max_attempts=2, lockout_duration=timedelta(minutes=5)),
            clock=clock,
        )
        assert tracker.record_failure("cred-1").locked is False
        state = tracker.record_failure("cred-1")
        assert state.locked is True
        assert state.minutes_remaining == 5

    def test_scoped_trackers_keep_separate_windows(self, memory_store, policy, clock):
        login = LockoutTracker(memory_store, policy, clock=clock)
        second_factor = LockoutTracker(memory_store, policy, clock=clock, scope="2fa")
        for _ in range(5):
            second_factor.record_failure("cred-1")

        assert second_factor.check_locked("cred-1").locked is True
        assert login.check_locked("cred-1").locked is False
        assert memory_store.get_lockout("2fa:cred-1") is not None


class TestConcurrency:
    def test_parallel_failures_lock_exactly_once(self, lockout, memory_store):
        results = []
        results_lock = threading.Lock()

        def worker():
            state = lockout.record_failure("cred-1")
            with results_lock:
                results.append(state)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(1 for s in results if s.tripped) == 1
        assert sum(1 for s in results if not s.locked) == 4
        assert memory_store.get_lockout("cred-1").count == 5
