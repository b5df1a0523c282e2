from __future__ import annotations

import math
from dataclasses import replace
from datetime import datetime
from typing import Callable, Optional, Tuple

from tollgate.config import AuthPolicy
from tollgate.logging import get_logger
from tollgate.service.outcomes import LockState
from tollgate.storage.common import LockoutStore
from tollgate.storage.models import LockoutWindow, utcnow

logger = get_logger(__name__)


class LockoutTracker:
    """Sliding-window failed-attempt counter with temporary lockout.

    A failure counts while it is younger than ``attempts_window``. Reaching
    ``max_attempts`` locks the subject for ``lockout_duration``; failures
    recorded during a lock neither extend nor reset it. Once the lock expires
    the window starts over.

    ``scope`` prefixes the store key so separate trackers (password logins,
    second-factor attempts) keep separate windows for the same credential.
    """

    def __init__(
        self,
        store: LockoutStore,
        policy: AuthPolicy,
        *,
        clock: Callable[[], datetime] = utcnow,
        scope: str = "",
    ) -> None:
        self.store = store
        self.policy = policy
        self.clock = clock
        self.scope = scope
        self.logger = logger

    def _now(self) -> datetime:
        return self.clock()

    def _key(self, credential_id: str) -> str:
        return f"{self.scope}:{credential_id}" if self.scope else credential_id

    def _locked_state(self, window: LockoutWindow, now: datetime) -> LockState:
        remaining = (window.locked_until - now).total_seconds()
        return LockState(
            locked=True,
            attempts_remaining=0,
            minutes_remaining=max(1, math.ceil(remaining / 60)),
            locked_until=window.locked_until,
        )

    def _open_state(self, window: Optional[LockoutWindow]) -> LockState:
        count = window.count if window else 0
        return LockState(
            locked=False, attempts_remaining=max(0, self.policy.max_attempts - count)
        )

    def _prune(self, window: LockoutWindow, now: datetime) -> None:
        horizon = self.policy.attempts_window
        window.failures = [ts for ts in window.failures if now - ts < horizon]

    def check_locked(self, credential_id: str) -> LockState:
        """Report the current lock state, clearing a lock that has run out."""
        now = self._now()
        key = self._key(credential_id)
        window = self.store.get_lockout(key)
        if window is None:
            return self._open_state(None)
        if window.locked_until is None:
            self._prune(window, now)
            return self._open_state(window)
        if window.locked_until > now:
            return self._locked_state(window, now)

        def _expire(
            current: Optional[LockoutWindow],
        ) -> Tuple[Optional[LockoutWindow], Tuple[LockState, bool]]:
            if current is None:
                return None, (self._open_state(None), False)
            if current.locked_until is not None and current.locked_until > now:
                return current, (self._locked_state(current, now), False)
            if current.locked_until is None:
                self._prune(current, now)
                return current, (self._open_state(current), False)
            return None, (self._open_state(None), True)

        state, expired = self.store.update_lockout(key, _expire)
        if expired:
            self.logger.info("account_unlocked", subject=key, reason="lockout_expired")
        return state

    def record_failure(
        self, credential_id: str, ip_addr: Optional[str] = None
    ) -> LockState:
        """Count a failed attempt; returns the resulting state.

        ``LockState.tripped`` is set only on the failure that caused the lock.
        """
        now = self._now()
        key = self._key(credential_id)
        policy = self.policy

        def _mutate(
            current: Optional[LockoutWindow],
        ) -> Tuple[Optional[LockoutWindow], LockState]:
            window = current or LockoutWindow(credential_id=key)
            if window.locked_until is not None:
                if window.locked_until > now:
                    return window, self._locked_state(window, now)
                window.failures = []
                window.locked_until = None
            self._prune(window, now)
            window.failures.append(now)
            window.last_failed_ip = ip_addr
            if window.count >= policy.max_attempts:
                window.locked_until = now + policy.lockout_duration
                return window, replace(self._locked_state(window, now), tripped=True)
            return window, self._open_state(window)

        state = self.store.update_lockout(key, _mutate)
        if state.tripped:
            self.logger.warning(
                "account_locked",
                subject=key,
                ip_addr=ip_addr,
                locked_until=state.locked_until.isoformat(),
                attempts=policy.max_attempts,
            )
        elif state.locked:
            self.logger.warning("login_attempt_while_locked", subject=key, ip_addr=ip_addr)
        else:
            self.logger.info(
                "failed_attempt_recorded",
                subject=key,
                ip_addr=ip_addr,
                attempts_remaining=state.attempts_remaining,
            )
        return state

    def record_success(self, credential_id: str) -> None:
        self.store.update_lockout(self._key(credential_id), lambda current: (None, None))

    def unlock(self, credential_id: str) -> bool:
        """Operator override: clear the window and any active lock."""
        key = self._key(credential_id)
        was_locked = self.store.update_lockout(
            key,
            lambda current: (
                None,
                bool(current and current.locked_until and current.locked_until > self._now()),
            ),
        )
        self.logger.info("account_unlocked", subject=key, reason="operator", was_locked=was_locked)
        return was_locked
