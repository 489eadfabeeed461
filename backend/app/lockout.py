"""Failed-attempt counting and time based lockout for profile PINs.

Every function here is pure: the caller supplies ``now`` and receives a new
:class:`LockoutState`. Nothing in this module reads a clock.
"""

from __future__ import annotations

import datetime as dt
import math
from dataclasses import dataclass, replace
from typing import Optional


@dataclass(frozen=True)
class LockoutState:
    failed_attempts: int = 0
    locked_until: Optional[dt.datetime] = None


class LockoutPolicy:
    def __init__(
        self,
        max_failed_attempts: int = 5,
        lockout_duration: dt.timedelta = dt.timedelta(minutes=5),
    ) -> None:
        if max_failed_attempts < 1:
            raise ValueError("max_failed_attempts must be at least 1")
        if lockout_duration <= dt.timedelta(0):
            raise ValueError("lockout_duration must be positive")
        self.max_failed_attempts = max_failed_attempts
        self.lockout_duration = lockout_duration

    def is_locked(self, state: LockoutState, now: dt.datetime) -> bool:
        return state.locked_until is not None and state.locked_until > now

    def on_failure(self, state: LockoutState, now: dt.datetime) -> LockoutState:
        failed = state.failed_attempts + 1
        if failed >= self.max_failed_attempts:
            return LockoutState(failed_attempts=failed, locked_until=now + self.lockout_duration)
        return replace(state, failed_attempts=failed)

    def on_success(self, state: LockoutState) -> LockoutState:
        return LockoutState(failed_attempts=0, locked_until=None)

    def attempts_remaining(self, state: LockoutState) -> int:
        return max(0, self.max_failed_attempts - state.failed_attempts)

    def seconds_remaining(self, state: LockoutState, now: dt.datetime) -> int:
        if state.locked_until is None or not self.is_locked(state, now):
            return 0
        return math.ceil((state.locked_until - now).total_seconds())
