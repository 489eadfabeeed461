"""Outcome values returned by the PIN services.

Expected failures (bad input, wrong PIN, lockout, missing profile, forbidden
reset) are reported through these values instead of exceptions; only
``StorageError`` is raised past the services.
"""

from __future__ import annotations

import datetime as dt
import enum
from dataclasses import dataclass
from typing import Optional


class VerificationStatus(str, enum.Enum):
    SUCCESS = "success"
    INCORRECT_PIN = "incorrect_pin"
    LOCKED = "locked"
    NOT_CONFIGURED = "not_configured"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class VerificationResult:
    status: VerificationStatus
    locked_until: Optional[dt.datetime] = None
    failed_attempts: int = 0
    attempts_remaining: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.status is VerificationStatus.SUCCESS

    @property
    def locked(self) -> bool:
        return self.locked_until is not None


class ResetStatus(str, enum.Enum):
    SUCCESS = "success"
    INVALID_NEW_PIN = "invalid_new_pin"
    ADMIN_NOT_FOUND = "admin_not_found"
    NOT_ADMIN = "not_admin"
    ADMIN_PIN_INCORRECT = "admin_pin_incorrect"
    ADMIN_LOCKED = "admin_locked"
    TARGET_NOT_FOUND = "target_not_found"
    FORBIDDEN = "forbidden"


@dataclass(frozen=True)
class ResetResult:
    status: ResetStatus
    reason: Optional[str] = None
    locked_until: Optional[dt.datetime] = None

    @property
    def ok(self) -> bool:
        return self.status is ResetStatus.SUCCESS


class SetPinStatus(str, enum.Enum):
    SUCCESS = "success"
    INVALID_PIN = "invalid_pin"
    NOT_FOUND = "not_found"
    CURRENT_PIN_REQUIRED = "current_pin_required"
    CURRENT_PIN_INCORRECT = "current_pin_incorrect"
    LOCKED = "locked"


@dataclass(frozen=True)
class SetPinResult:
    status: SetPinStatus
    locked_until: Optional[dt.datetime] = None
    updated: bool = False


class RemovePinStatus(str, enum.Enum):
    SUCCESS = "success"
    NOT_FOUND = "not_found"
    ADMIN_CANNOT_REMOVE = "admin_cannot_remove"
    NO_PIN = "no_pin"
    CURRENT_PIN_INCORRECT = "current_pin_incorrect"
    LOCKED = "locked"


@dataclass(frozen=True)
class RemovePinResult:
    status: RemovePinStatus
    locked_until: Optional[dt.datetime] = None
