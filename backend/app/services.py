from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Optional, Protocol, cast

from .authorization import can_reset
from .lockout import LockoutPolicy
from .results import (
    RemovePinResult,
    RemovePinStatus,
    ResetResult,
    ResetStatus,
    SetPinResult,
    SetPinStatus,
    VerificationResult,
    VerificationStatus,
)
from .security import is_valid_pin
from .store import ProfileStore, StaleProfileError, StorageError, lockout_fields

logger = logging.getLogger(__name__)


class PinHasher(Protocol):
    def hash(self, pin: str) -> str: ...

    def verify(self, pin: str, hashed: Optional[str]) -> bool: ...

    def burn(self, pin: str) -> None: ...


def _cleared_pin_fields(pin_hash: Optional[str]) -> dict[str, Any]:
    return {
        "pin_hash": pin_hash,
        "pin_enabled": pin_hash is not None,
        "failed_pin_attempts": 0,
        "pin_locked_until": None,
    }


def _record(store: ProfileStore, profile_id: str, action: str, **kwargs: Any) -> None:
    try:
        store.record_event(profile_id, action, **kwargs)
    except StorageError:
        logger.exception("Failed to record audit event %s for profile %s", action, profile_id)


class PinVerificationService:
    def __init__(
        self,
        store: ProfileStore,
        hasher: PinHasher,
        policy: LockoutPolicy,
        *,
        max_update_retries: int = 5,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.policy = policy
        self.max_update_retries = max(1, max_update_retries)

    def verify(self, profile_id: str, candidate_pin: str, now: dt.datetime) -> VerificationResult:
        """Check ``candidate_pin`` for a profile and record the outcome.

        A locked profile is rejected before any hash comparison. Otherwise the
        attempt counter and lockout expiry are written back with a version
        guard; a lost race reloads the profile and applies the policy again.
        """
        compared: dict[str, bool] = {}
        for _ in range(self.max_update_retries):
            profile = self.store.find_by_id(profile_id)
            if profile is None:
                return VerificationResult(VerificationStatus.NOT_FOUND)
            if not profile.pin_configured:
                return VerificationResult(VerificationStatus.NOT_CONFIGURED)

            state = profile.lockout_state
            if self.policy.is_locked(state, now):
                return VerificationResult(
                    VerificationStatus.LOCKED,
                    locked_until=state.locked_until,
                    failed_attempts=state.failed_attempts,
                    attempts_remaining=0,
                )

            pin_hash = cast(str, profile.pin_hash)
            if pin_hash not in compared:
                compared[pin_hash] = self.hasher.verify(candidate_pin, pin_hash)
            matched = compared[pin_hash]

            new_state = self.policy.on_success(state) if matched else self.policy.on_failure(state, now)
            try:
                self.store.update(profile_id, lockout_fields(new_state), expected_version=profile.version)
            except StaleProfileError:
                logger.debug("Profile %s changed during PIN verification; retrying", profile_id)
                continue

            if matched:
                logger.info("PIN verified for profile %s", profile_id)
                _record(self.store, profile_id, "pin.verify")
                return VerificationResult(VerificationStatus.SUCCESS)

            locked = self.policy.is_locked(new_state, now)
            if locked:
                logger.warning(
                    "Profile %s locked until %s after %d failed PIN attempts",
                    profile_id,
                    new_state.locked_until,
                    new_state.failed_attempts,
                )
            else:
                logger.warning(
                    "Incorrect PIN for profile %s (%d failed attempts)", profile_id, new_state.failed_attempts
                )
            _record(
                self.store,
                profile_id,
                "pin.verify_failed",
                details={"failed_attempts": new_state.failed_attempts, "locked": locked},
            )
            return VerificationResult(
                VerificationStatus.INCORRECT_PIN,
                locked_until=new_state.locked_until if locked else None,
                failed_attempts=new_state.failed_attempts,
                attempts_remaining=self.policy.attempts_remaining(new_state),
            )

        raise StorageError(f"Gave up updating PIN attempts for profile {profile_id} after concurrent changes")


class PinResetService:
    def __init__(
        self,
        store: ProfileStore,
        hasher: PinHasher,
        verifier: PinVerificationService,
        *,
        max_update_retries: int = 5,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.verifier = verifier
        self.max_update_retries = max(1, max_update_retries)

    def reset(
        self,
        acting_admin_id: str,
        acting_admin_pin: str,
        target_profile_id: str,
        new_pin: str,
        now: dt.datetime,
    ) -> ResetResult:
        """Replace a profile's PIN on behalf of an admin.

        Steps short-circuit in this order: new PIN format, admin lookup, admin
        type, admin PIN (counts toward the admin's own lockout), target lookup,
        authorization, hash and commit. Authorization is only evaluated once
        the admin has proven their PIN.
        """
        if not is_valid_pin(new_pin):
            return ResetResult(ResetStatus.INVALID_NEW_PIN)

        admin = self.store.find_by_id(acting_admin_id)
        if admin is None:
            return ResetResult(ResetStatus.ADMIN_NOT_FOUND)
        if not admin.is_admin:
            return ResetResult(ResetStatus.NOT_ADMIN)

        verification = self.verifier.verify(acting_admin_id, acting_admin_pin, now)
        if verification.status is VerificationStatus.LOCKED:
            logger.warning("PIN reset refused: admin profile %s is locked", acting_admin_id)
            return ResetResult(ResetStatus.ADMIN_LOCKED, locked_until=verification.locked_until)
        if verification.status is VerificationStatus.NOT_FOUND:
            return ResetResult(ResetStatus.ADMIN_NOT_FOUND)
        if verification.status is VerificationStatus.NOT_CONFIGURED:
            self.hasher.burn(acting_admin_pin)
            return ResetResult(ResetStatus.ADMIN_PIN_INCORRECT)
        if verification.status is not VerificationStatus.SUCCESS:
            return ResetResult(ResetStatus.ADMIN_PIN_INCORRECT)

        new_hash: Optional[str] = None
        for _ in range(self.max_update_retries):
            target = self.store.find_by_id(target_profile_id)
            if target is None:
                return ResetResult(ResetStatus.TARGET_NOT_FOUND)

            decision = can_reset(admin, target)
            if not decision.allowed:
                logger.warning(
                    "PIN reset of profile %s by admin %s denied: %s",
                    target_profile_id,
                    acting_admin_id,
                    decision.reason,
                )
                return ResetResult(ResetStatus.FORBIDDEN, reason=decision.reason)

            if new_hash is None:
                new_hash = self.hasher.hash(new_pin)
            try:
                self.store.update(target_profile_id, _cleared_pin_fields(new_hash), expected_version=target.version)
            except StaleProfileError:
                logger.debug("Profile %s changed during PIN reset; retrying", target_profile_id)
                continue

            logger.info("PIN for profile %s reset by admin %s", target_profile_id, acting_admin_id)
            _record(self.store, target_profile_id, "pin.reset", actor_profile_id=acting_admin_id)
            return ResetResult(ResetStatus.SUCCESS)

        raise StorageError(f"Gave up resetting PIN for profile {target_profile_id} after concurrent changes")


class PinManagementService:
    """Self-service PIN changes: set or replace a PIN, and remove it."""

    def __init__(
        self,
        store: ProfileStore,
        hasher: PinHasher,
        verifier: PinVerificationService,
        *,
        max_update_retries: int = 5,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.verifier = verifier
        self.max_update_retries = max(1, max_update_retries)

    def set_pin(
        self,
        profile_id: str,
        pin: str,
        current_pin: Optional[str],
        now: dt.datetime,
    ) -> SetPinResult:
        if not is_valid_pin(pin):
            return SetPinResult(SetPinStatus.INVALID_PIN)

        new_hash: Optional[str] = None
        verified_hash: Optional[str] = None
        # One extra pass for the current PIN check.
        for _ in range(self.max_update_retries + 1):
            profile = self.store.find_by_id(profile_id)
            if profile is None:
                return SetPinResult(SetPinStatus.NOT_FOUND)

            if profile.pin_configured and profile.pin_hash != verified_hash:
                if not current_pin:
                    return SetPinResult(SetPinStatus.CURRENT_PIN_REQUIRED)
                verification = self.verifier.verify(profile_id, current_pin, now)
                if verification.status is VerificationStatus.LOCKED:
                    return SetPinResult(SetPinStatus.LOCKED, locked_until=verification.locked_until)
                if verification.status is VerificationStatus.NOT_FOUND:
                    return SetPinResult(SetPinStatus.NOT_FOUND)
                if verification.status is VerificationStatus.INCORRECT_PIN:
                    return SetPinResult(SetPinStatus.CURRENT_PIN_INCORRECT, locked_until=verification.locked_until)
                # Verification bumped the version; reload before writing.
                verified_hash = profile.pin_hash
                continue

            if new_hash is None:
                new_hash = self.hasher.hash(pin)
            try:
                self.store.update(profile_id, _cleared_pin_fields(new_hash), expected_version=profile.version)
            except StaleProfileError:
                logger.debug("Profile %s changed while setting PIN; retrying", profile_id)
                continue

            logger.info("PIN set for profile %s", profile_id)
            _record(self.store, profile_id, "pin.set", details={"is_update": profile.pin_enabled})
            return SetPinResult(SetPinStatus.SUCCESS, updated=profile.pin_enabled)

        raise StorageError(f"Gave up setting PIN for profile {profile_id} after concurrent changes")

    def remove_pin(self, profile_id: str, current_pin: str, now: dt.datetime) -> RemovePinResult:
        verified_hash: Optional[str] = None
        for _ in range(self.max_update_retries + 1):
            profile = self.store.find_by_id(profile_id)
            if profile is None:
                return RemovePinResult(RemovePinStatus.NOT_FOUND)
            if profile.is_admin:
                return RemovePinResult(RemovePinStatus.ADMIN_CANNOT_REMOVE)
            if not profile.pin_configured:
                return RemovePinResult(RemovePinStatus.NO_PIN)

            if profile.pin_hash != verified_hash:
                verification = self.verifier.verify(profile_id, current_pin, now)
                if verification.status is VerificationStatus.LOCKED:
                    return RemovePinResult(RemovePinStatus.LOCKED, locked_until=verification.locked_until)
                if verification.status is VerificationStatus.NOT_FOUND:
                    return RemovePinResult(RemovePinStatus.NOT_FOUND)
                if verification.status is VerificationStatus.NOT_CONFIGURED:
                    return RemovePinResult(RemovePinStatus.NO_PIN)
                if verification.status is VerificationStatus.INCORRECT_PIN:
                    return RemovePinResult(RemovePinStatus.CURRENT_PIN_INCORRECT, locked_until=verification.locked_until)
                verified_hash = profile.pin_hash
                continue

            try:
                self.store.update(profile_id, _cleared_pin_fields(None), expected_version=profile.version)
            except StaleProfileError:
                logger.debug("Profile %s changed while removing PIN; retrying", profile_id)
                continue

            logger.info("PIN removed for profile %s", profile_id)
            _record(self.store, profile_id, "pin.remove")
            return RemovePinResult(RemovePinStatus.SUCCESS)

        raise StorageError(f"Gave up removing PIN for profile {profile_id} after concurrent changes")
