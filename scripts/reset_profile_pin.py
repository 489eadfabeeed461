#!/usr/bin/env python3
"""CLI utility for resetting a profile PIN on behalf of an admin profile.

The acting admin must still prove their own PIN, and the same rules as the
API apply: an admin may reset any standard profile and their own PIN, never
another admin's. A wrong admin PIN counts toward that admin's lockout.
"""

from __future__ import annotations

import argparse
import datetime as dt
import logging
import sys
from getpass import getpass
from pathlib import Path
from typing import Callable, Optional


REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from backend.app.config import get_settings  # noqa: E402
from backend.app.database import configure_engine, session_scope  # noqa: E402
from backend.app.lockout import LockoutPolicy  # noqa: E402
from backend.app.results import ResetResult, ResetStatus  # noqa: E402
from backend.app.security import BcryptPinHasher, is_valid_pin  # noqa: E402
from backend.app.services import PinResetService, PinVerificationService  # noqa: E402
from backend.app.store import ProfileStore, SqlAlchemyProfileStore, StorageError  # noqa: E402


LOGGER = logging.getLogger("familyhub.reset_profile_pin")

OUTCOME_MESSAGES = {
    ResetStatus.SUCCESS: "PIN reset successfully.",
    ResetStatus.INVALID_NEW_PIN: "New PIN must be 4-6 digits",
    ResetStatus.ADMIN_NOT_FOUND: "Admin profile not found",
    ResetStatus.NOT_ADMIN: "Only admin profiles can reset PINs",
    ResetStatus.ADMIN_PIN_INCORRECT: "Admin PIN is incorrect",
    ResetStatus.ADMIN_LOCKED: "Admin profile is locked due to too many failed attempts",
    ResetStatus.TARGET_NOT_FOUND: "Target profile not found",
    ResetStatus.FORBIDDEN: "Cannot reset another admin's PIN",
}


def validate_pin(pin: str) -> str:
    candidate = pin.strip()
    if not is_valid_pin(candidate):
        raise ValueError("PIN must be 4-6 digits.")
    return candidate


def prompt_for_pin(echo: bool = False) -> str:
    while True:
        prompt_fn = input if echo else getpass
        first = prompt_fn("Enter new PIN: ").strip()
        second = prompt_fn("Confirm new PIN: ").strip()
        if first != second:
            print("PINs did not match. Please try again.", file=sys.stderr)
            continue
        try:
            return validate_pin(first)
        except ValueError as exc:
            print(str(exc), file=sys.stderr)


def acquire_pin(pin_arg: Optional[str], echo: bool, require_confirmation: bool) -> str:
    if pin_arg:
        candidate = validate_pin(pin_arg)
        if require_confirmation:
            confirmer = input if echo else getpass
            confirmation = confirmer("Confirm new PIN: ").strip()
            if candidate != confirmation:
                raise ValueError("Provided PIN and confirmation do not match.")
        return candidate
    return prompt_for_pin(echo=echo)


def build_store() -> ProfileStore:
    LOGGER.info("Loading application settings")
    settings = get_settings()
    configure_engine(settings.sqlalchemy_database_uri)
    return SqlAlchemyProfileStore(session_scope)


def reset_pin(
    store: ProfileStore,
    admin_id: str,
    admin_pin: str,
    target_id: str,
    new_pin: str,
    now: Optional[dt.datetime] = None,
) -> ResetResult:
    settings = get_settings()
    hasher = BcryptPinHasher(rounds=settings.pin_rounds)
    policy = LockoutPolicy(
        max_failed_attempts=settings.pin_max_failed_attempts,
        lockout_duration=dt.timedelta(minutes=settings.pin_lockout_minutes),
    )
    verifier = PinVerificationService(store, hasher, policy, max_update_retries=settings.pin_update_retries)
    service = PinResetService(store, hasher, verifier, max_update_retries=settings.pin_update_retries)
    LOGGER.info("Resetting PIN for profile %s on behalf of admin %s", target_id, admin_id)
    return service.reset(admin_id, admin_pin, target_id, new_pin, now or dt.datetime.now(dt.timezone.utc))


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Reset a profile PIN on behalf of an admin profile."
    )
    parser.add_argument("--admin-id", required=True, help="Identifier of the acting admin profile.")
    parser.add_argument("--target-id", required=True, help="Identifier of the profile whose PIN is reset.")
    parser.add_argument(
        "--pin",
        help="New PIN value. If omitted, you will be prompted securely.",
    )
    parser.add_argument(
        "--echo",
        action="store_true",
        help="Echo PIN input to the console (useful for automation, avoid in production).",
    )
    parser.add_argument(
        "--no-confirm",
        action="store_true",
        help="Skip confirmation prompt when --pin is provided.",
    )
    return parser.parse_args(argv)


def main(
    argv: list[str] | None = None,
    store_factory: Callable[[], ProfileStore] = build_store,
    admin_pin_reader: Callable[[str], str] = getpass,
) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    args = parse_args(argv if argv is not None else sys.argv[1:])

    try:
        new_pin = acquire_pin(
            pin_arg=args.pin,
            echo=args.echo,
            require_confirmation=not args.no_confirm,
        )
    except ValueError as exc:
        print(f"Aborting: {exc}", file=sys.stderr)
        return 1

    admin_pin = admin_pin_reader("Admin PIN: ").strip()

    try:
        result = reset_pin(store_factory(), args.admin_id, admin_pin, args.target_id, new_pin)
    except StorageError as exc:
        print(f"Failed to reset PIN: {exc}", file=sys.stderr)
        return 1

    if not result.ok:
        print(f"Aborting: {OUTCOME_MESSAGES[result.status]}", file=sys.stderr)
        return 1

    LOGGER.info(OUTCOME_MESSAGES[ResetStatus.SUCCESS])
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
