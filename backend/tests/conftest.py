import datetime as dt
import os
from typing import Optional

import pytest

os.environ.setdefault("PIN_ROUNDS", "4")
os.environ.setdefault("DATABASE_URL", "sqlite://")

from backend.app.lockout import LockoutPolicy  # noqa: E402
from backend.app.security import BcryptPinHasher, hash_pin  # noqa: E402
from backend.app.services import PinManagementService, PinResetService, PinVerificationService  # noqa: E402
from backend.app.store import InMemoryProfileStore, ProfileRecord, ProfileType  # noqa: E402

NOW = dt.datetime(2024, 1, 1, 12, 0, tzinfo=dt.timezone.utc)

ADMIN_A = "profile-admin-1"
ADMIN_B = "profile-admin-2"
STANDARD_S = "profile-standard-1"
STANDARD_T = "profile-standard-2"


class CountingHasher(BcryptPinHasher):
    def __init__(self) -> None:
        super().__init__(rounds=4)
        self.hash_calls = 0
        self.verify_calls = 0
        self.burn_calls = 0

    def hash(self, pin: str) -> str:
        self.hash_calls += 1
        return super().hash(pin)

    def verify(self, pin: str, hashed: Optional[str]) -> bool:
        self.verify_calls += 1
        return super().verify(pin, hashed)

    def burn(self, pin: str) -> None:
        self.burn_calls += 1
        super().burn(pin)


class CountingStore(InMemoryProfileStore):
    def __init__(self, profiles=None) -> None:
        super().__init__(profiles)
        self.find_calls = 0
        self.update_calls = 0

    def find_by_id(self, profile_id):
        self.find_calls += 1
        return super().find_by_id(profile_id)

    def update(self, profile_id, fields, *, expected_version=None):
        self.update_calls += 1
        return super().update(profile_id, fields, expected_version=expected_version)


def make_profile(
    profile_id: str,
    profile_type: ProfileType = ProfileType.STANDARD,
    pin: Optional[str] = None,
    **overrides,
) -> ProfileRecord:
    fields = {
        "id": profile_id,
        "type": profile_type,
        "pin_hash": hash_pin(pin, rounds=4) if pin else None,
        "pin_enabled": pin is not None,
        "name": profile_id,
    }
    fields.update(overrides)
    return ProfileRecord(**fields)


@pytest.fixture
def hasher():
    return CountingHasher()


@pytest.fixture
def policy():
    return LockoutPolicy(max_failed_attempts=5, lockout_duration=dt.timedelta(minutes=5))


@pytest.fixture
def store():
    return CountingStore(
        [
            make_profile(ADMIN_A, ProfileType.ADMIN, "1234"),
            make_profile(ADMIN_B, ProfileType.ADMIN, "4321"),
            make_profile(STANDARD_S),
            make_profile(STANDARD_T, pin="2468"),
        ]
    )


@pytest.fixture
def verifier(store, hasher, policy):
    return PinVerificationService(store, hasher, policy)


@pytest.fixture
def reset_service(store, hasher, verifier):
    return PinResetService(store, hasher, verifier)


@pytest.fixture
def management_service(store, hasher, verifier):
    return PinManagementService(store, hasher, verifier)
