import datetime as dt

import pytest

from backend.app.authorization import REASON_OTHER_ADMIN
from backend.app.results import ResetStatus, VerificationStatus
from backend.app.store import ProfileType, StorageError

from conftest import ADMIN_A, ADMIN_B, NOW, STANDARD_S, STANDARD_T, make_profile


def test_admin_resets_standard_profile_from_unset(reset_service, verifier, store):
    result = reset_service.reset(ADMIN_A, "1234", STANDARD_S, "5678", NOW)

    assert result.status is ResetStatus.SUCCESS
    record = store.find_by_id(STANDARD_S)
    assert record.pin_enabled
    assert record.pin_hash.startswith("$2b$")
    assert verifier.verify(STANDARD_S, "5678", NOW).status is VerificationStatus.SUCCESS
    assert verifier.verify(STANDARD_S, "0000", NOW).status is VerificationStatus.INCORRECT_PIN


def test_reset_replaces_old_pin(reset_service, verifier):
    assert reset_service.reset(ADMIN_A, "1234", STANDARD_T, "13579", NOW).ok
    assert verifier.verify(STANDARD_T, "13579", NOW).ok
    assert verifier.verify(STANDARD_T, "2468", NOW).status is VerificationStatus.INCORRECT_PIN


def test_admin_cannot_reset_other_admin(reset_service, store):
    before = store.find_by_id(ADMIN_B)

    result = reset_service.reset(ADMIN_A, "1234", ADMIN_B, "5678", NOW)

    assert result.status is ResetStatus.FORBIDDEN
    assert result.reason == REASON_OTHER_ADMIN
    assert store.find_by_id(ADMIN_B).pin_hash == before.pin_hash


def test_second_admin_cannot_reset_first_admin(reset_service, store):
    before = store.find_by_id(ADMIN_A)
    result = reset_service.reset(ADMIN_B, "4321", ADMIN_A, "5678", NOW)
    assert result.status is ResetStatus.FORBIDDEN
    assert store.find_by_id(ADMIN_A).pin_hash == before.pin_hash


@pytest.mark.parametrize("admin_id, admin_pin", [(ADMIN_A, "1234"), (ADMIN_B, "4321")])
def test_each_admin_may_reset_own_pin(reset_service, verifier, admin_id, admin_pin):
    assert reset_service.reset(admin_id, admin_pin, admin_id, "112233", NOW).ok
    assert verifier.verify(admin_id, "112233", NOW).ok
    assert verifier.verify(admin_id, admin_pin, NOW).status is VerificationStatus.INCORRECT_PIN


def test_second_admin_resets_standard_profile(reset_service, verifier):
    assert reset_service.reset(ADMIN_B, "4321", STANDARD_T, "8642", NOW).ok
    assert verifier.verify(STANDARD_T, "8642", NOW).ok


@pytest.mark.parametrize("new_pin", ["123", "1234567", "12ab", "", "١٢٣٤"])
def test_invalid_new_pin_short_circuits_before_lookup(reset_service, store, hasher, new_pin):
    result = reset_service.reset(ADMIN_A, "1234", STANDARD_S, new_pin, NOW)

    assert result.status is ResetStatus.INVALID_NEW_PIN
    assert store.find_calls == 0
    assert store.update_calls == 0
    assert hasher.verify_calls == 0


def test_unknown_admin(reset_service, hasher):
    result = reset_service.reset("ghost", "1234", STANDARD_S, "5678", NOW)
    assert result.status is ResetStatus.ADMIN_NOT_FOUND
    assert hasher.verify_calls == 0


def test_standard_profile_cannot_act_as_admin(reset_service, hasher, store):
    result = reset_service.reset(STANDARD_T, "2468", STANDARD_S, "5678", NOW)
    assert result.status is ResetStatus.NOT_ADMIN
    assert hasher.verify_calls == 0
    assert store.find_by_id(STANDARD_T).failed_pin_attempts == 0


def test_wrong_admin_pin_counts_toward_admin_lockout(reset_service, store):
    result = reset_service.reset(ADMIN_A, "0000", STANDARD_S, "5678", NOW)

    assert result.status is ResetStatus.ADMIN_PIN_INCORRECT
    assert store.find_by_id(ADMIN_A).failed_pin_attempts == 1
    assert not store.find_by_id(STANDARD_S).pin_enabled


def test_wrong_admin_pin_hides_target_existence(reset_service):
    missing = reset_service.reset(ADMIN_A, "0000", "ghost", "5678", NOW)
    other_admin = reset_service.reset(ADMIN_A, "0000", ADMIN_B, "5678", NOW)
    assert missing.status is ResetStatus.ADMIN_PIN_INCORRECT
    assert other_admin.status is ResetStatus.ADMIN_PIN_INCORRECT


def test_locked_admin_gets_reauthentication_signal(reset_service, store, hasher):
    for _ in range(5):
        reset_service.reset(ADMIN_A, "0000", STANDARD_S, "5678", NOW)
    calls = hasher.verify_calls

    result = reset_service.reset(ADMIN_A, "1234", STANDARD_S, "5678", NOW + dt.timedelta(minutes=1))

    assert result.status is ResetStatus.ADMIN_LOCKED
    assert result.locked_until == NOW + dt.timedelta(minutes=5)
    assert hasher.verify_calls == calls
    assert not store.find_by_id(STANDARD_S).pin_enabled


def test_admin_without_pin_pays_hash_cost(reset_service, store, hasher):
    store.add(make_profile("admin-no-pin", ProfileType.ADMIN))

    result = reset_service.reset("admin-no-pin", "1234", STANDARD_S, "5678", NOW)

    assert result.status is ResetStatus.ADMIN_PIN_INCORRECT
    assert hasher.burn_calls == 1
    assert store.find_by_id("admin-no-pin").failed_pin_attempts == 0


def test_missing_target(reset_service):
    result = reset_service.reset(ADMIN_A, "1234", "ghost", "5678", NOW)
    assert result.status is ResetStatus.TARGET_NOT_FOUND


def test_reset_clears_target_lockout(reset_service, verifier, store):
    for _ in range(5):
        verifier.verify(STANDARD_T, "0000", NOW)
    assert verifier.verify(STANDARD_T, "2468", NOW).status is VerificationStatus.LOCKED

    assert reset_service.reset(ADMIN_A, "1234", STANDARD_T, "9753", NOW).ok

    record = store.find_by_id(STANDARD_T)
    assert record.failed_pin_attempts == 0
    assert record.pin_locked_until is None
    assert verifier.verify(STANDARD_T, "9753", NOW).ok


def test_successful_reset_clears_admin_attempts_and_is_audited(reset_service, store):
    reset_service.reset(ADMIN_A, "0000", STANDARD_S, "5678", NOW)
    assert reset_service.reset(ADMIN_A, "1234", STANDARD_S, "5678", NOW).ok

    assert store.find_by_id(ADMIN_A).failed_pin_attempts == 0
    reset_events = [event for event in store.events if event.action == "pin.reset"]
    assert len(reset_events) == 1
    assert reset_events[0].profile_id == STANDARD_S
    assert reset_events[0].actor_profile_id == ADMIN_A


def test_new_pin_hashed_once(reset_service, hasher):
    assert reset_service.reset(ADMIN_A, "1234", STANDARD_S, "5678", NOW).ok
    assert hasher.hash_calls == 1


def test_storage_failure_on_commit_propagates(reset_service, store, monkeypatch):
    original_update = store.update

    def failing_update(profile_id, fields, *, expected_version=None):
        if profile_id == STANDARD_S:
            raise StorageError("disk full")
        return original_update(profile_id, fields, expected_version=expected_version)

    monkeypatch.setattr(store, "update", failing_update)
    with pytest.raises(StorageError):
        reset_service.reset(ADMIN_A, "1234", STANDARD_S, "5678", NOW)
