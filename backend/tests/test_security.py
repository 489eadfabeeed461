import pytest

from backend.app.security import BcryptPinHasher, hash_pin, is_valid_pin, verify_pin


@pytest.mark.parametrize("pin", ["1234", "00000", "987654"])
def test_valid_pin_formats(pin):
    assert is_valid_pin(pin) is True


@pytest.mark.parametrize(
    "pin",
    ["123", "1234567", "12a4", " 1234", "12-34", "", "١٢٣٤", "１２３４", None, 1234],
)
def test_invalid_pin_formats(pin):
    assert is_valid_pin(pin) is False


def test_hash_is_salted_and_verifiable():
    first = hash_pin("1234", rounds=4)
    second = hash_pin("1234", rounds=4)
    assert first != second
    assert "1234" not in first
    assert verify_pin("1234", first)
    assert verify_pin("1234", second)
    assert not verify_pin("4321", first)


def test_default_cost_factor_is_ten():
    hashed = BcryptPinHasher().hash("1234")
    assert hashed.startswith("$2b$10$")


@pytest.mark.parametrize("hashed", [None, "", "not-a-hash", "$2b$10$mockHashedPin"])
def test_verify_never_raises_on_malformed_hash(hashed):
    assert verify_pin("1234", hashed) is False


def test_burn_compares_against_throwaway_hash():
    hasher = BcryptPinHasher(rounds=4)
    hasher.burn("1234")
    hasher.burn("5678")
    assert hasher._dummy_hash is not None
    assert hasher._dummy_hash.startswith("$2b$04$")
