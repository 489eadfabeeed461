from typing import Optional

import bcrypt

PIN_MIN_LENGTH = 4
PIN_MAX_LENGTH = 6
_ASCII_DIGITS = frozenset("0123456789")


def is_valid_pin(pin: object) -> bool:
    """Return True for a string of 4-6 ASCII digits.

    ``str.isdigit`` accepts other Unicode digits, so the check is done
    against an explicit ASCII set.
    """
    if not isinstance(pin, str):
        return False
    if len(pin) < PIN_MIN_LENGTH or len(pin) > PIN_MAX_LENGTH:
        return False
    return all(ch in _ASCII_DIGITS for ch in pin)


def hash_pin(pin: str, rounds: int = 10) -> str:
    return bcrypt.hashpw(pin.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_pin(pin: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(pin.encode("utf-8"), hashed.encode("utf-8"))
    except (TypeError, ValueError):
        return False


class BcryptPinHasher:
    """Salted one-way PIN hashing backed by bcrypt."""

    def __init__(self, rounds: int = 10) -> None:
        self.rounds = rounds
        self._dummy_hash: Optional[str] = None

    def hash(self, pin: str) -> str:
        return hash_pin(pin, self.rounds)

    def verify(self, pin: str, hashed: Optional[str]) -> bool:
        return verify_pin(pin, hashed)

    def burn(self, pin: str) -> None:
        """Run one comparison against a throwaway hash.

        Used when there is no stored hash to compare with, so the caller pays
        the same bcrypt cost as a real mismatch.
        """
        if self._dummy_hash is None:
            self._dummy_hash = hash_pin("000000", self.rounds)
        verify_pin(pin, self._dummy_hash)
