from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .store import ProfileRecord

REASON_NOT_ADMIN = "not admin"
REASON_OTHER_ADMIN = "cannot reset another admin's PIN"


@dataclass(frozen=True)
class ResetDecision:
    allowed: bool
    reason: Optional[str] = None


ALLOWED = ResetDecision(allowed=True)


def can_reset(acting: ProfileRecord, target: ProfileRecord) -> ResetDecision:
    """Decide whether ``acting`` may replace ``target``'s PIN.

    Any admin may reset a standard profile and their own PIN, never another
    admin's. The rule holds for any number of admins. Proof of the acting
    admin's PIN is checked by the caller, not here.
    """
    if not acting.is_admin:
        return ResetDecision(allowed=False, reason=REASON_NOT_ADMIN)
    if acting.id == target.id:
        return ALLOWED
    if target.is_admin:
        return ResetDecision(allowed=False, reason=REASON_OTHER_ADMIN)
    return ALLOWED
