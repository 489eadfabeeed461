"""Profile persistence used by the PIN services.

Services talk to a :class:`ProfileStore` and only ever see immutable
:class:`ProfileRecord` snapshots. Every write is guarded by the record's
``version`` so concurrent read-modify-write cycles on one profile cannot
silently overwrite each other.
"""

from __future__ import annotations

import datetime as dt
import enum
import json
import threading
from dataclasses import dataclass, replace
from typing import Any, Callable, ContextManager, Mapping, Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .lockout import LockoutState
from .models import Profile, ProfileAuditLog, utcnow


UPDATABLE_FIELDS = frozenset({"pin_hash", "pin_enabled", "failed_pin_attempts", "pin_locked_until"})


class ProfileType(str, enum.Enum):
    ADMIN = "admin"
    STANDARD = "standard"


class StorageError(Exception):
    """Raised when the profile store cannot read or write a record."""


class StaleProfileError(StorageError):
    """Raised when a conditional update lost against a concurrent writer."""


@dataclass(frozen=True)
class ProfileRecord:
    id: str
    type: ProfileType
    pin_hash: Optional[str] = None
    pin_enabled: bool = False
    failed_pin_attempts: int = 0
    pin_locked_until: Optional[dt.datetime] = None
    name: str = ""
    version: int = 1

    @property
    def is_admin(self) -> bool:
        return self.type is ProfileType.ADMIN

    @property
    def pin_configured(self) -> bool:
        return self.pin_enabled and bool(self.pin_hash)

    @property
    def lockout_state(self) -> LockoutState:
        return LockoutState(self.failed_pin_attempts, self.pin_locked_until)


@dataclass(frozen=True)
class AuditEvent:
    profile_id: str
    action: str
    actor_profile_id: Optional[str] = None
    details: Optional[dict[str, Any]] = None


class ProfileStore(Protocol):
    def find_by_id(self, profile_id: str) -> Optional[ProfileRecord]: ...

    def update(
        self,
        profile_id: str,
        fields: Mapping[str, Any],
        *,
        expected_version: Optional[int] = None,
    ) -> ProfileRecord: ...

    def record_event(
        self,
        profile_id: str,
        action: str,
        *,
        actor_profile_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None: ...


def lockout_fields(state: LockoutState) -> dict[str, Any]:
    return {"failed_pin_attempts": state.failed_attempts, "pin_locked_until": state.locked_until}


def _check_fields(fields: Mapping[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported profile fields: {', '.join(sorted(unknown))}")


def _to_utc(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def _to_db(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    # DateTime columns are naive UTC.
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(dt.timezone.utc).replace(tzinfo=None)


class InMemoryProfileStore:
    """Dictionary backed store; writes are serialized by a single lock."""

    def __init__(self, profiles: Optional[list[ProfileRecord]] = None) -> None:
        self._lock = threading.Lock()
        self._profiles: dict[str, ProfileRecord] = {p.id: p for p in profiles or []}
        self.events: list[AuditEvent] = []

    def add(self, profile: ProfileRecord) -> ProfileRecord:
        with self._lock:
            self._profiles[profile.id] = profile
        return profile

    def find_by_id(self, profile_id: str) -> Optional[ProfileRecord]:
        with self._lock:
            return self._profiles.get(profile_id)

    def update(
        self,
        profile_id: str,
        fields: Mapping[str, Any],
        *,
        expected_version: Optional[int] = None,
    ) -> ProfileRecord:
        _check_fields(fields)
        with self._lock:
            current = self._profiles.get(profile_id)
            if current is None:
                raise StorageError(f"Profile {profile_id} does not exist")
            if expected_version is not None and current.version != expected_version:
                raise StaleProfileError(
                    f"Profile {profile_id} is at version {current.version}, expected {expected_version}"
                )
            updated = replace(current, **fields, version=current.version + 1)
            self._profiles[profile_id] = updated
            return updated

    def record_event(
        self,
        profile_id: str,
        action: str,
        *,
        actor_profile_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        with self._lock:
            self.events.append(AuditEvent(profile_id, action, actor_profile_id, details))


class SqlAlchemyProfileStore:
    """Store over the ``profiles`` table.

    ``session_factory`` is a context manager factory such as
    :func:`backend.app.database.session_scope`; each call runs in its own
    transaction.
    """

    def __init__(self, session_factory: Callable[[], ContextManager[Session]]) -> None:
        self._session_factory = session_factory

    @staticmethod
    def _to_record(row: Profile) -> ProfileRecord:
        return ProfileRecord(
            id=row.id,
            type=ProfileType(row.type),
            pin_hash=row.pin_hash,
            pin_enabled=bool(row.pin_enabled),
            failed_pin_attempts=row.failed_pin_attempts or 0,
            pin_locked_until=_to_utc(row.pin_locked_until),
            name=row.name,
            version=row.version,
        )

    def find_by_id(self, profile_id: str) -> Optional[ProfileRecord]:
        try:
            with self._session_factory() as session:
                row = session.scalar(
                    select(Profile).where(Profile.id == profile_id).where(Profile.active.is_(True))
                )
                return self._to_record(row) if row else None
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to load profile {profile_id}") from exc

    def update(
        self,
        profile_id: str,
        fields: Mapping[str, Any],
        *,
        expected_version: Optional[int] = None,
    ) -> ProfileRecord:
        _check_fields(fields)
        values = dict(fields)
        if "pin_locked_until" in values:
            values["pin_locked_until"] = _to_db(values["pin_locked_until"])
        values["version"] = Profile.version + 1
        values["updated_at"] = utcnow()

        stmt = update(Profile).where(Profile.id == profile_id)
        if expected_version is not None:
            stmt = stmt.where(Profile.version == expected_version)
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        try:
            with self._session_factory() as session:
                result = session.execute(stmt)
                if result.rowcount == 0:
                    exists = session.scalar(select(Profile.id).where(Profile.id == profile_id))
                    if exists is None:
                        raise StorageError(f"Profile {profile_id} does not exist")
                    raise StaleProfileError(f"Profile {profile_id} changed since version {expected_version}")
                row = session.get(Profile, profile_id, populate_existing=True)
                return self._to_record(row)
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to update profile {profile_id}") from exc

    def record_event(
        self,
        profile_id: str,
        action: str,
        *,
        actor_profile_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        payload = json.dumps(details, ensure_ascii=False) if details else None
        try:
            with self._session_factory() as session:
                session.add(
                    ProfileAuditLog(
                        profile_id=profile_id,
                        actor_profile_id=actor_profile_id,
                        action=action,
                        details=payload,
                    )
                )
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to record audit event {action}") from exc
