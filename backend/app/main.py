from __future__ import annotations

import datetime as dt
import logging
from functools import lru_cache
from typing import Callable, Optional

from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError

from . import schemas
from .config import get_settings
from .database import get_engine, session_scope
from .lockout import LockoutPolicy, LockoutState
from .results import (
    RemovePinStatus,
    ResetResult,
    ResetStatus,
    SetPinStatus,
    VerificationResult,
    VerificationStatus,
)
from .security import BcryptPinHasher
from .services import PinHasher, PinManagementService, PinResetService, PinVerificationService
from .store import ProfileStore, SqlAlchemyProfileStore, StorageError

settings = get_settings()
app = FastAPI(title="FamilyHub Profile PIN API", version="0.1.0")
api_router = APIRouter()
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
logger = logging.getLogger(__name__)

LOCKED_MESSAGE = "Profile locked due to too many failed attempts"

RESET_ERRORS: dict[ResetStatus, tuple[int, str]] = {
    ResetStatus.INVALID_NEW_PIN: (status.HTTP_400_BAD_REQUEST, "New PIN must be 4-6 digits"),
    ResetStatus.ADMIN_NOT_FOUND: (status.HTTP_404_NOT_FOUND, "Admin profile not found"),
    ResetStatus.NOT_ADMIN: (status.HTTP_403_FORBIDDEN, "Only admin profiles can reset PINs"),
    ResetStatus.ADMIN_PIN_INCORRECT: (status.HTTP_401_UNAUTHORIZED, "Admin PIN is incorrect"),
    ResetStatus.TARGET_NOT_FOUND: (status.HTTP_404_NOT_FOUND, "Target profile not found"),
    ResetStatus.FORBIDDEN: (status.HTTP_403_FORBIDDEN, "Cannot reset another admin's PIN"),
}

# Per endpoint: (missing or malformed field message, failure message).
REQUEST_ERRORS: dict[str, tuple[str, str]] = {
    "reset-pin": ("Admin profile ID, admin PIN, and new PIN required", "Failed to reset PIN"),
    "verify-pin": ("PIN required", "Failed to verify PIN"),
    "set-pin": ("PIN must be 4-6 digits", "Failed to set PIN"),
    "remove-pin": ("Current PIN required", "Failed to remove PIN"),
}

SET_PIN_ERRORS: dict[SetPinStatus, tuple[int, str]] = {
    SetPinStatus.INVALID_PIN: (status.HTTP_400_BAD_REQUEST, "PIN must be 4-6 digits"),
    SetPinStatus.NOT_FOUND: (status.HTTP_404_NOT_FOUND, "Profile not found"),
    SetPinStatus.CURRENT_PIN_REQUIRED: (status.HTTP_400_BAD_REQUEST, "Current PIN required"),
    SetPinStatus.CURRENT_PIN_INCORRECT: (status.HTTP_401_UNAUTHORIZED, "Current PIN is incorrect"),
}

REMOVE_PIN_ERRORS: dict[RemovePinStatus, tuple[int, str]] = {
    RemovePinStatus.NOT_FOUND: (status.HTTP_404_NOT_FOUND, "Profile not found"),
    RemovePinStatus.ADMIN_CANNOT_REMOVE: (status.HTTP_403_FORBIDDEN, "Admin profiles cannot remove PIN"),
    RemovePinStatus.NO_PIN: (status.HTTP_400_BAD_REQUEST, "Profile does not have a PIN"),
    RemovePinStatus.CURRENT_PIN_INCORRECT: (status.HTTP_401_UNAUTHORIZED, "Current PIN is incorrect"),
}


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def get_profile_store() -> ProfileStore:
    return SqlAlchemyProfileStore(session_scope)


@lru_cache
def get_pin_hasher() -> PinHasher:
    return BcryptPinHasher(rounds=settings.pin_rounds)


def get_lockout_policy() -> LockoutPolicy:
    return LockoutPolicy(
        max_failed_attempts=settings.pin_max_failed_attempts,
        lockout_duration=dt.timedelta(minutes=settings.pin_lockout_minutes),
    )


def get_clock() -> Callable[[], dt.datetime]:
    return utc_now


def get_verification_service(
    store: ProfileStore = Depends(get_profile_store),
    hasher: PinHasher = Depends(get_pin_hasher),
    policy: LockoutPolicy = Depends(get_lockout_policy),
) -> PinVerificationService:
    return PinVerificationService(store, hasher, policy, max_update_retries=settings.pin_update_retries)


def get_reset_service(
    store: ProfileStore = Depends(get_profile_store),
    hasher: PinHasher = Depends(get_pin_hasher),
    verifier: PinVerificationService = Depends(get_verification_service),
) -> PinResetService:
    return PinResetService(store, hasher, verifier, max_update_retries=settings.pin_update_retries)


def get_management_service(
    store: ProfileStore = Depends(get_profile_store),
    hasher: PinHasher = Depends(get_pin_hasher),
    verifier: PinVerificationService = Depends(get_verification_service),
) -> PinManagementService:
    return PinManagementService(store, hasher, verifier, max_update_retries=settings.pin_update_retries)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=schemas.ErrorResponse(error=message).model_dump())


def _locked(policy: LockoutPolicy, locked_until: Optional[dt.datetime], now: dt.datetime) -> JSONResponse:
    remaining = policy.seconds_remaining(LockoutState(locked_until=locked_until), now)
    body = schemas.LockedResponse(error=LOCKED_MESSAGE, locked_for=remaining)
    return JSONResponse(status_code=status.HTTP_429_TOO_MANY_REQUESTS, content=body.model_dump(by_alias=True))


def _success() -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_200_OK, content=schemas.SuccessResponse().model_dump())


def reset_result_response(result: ResetResult, policy: LockoutPolicy, now: dt.datetime) -> JSONResponse:
    if result.status is ResetStatus.SUCCESS:
        return _success()
    if result.status is ResetStatus.ADMIN_LOCKED:
        return _locked(policy, result.locked_until, now)
    status_code, message = RESET_ERRORS[result.status]
    return _error(status_code, message)


def verification_result_response(
    result: VerificationResult, policy: LockoutPolicy, now: dt.datetime
) -> JSONResponse:
    if result.status in (VerificationStatus.SUCCESS, VerificationStatus.NOT_CONFIGURED):
        return _success()
    if result.status is VerificationStatus.NOT_FOUND:
        return _error(status.HTTP_404_NOT_FOUND, "Profile not found")
    if result.status is VerificationStatus.LOCKED:
        return _locked(policy, result.locked_until, now)
    body = schemas.IncorrectPinResponse(
        error="Incorrect PIN",
        attempts_remaining=result.attempts_remaining or 0,
        locked=result.locked,
    )
    return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content=body.model_dump(by_alias=True))


@app.on_event("startup")
def ensure_engine():
    try:
        get_engine()
    except (RuntimeError, OperationalError) as exc:
        logger.warning("Database engine unavailable on startup: %s", exc)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    endpoint = request.url.path.rstrip("/").rsplit("/", 1)[-1]
    if endpoint not in REQUEST_ERRORS:
        return _error(status.HTTP_400_BAD_REQUEST, "Invalid request")
    invalid_message, failure_message = REQUEST_ERRORS[endpoint]
    if any(error.get("type") == "json_invalid" for error in exc.errors()):
        logger.error("Unreadable request body (endpoint=%s, method=%s)", request.url.path, request.method)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, failure_message)
    return _error(status.HTTP_400_BAD_REQUEST, invalid_message)


@api_router.post("/profiles/{profile_id}/reset-pin", response_model=schemas.SuccessResponse)
def reset_pin_endpoint(
    profile_id: str,
    payload: schemas.ResetPinRequest,
    service: PinResetService = Depends(get_reset_service),
    clock: Callable[[], dt.datetime] = Depends(get_clock),
    policy: LockoutPolicy = Depends(get_lockout_policy),
):
    if not payload.admin_profile_id or not payload.admin_pin or not payload.new_pin:
        return _error(status.HTTP_400_BAD_REQUEST, "Admin profile ID, admin PIN, and new PIN required")
    now = clock()
    try:
        result = service.reset(payload.admin_profile_id, payload.admin_pin, profile_id, payload.new_pin, now)
    except StorageError:
        logger.exception("Failed to reset PIN (endpoint=/api/profiles/%s/reset-pin, method=POST)", profile_id)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to reset PIN")
    return reset_result_response(result, policy, now)


@api_router.post("/profiles/{profile_id}/verify-pin", response_model=schemas.SuccessResponse)
def verify_pin_endpoint(
    profile_id: str,
    payload: schemas.VerifyPinRequest,
    service: PinVerificationService = Depends(get_verification_service),
    clock: Callable[[], dt.datetime] = Depends(get_clock),
    policy: LockoutPolicy = Depends(get_lockout_policy),
):
    if not payload.pin:
        return _error(status.HTTP_400_BAD_REQUEST, "PIN required")
    now = clock()
    try:
        result = service.verify(profile_id, payload.pin, now)
    except StorageError:
        logger.exception("Failed to verify PIN (endpoint=/api/profiles/%s/verify-pin, method=POST)", profile_id)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to verify PIN")
    return verification_result_response(result, policy, now)


@api_router.post("/profiles/{profile_id}/set-pin", response_model=schemas.SuccessResponse)
def set_pin_endpoint(
    profile_id: str,
    payload: schemas.SetPinRequest,
    service: PinManagementService = Depends(get_management_service),
    clock: Callable[[], dt.datetime] = Depends(get_clock),
    policy: LockoutPolicy = Depends(get_lockout_policy),
):
    now = clock()
    try:
        result = service.set_pin(profile_id, payload.pin or "", payload.current_pin, now)
    except StorageError:
        logger.exception("Failed to set PIN (endpoint=/api/profiles/%s/set-pin, method=POST)", profile_id)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to set PIN")
    if result.status is SetPinStatus.SUCCESS:
        return _success()
    if result.status is SetPinStatus.LOCKED:
        return _locked(policy, result.locked_until, now)
    status_code, message = SET_PIN_ERRORS[result.status]
    return _error(status_code, message)


@api_router.post("/profiles/{profile_id}/remove-pin", response_model=schemas.SuccessResponse)
def remove_pin_endpoint(
    profile_id: str,
    payload: schemas.RemovePinRequest,
    service: PinManagementService = Depends(get_management_service),
    clock: Callable[[], dt.datetime] = Depends(get_clock),
    policy: LockoutPolicy = Depends(get_lockout_policy),
):
    if not payload.current_pin:
        return _error(status.HTTP_400_BAD_REQUEST, "Current PIN required")
    now = clock()
    try:
        result = service.remove_pin(profile_id, payload.current_pin, now)
    except StorageError:
        logger.exception("Failed to remove PIN (endpoint=/api/profiles/%s/remove-pin, method=POST)", profile_id)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to remove PIN")
    if result.status is RemovePinStatus.SUCCESS:
        return _success()
    if result.status is RemovePinStatus.LOCKED:
        return _locked(policy, result.locked_until, now)
    status_code, message = REMOVE_PIN_ERRORS[result.status]
    return _error(status_code, message)


app.include_router(api_router, prefix="/api")
