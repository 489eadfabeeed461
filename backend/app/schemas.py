from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ResetPinRequest(CamelModel):
    admin_profile_id: Optional[str] = Field(None, alias="adminProfileId")
    admin_pin: Optional[str] = Field(None, alias="adminPin")
    new_pin: Optional[str] = Field(None, alias="newPin")


class VerifyPinRequest(CamelModel):
    pin: Optional[str] = None


class SetPinRequest(CamelModel):
    pin: Optional[str] = None
    current_pin: Optional[str] = Field(None, alias="currentPin")


class RemovePinRequest(CamelModel):
    current_pin: Optional[str] = Field(None, alias="currentPin")


class SuccessResponse(BaseModel):
    success: bool = True


class ErrorResponse(BaseModel):
    error: str


class LockedResponse(ErrorResponse):
    locked_for: int = Field(..., serialization_alias="lockedFor")


class IncorrectPinResponse(ErrorResponse):
    attempts_remaining: int = Field(..., serialization_alias="attemptsRemaining")
    locked: bool
