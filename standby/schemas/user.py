"""Pydantic schemas for User CRUD."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, field_validator, model_validator

_VALID_ROLES = {"admin", "manager", "provider", "readonly"}


class UserCreate(BaseModel):
    email: str
    password: str
    full_name: str | None = None
    role: str = "readonly"
    provider_id: int | None = None

    @field_validator("role")
    @classmethod
    def _validate_role(cls, v: str) -> str:
        if v not in _VALID_ROLES:
            raise ValueError(f"Role must be one of: {sorted(_VALID_ROLES)}")
        return v

    @field_validator("email")
    @classmethod
    def _normalise_email(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("Invalid email address")
        return v

    @field_validator("password")
    @classmethod
    def _password(cls, v: str) -> str:
        if len(v) < 8:
            raise ValueError("Password must be at least 8 characters")
        return v

    @model_validator(mode="after")
    def _provider_link(self) -> UserCreate:
        if self.role == "provider" and self.provider_id is None:
            raise ValueError("Provider accounts must reference a provider_id")
        return self


class UserRead(BaseModel):
    id: int
    email: str
    full_name: str | None
    role: str
    provider_id: int | None = None
    is_active: bool
    created_at: datetime | None

    model_config = {"from_attributes": True}
