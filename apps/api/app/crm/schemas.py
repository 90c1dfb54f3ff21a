from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


def _normalize_tags(value: list[str] | None) -> list[str] | None:
    if value is None:
        return None
    seen: list[str] = []
    for tag in value:
        cleaned = tag.strip()
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return seen


class ContactCreate(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str = ""
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    city: str | None = None
    state: str | None = None
    lead_status: str | None = None
    lead_score: int | None = None
    owner_user_id: str | None = None
    tags: list[str] = Field(default_factory=list)
    custom_fields: dict[str, Any] = Field(default_factory=dict)

    @field_validator("tags")
    @classmethod
    def clean_tags(cls, value: list[str]) -> list[str]:
        return _normalize_tags(value) or []


class ContactUpdate(BaseModel):
    row_version: int = Field(ge=1)
    first_name: str | None = Field(default=None, min_length=1)
    last_name: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    city: str | None = None
    state: str | None = None
    lead_status: str | None = None
    lead_score: int | None = None
    owner_user_id: str | None = None
    tags: list[str] | None = None
    custom_fields: dict[str, Any] | None = None

    @field_validator("tags")
    @classmethod
    def clean_tags(cls, value: list[str] | None) -> list[str] | None:
        return _normalize_tags(value)


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    first_name: str
    last_name: str
    email: str | None
    phone: str | None
    company: str | None
    city: str | None
    state: str | None
    lead_status: str | None
    lead_score: int | None
    owner_user_id: str | None
    tags: list[str]
    custom_fields: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    row_version: int


class PipelineStageCreate(BaseModel):
    name: str = Field(min_length=1)
    position: int = Field(default=0, ge=0)
    stage_type: Literal["Open", "Won", "Lost"] = "Open"


class PipelineStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    name: str
    position: int
    stage_type: str


class DealCreate(BaseModel):
    name: str = Field(min_length=1)
    contact_id: UUID | None = None
    value: Decimal | None = None
    stage_id: UUID | None = None
    status: Literal["open", "won", "lost"] = "open"
    probability: int | None = Field(default=None, ge=0, le=100)
    expected_close_date: date | None = None
    owner_user_id: str | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class DealUpdate(BaseModel):
    row_version: int = Field(ge=1)
    name: str | None = Field(default=None, min_length=1)
    contact_id: UUID | None = None
    value: Decimal | None = None
    stage_id: UUID | None = None
    status: Literal["open", "won", "lost"] | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    expected_close_date: date | None = None
    owner_user_id: str | None = None
    custom_fields: dict[str, Any] | None = None


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    contact_id: UUID | None
    name: str
    value: Decimal | None
    stage_id: UUID | None
    status: str
    probability: int | None
    expected_close_date: date | None
    owner_user_id: str | None
    custom_fields: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    row_version: int
