from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import ClassVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from crmcore.core.rbac import Role
from crmcore.crm.models import AppointmentStatus, LeadStatus


SLUG_PATTERN = r"^[a-z0-9]+(?:-[a-z0-9]+)*$"


class LeadCreate(BaseModel):
    client_first_name: str = Field(min_length=1, max_length=255)
    client_last_name: str = Field(min_length=1, max_length=255)
    client_email: EmailStr
    client_phone: str | None = Field(default=None, max_length=32)
    client_company: str | None = Field(default=None, max_length=255)
    source: str | None = None
    revenue: Decimal | None = Field(default=None, ge=0)


class LeadUpdate(BaseModel):
    non_nullable_fields: ClassVar[frozenset[str]] = frozenset({"client_first_name", "client_last_name", "client_email"})

    client_first_name: str | None = Field(default=None, min_length=1, max_length=255)
    client_last_name: str | None = Field(default=None, min_length=1, max_length=255)
    client_email: EmailStr | None = None
    client_phone: str | None = Field(default=None, max_length=32)
    client_company: str | None = Field(default=None, max_length=255)
    source: str | None = None
    revenue: Decimal | None = Field(default=None, ge=0)


class LeadAssign(BaseModel):
    assigned_to: UUID


class LeadStatusUpdate(BaseModel):
    status: LeadStatus


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    referral_id: UUID | None
    organization_id: UUID | None
    client_first_name: str
    client_last_name: str
    client_email: str
    client_phone: str | None
    client_company: str | None
    status: LeadStatus
    assigned_to_id: UUID | None
    assigned_by_id: UUID | None
    source: str | None
    revenue: Decimal | None
    created_at: datetime
    updated_at: datetime


class AppointmentCreate(BaseModel):
    lead_id: UUID
    scheduled_with_id: UUID | None = None
    scheduled_at: datetime
    duration: int = Field(default=60, ge=15, le=480)
    location: str | None = Field(default=None, max_length=255)
    notes: str | None = None
    status: AppointmentStatus = AppointmentStatus.SCHEDULED


class AppointmentUpdate(BaseModel):
    non_nullable_fields: ClassVar[frozenset[str]] = frozenset({"scheduled_at", "duration", "status"})

    scheduled_with_id: UUID | None = None
    scheduled_at: datetime | None = None
    duration: int | None = Field(default=None, ge=15, le=480)
    location: str | None = Field(default=None, max_length=255)
    notes: str | None = None
    status: AppointmentStatus | None = None


class AppointmentReschedule(BaseModel):
    scheduled_at: datetime
    notes: str | None = None


class AppointmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID
    scheduled_by_id: UUID
    scheduled_with_id: UUID | None
    scheduled_at: datetime
    duration: int
    location: str | None
    notes: str | None
    status: AppointmentStatus
    created_at: datetime
    updated_at: datetime


class AppointmentStatistics(BaseModel):
    total: int = 0
    scheduled: int = 0
    confirmed: int = 0
    completed: int = 0
    cancelled: int = 0
    no_show: int = 0
    upcoming: int = 0
    overdue: int = 0


class TeamCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    slug: str | None = Field(default=None, max_length=255, pattern=SLUG_PATTERN)
    description: str | None = None
    organization_id: UUID | None = None

    @field_validator("slug", mode="before")
    @classmethod
    def _blank_slug_is_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class TeamUpdate(BaseModel):
    non_nullable_fields: ClassVar[frozenset[str]] = frozenset({"name"})

    name: str | None = Field(default=None, min_length=1, max_length=255)
    slug: str | None = Field(default=None, max_length=255, pattern=SLUG_PATTERN)
    description: str | None = None


class TeamRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    slug: str
    description: str | None
    creator_id: UUID
    organization_id: UUID
    member_ids: list[UUID] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class OrganizationCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    parent_id: UUID | None = None
    director_id: UUID | None = None
    is_active: bool = True


class OrganizationUpdate(BaseModel):
    non_nullable_fields: ClassVar[frozenset[str]] = frozenset({"name", "is_active"})

    name: str | None = Field(default=None, min_length=1, max_length=255)
    parent_id: UUID | None = None
    director_id: UUID | None = None
    is_active: bool | None = None


class OrganizationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    parent_id: UUID | None
    director_id: UUID | None
    is_active: bool
    created_at: datetime
    updated_at: datetime


class UserCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    email: EmailStr
    role: Role
    organization_id: UUID | None = None
    is_active: bool = True


class UserUpdate(BaseModel):
    non_nullable_fields: ClassVar[frozenset[str]] = frozenset({"name", "email", "role", "is_active"})

    name: str | None = Field(default=None, min_length=1, max_length=255)
    email: EmailStr | None = None
    role: Role | None = None
    organization_id: UUID | None = None
    is_active: bool | None = None


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    email: str
    role: Role
    organization_id: UUID | None
    created_by_id: UUID | None
    is_active: bool
    created_at: datetime
    updated_at: datetime
