from __future__ import annotations

import datetime as dt
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, computed_field

from estatecrm.crm.models import (
    AppointmentPriority,
    AppointmentType,
    ContactCategory,
    ContactStatus,
    DealStage,
    LeadStage,
    PropertyStatus,
)
from estatecrm.crm import stages


RiskLevel = Literal["low", "medium", "high"]


class PropertyCreate(BaseModel):
    title: str = Field(min_length=1)
    address: str | None = None
    city: str | None = None
    price: Decimal | None = Field(default=None, ge=Decimal("0"))
    status: PropertyStatus = PropertyStatus.AVAILABLE
    agent_id: UUID | None = None
    tenant_id: str | None = None


class PropertyUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1)
    address: str | None = None
    city: str | None = None
    price: Decimal | None = Field(default=None, ge=Decimal("0"))
    status: PropertyStatus | None = None
    agent_id: UUID | None = None


class PropertyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    agent_id: UUID
    title: str
    address: str | None
    city: str | None
    price: Decimal | None
    status: str
    created_at: datetime
    updated_at: datetime
    row_version: int


class ContactCreate(BaseModel):
    name: str = Field(min_length=1)
    email: str | None = None
    phone: str | None = None
    category: ContactCategory = ContactCategory.LEAD
    status: ContactStatus = ContactStatus.ACTIVE
    lead_stage: LeadStage = LeadStage.NEW
    lead_score: int = 0
    is_qualified: bool = False
    budget: Decimal | None = Field(default=None, ge=Decimal("0"))
    agent_id: UUID | None = None


class ContactUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    email: str | None = None
    phone: str | None = None
    status: ContactStatus | None = None
    is_qualified: bool | None = None
    budget: Decimal | None = Field(default=None, ge=Decimal("0"))
    agent_id: UUID | None = None


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    agent_id: UUID
    name: str
    email: str | None
    phone: str | None
    category: str
    status: str
    lead_stage: str
    lead_score: int
    is_qualified: bool
    budget: Decimal | None
    interaction_count: int
    last_interaction_at: datetime | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class LeadActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    contact_id: UUID
    type: str
    title: str
    description: str | None
    activity_metadata: dict[str, Any] = Field(default_factory=dict)
    appointment_id: UUID | None
    deal_id: UUID | None
    performed_by_id: UUID
    created_at: datetime


class DealCreate(BaseModel):
    title: str = Field(min_length=1)
    client_id: UUID
    property_id: UUID | None = None
    value: Decimal = Field(gt=Decimal("0"))
    stage: DealStage = DealStage.LEAD_IN
    expected_close_date: date | None = None
    agent_id: UUID | None = None


class DealUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1)
    property_id: UUID | None = None
    value: Decimal | None = Field(default=None, gt=Decimal("0"))
    expected_close_date: date | None = None
    agent_id: UUID | None = None


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    agent_id: UUID
    title: str
    client_id: UUID
    property_id: UUID | None
    stage: DealStage
    status: str
    value: Decimal
    expected_close_date: date | None
    closed_at: datetime | None
    created_at: datetime
    updated_at: datetime
    row_version: int

    @computed_field  # type: ignore[prop-decorator]
    @property
    def probability(self) -> int:
        return stages.win_probability(self.stage)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def expected_value(self) -> Decimal:
        return stages.expected_value(self.value, self.stage)


class StageHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    deal_id: UUID
    from_stage: str
    to_stage: str
    changed_at: datetime
    changed_by: UUID
    days_in_stage: int
    reason: str | None


class StageStats(BaseModel):
    count: int = 0
    value: Decimal = Decimal("0")


class DealStats(BaseModel):
    total: int
    total_value: Decimal
    average_value: Decimal
    by_stage: dict[str, StageStats]
    conversion_rate: float
    win_rate: float
    lost_rate: float
    active_deals: int
    expected_revenue: Decimal
    closed_this_month: int
    closed_this_month_value: Decimal
    average_days_to_close: float
    velocity: float


class DealForecast(BaseModel):
    deal_id: UUID
    title: str
    stage: str
    value: Decimal
    probability: int
    expected_value: Decimal
    days_in_pipeline: int
    expected_close_date: date | None
    estimated_close_date: date
    risk: RiskLevel
    recommendations: list[str] = Field(default_factory=list)


class AvailabilitySlotCreate(BaseModel):
    date: dt.date
    start_time: time
    duration: int = Field(gt=0, le=24 * 60)
    agent_id: UUID | None = None


class AvailabilitySlotRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    agent_id: UUID
    date: dt.date
    start_time: time
    end_time: time
    duration: int
    status: str
    appointment_id: UUID | None


class AppointmentCreate(BaseModel):
    contact_id: UUID
    title: str = Field(min_length=1)
    date: dt.date
    start_time: time
    estimated_duration: int = Field(default=60, gt=0, le=24 * 60)
    type: AppointmentType = AppointmentType.VISIT
    priority: AppointmentPriority = AppointmentPriority.NORMAL
    status: Literal["PENDING", "CONFIRMED"] = "PENDING"
    notes: str | None = None
    property_id: UUID | None = None
    availability_slot_id: UUID | None = None
    agent_id: UUID | None = None


class AppointmentUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1)
    type: AppointmentType | None = None
    priority: AppointmentPriority | None = None
    notes: str | None = None
    property_id: UUID | None = None


class AppointmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    agent_id: UUID
    contact_id: UUID
    property_id: UUID | None
    title: str
    type: str
    priority: str
    status: str
    date: dt.date
    start_time: time
    estimated_duration: int
    actual_duration: int | None
    notes: str | None
    availability_slot_id: UUID | None
    rescheduling_count: int
    last_rescheduled_at: datetime | None
    completed_at: datetime | None
    canceled_at: datetime | None
    sync_status: str
    sync_attempts: int
    last_sync_at: datetime | None
    sync_error: str | None
    external_event_id: str | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class AppointmentConflict(BaseModel):
    has_conflict: bool
    conflicting_appointments: list[AppointmentRead] = Field(default_factory=list)
    suggestions: list[AvailabilitySlotRead] = Field(default_factory=list)


class AppointmentStats(BaseModel):
    total: int
    today: int
    this_week: int
    this_month: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    by_priority: dict[str, int]
    average_duration: float
    completion_rate: float
    cancellation_rate: float
    rescheduling_rate: float
