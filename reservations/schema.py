"""Pydantic schemas for availability, reservations and admin flows."""

from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Any, Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from reservations.timeutils import normalize_time_string, parse_time_to_minutes

MAX_PARTY_SIZE = 50
COMBINED_TABLE_ID = 0


class ReservationStatus(str, Enum):
    CREATED = "created"
    CONFIRMED = "confirmed"
    CANCELED = "canceled"
    COMPLETED = "completed"
    NO_SHOW = "no_show"
    SEATED = "seated"
    IN_PROGRESS = "in_progress"


ACTIVE_STATUSES = (ReservationStatus.CREATED.value, ReservationStatus.CONFIRMED.value)


class TableStatus(str, Enum):
    FREE = "free"
    OCCUPIED = "occupied"
    RESERVED = "reserved"
    UNAVAILABLE = "unavailable"


def _validate_time_string(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    normalized = normalize_time_string(value)
    if normalized is None:
        raise ValueError("Invalid time format. Expected HH:MM or HH:MM:SS.")
    return normalized


# Records handed to the availability engine by a Storage implementation.


class RestaurantRecord(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    name: str = ""
    opening_time: Optional[str] = None
    closing_time: Optional[str] = None
    avg_reservation_duration: Optional[int] = None
    slot_interval: Optional[int] = None
    timezone: str = "UTC"


class TableRecord(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    restaurant_id: int
    name: str
    min_guests: int
    max_guests: int
    status: str = TableStatus.FREE.value

    @property
    def bookable(self) -> bool:
        return self.status != TableStatus.UNAVAILABLE.value


class ReservationRecord(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    restaurant_id: int
    table_id: Optional[int] = None
    parent_reservation_id: Optional[int] = None
    date: dt.date
    time: Optional[str] = None
    duration: Optional[int] = None
    guests: int = 0
    status: str = ReservationStatus.CREATED.value

    @property
    def active(self) -> bool:
        return self.status in ACTIVE_STATUSES


# Availability engine input/output.


class OperatingHours(BaseModel):
    open: str
    close: str


class AvailabilityOptions(BaseModel):
    requested_time: Optional[str] = None
    exact_time_only: bool = False
    max_results: Optional[int] = Field(default=None, ge=1)
    slot_interval_minutes: Optional[int] = Field(default=None, ge=1)
    slot_duration_minutes: Optional[int] = Field(default=None, ge=1)
    operating_hours: Optional[OperatingHours] = None
    lang: str = "en"
    allow_combinations: bool = True
    exclude_reservation_id: Optional[int] = None
    max_combination_size: Optional[int] = Field(default=None, ge=1, le=3)


class TableCapacity(BaseModel):
    min: int
    max: int


class ConstituentTable(BaseModel):
    id: int
    name: str
    min_guests: int
    max_guests: int


class AvailabilitySlot(BaseModel):
    date: str
    time: str
    time_display: str
    table_id: int
    table_name: str
    table_capacity: TableCapacity
    is_combined: bool = False
    constituent_tables: list[ConstituentTable] = Field(default_factory=list)

    @property
    def table_ids(self) -> tuple[int, ...]:
        if self.is_combined:
            return tuple(table.id for table in self.constituent_tables)
        return (self.table_id,)


# Booking flow.


class ReservationCreateRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    restaurant_id: int = Field(ge=1)
    date: dt.date
    time: str
    guests: int = Field(ge=1, le=MAX_PARTY_SIZE)
    guest_name: Optional[str] = Field(default=None, min_length=1)
    guest_phone: Optional[str] = None
    comments: Optional[str] = None
    source: str = "direct"
    status: Literal["created", "confirmed"] = "confirmed"
    duration_minutes: Optional[int] = Field(default=None, ge=1)
    lang: str = "en"

    @field_validator("time")
    @classmethod
    def normalize_time(cls, value: str) -> str:
        return _validate_time_string(value)


class ReservationCancelRequest(BaseModel):
    restaurant_id: Optional[int] = None


class ReservationModifyRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    restaurant_id: Optional[int] = None
    date: Optional[dt.date] = None
    time: Optional[str] = None
    guests: Optional[int] = Field(default=None, ge=1, le=MAX_PARTY_SIZE)
    duration_minutes: Optional[int] = Field(default=None, ge=1)
    lang: str = "en"

    @field_validator("time")
    @classmethod
    def normalize_time(cls, value: Optional[str]) -> Optional[str]:
        return _validate_time_string(value)

    @model_validator(mode="after")
    def require_change(self):
        if self.date is None and self.time is None and self.guests is None and self.duration_minutes is None:
            raise ValueError("At least one of date, time, guests or duration_minutes must be provided.")
        return self


class BookingResult(BaseModel):
    success: bool
    reason: Optional[str] = None
    reservation_id: Optional[int] = None
    status: Optional[ReservationStatus] = None
    table_id: Optional[int] = None
    table_name: Optional[str] = None
    is_combined: bool = False
    constituent_table_ids: list[int] = Field(default_factory=list)
    date: Optional[dt.date] = None
    time: Optional[str] = None
    available: Optional[bool] = None

    @field_validator("reason")
    @classmethod
    def normalize_reason(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


# Assistant tools.


class AvailabilityCheckRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    restaurant_id: int = Field(ge=1)
    date: dt.date
    time: str
    guests: int = Field(ge=1, le=MAX_PARTY_SIZE)
    lang: str = "en"
    exclude_reservation_id: Optional[int] = None

    @field_validator("time")
    @classmethod
    def normalize_time(cls, value: str) -> str:
        return _validate_time_string(value)


class AlternativeTimesRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    restaurant_id: int = Field(ge=1)
    date: dt.date
    preferred_time: str
    guests: int = Field(ge=1, le=MAX_PARTY_SIZE)
    lang: str = "en"
    max_results: int = Field(default=8, ge=1, le=20)

    @field_validator("preferred_time")
    @classmethod
    def normalize_preferred_time(cls, value: str) -> str:
        return _validate_time_string(value)


class ToolErrorType(str, Enum):
    VALIDATION = "VALIDATION_ERROR"
    BUSINESS_RULE = "BUSINESS_RULE"
    SYSTEM = "SYSTEM_ERROR"


class ToolError(BaseModel):
    type: ToolErrorType
    message: str
    code: Optional[str] = None
    field: Optional[str] = None


class ToolResponse(BaseModel):
    tool_status: Literal["SUCCESS", "FAILURE"]
    data: Optional[dict[str, Any]] = None
    error: Optional[ToolError] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


# Admin flows.


class TableUpsertRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    restaurant_id: int = Field(ge=1)
    table_id: Optional[int] = None
    name: str = Field(min_length=1)
    min_guests: int = Field(default=1, ge=1)
    max_guests: int = Field(ge=1)
    status: TableStatus = TableStatus.FREE

    @model_validator(mode="after")
    def validate_capacity_range(self):
        if self.min_guests > self.max_guests:
            raise ValueError("min_guests must not exceed max_guests.")
        return self


class RestaurantSettingsUpdateRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    restaurant_id: int = Field(ge=1)
    opening_time: Optional[str] = None
    closing_time: Optional[str] = None
    avg_reservation_duration: Optional[int] = Field(default=None, ge=15)
    slot_interval: Optional[int] = Field(default=None, ge=5)
    timezone: Optional[str] = None

    @field_validator("opening_time", "closing_time")
    @classmethod
    def normalize_hours(cls, value: Optional[str]) -> Optional[str]:
        return _validate_time_string(value)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value

    @model_validator(mode="after")
    def validate_time_window(self):
        if self.opening_time and self.closing_time:
            if parse_time_to_minutes(self.opening_time) == parse_time_to_minutes(self.closing_time):
                raise ValueError("opening_time and closing_time must differ.")
        return self


class AdminActionResult(BaseModel):
    success: bool
    reason: Optional[str] = None
    restaurant_id: Optional[int] = None
    table_id: Optional[int] = None


class AvailabilityResponse(BaseModel):
    restaurant_id: int
    date: dt.date
    guests: int
    slots: list[AvailabilitySlot]


class RestaurantInfo(BaseModel):
    id: int
    name: str
    opening_time: Optional[str] = None
    closing_time: Optional[str] = None
    timezone: str
    avg_reservation_duration: Optional[int] = None
    slot_interval: Optional[int] = None
    overnight: bool = False
    open_now: bool = False
