"""Request/response models for the HTTP API."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, Field, model_validator

from fieldsync.models import ChangeType, Provider, ReservationSnapshot


class ApiMeta(BaseModel):
    """Extensible metadata bag attached to every API response."""

    model_config = {"extra": "allow"}


class ApiResponse[T](BaseModel):
    """Successful responses follow ``{"data": T, "meta": {...}}``."""

    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


class Accepted(BaseModel):
    status: str = "accepted"
    queued: int = 1


class ReservationChangeRequest(BaseModel):
    """A change notification from the reservation system.

    Either the full ``reservation`` snapshot or just its ``reservation_id``
    must be supplied; ids are resolved against the store.
    """

    change_type: ChangeType
    reservation: ReservationSnapshot | None = None
    reservation_id: str | None = None
    previous: ReservationSnapshot | None = None
    user_id: str | None = None

    @model_validator(mode="after")
    def _require_reservation(self) -> ReservationChangeRequest:
        if self.reservation is None and not self.reservation_id:
            raise ValueError("Either reservation or reservation_id is required")
        return self


class BatchSyncRequest(BaseModel):
    user_id: str
    reservation_ids: list[str] = Field(min_length=1)
    change_type: ChangeType = ChangeType.UPDATED


class BulkSyncRequest(BaseModel):
    force_resync: bool = False
    start_date: date | None = None
    end_date: date | None = None


class WebhookRegistrationRequest(BaseModel):
    provider: Provider
    resource_uri: str | None = None
    callback_url: str | None = None


class TimezoneEntry(BaseModel):
    zone: str
    label: str
    offset: str
    offset_minutes: int
    abbreviation: str
    is_dst: bool


class TransitionEntry(BaseModel):
    at: datetime
    kind: str
    offset_before: int
    offset_after: int


class TimezoneDetail(TimezoneEntry):
    upcoming_transitions: list[TransitionEntry] = Field(default_factory=list)


class CalendarFeed(BaseModel):
    url: str
    timezone: str
