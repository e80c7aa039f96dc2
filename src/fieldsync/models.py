"""Domain records and result types for calendar sync and reminders."""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from fieldsync.timezones import is_valid_timezone, wall_clock_to_utc

logger = logging.getLogger(__name__)


class Provider(StrEnum):
    GOOGLE = "google"
    OUTLOOK = "outlook"


class ReservationStatus(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class ChangeType(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    CANCELLED = "cancelled"
    DELETED = "deleted"


class ReminderStatus(StrEnum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ReminderChannel(StrEnum):
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    WEBHOOK = "webhook"


class SyncDirection(StrEnum):
    OUTBOUND = "outbound"
    INBOUND = "inbound"


class SyncStatus(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class SyncOperation(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    WEBHOOK = "webhook"
    REMINDERS = "reminders"
    BULK_SYNC = "bulk_sync"
    CLEANUP = "cleanup"
    SCHEDULED_SYNC = "scheduled_sync"


class ErrorKind(StrEnum):
    """Failure taxonomy recorded on sync outcomes and audit entries."""

    AUTH = "auth"
    NOT_FOUND = "not_found"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    DATA = "data"
    PROVIDER = "provider"
    RENEWAL = "renewal"
    INTERNAL = "internal"


# Terminal reminder states; a reminder never leaves one of these.
TERMINAL_REMINDER_STATUSES = frozenset(
    {ReminderStatus.SENT, ReminderStatus.FAILED, ReminderStatus.CANCELLED}
)


# ---------------------------------------------------------------------------
# Reservation snapshot
# ---------------------------------------------------------------------------


class FieldRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    address: str | None = None
    type: str | None = None


class TeamRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str


class ReservationSnapshot(BaseModel):
    """Immutable view of a reservation as supplied by the reservation system."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    field: FieldRef
    reservation_date: date
    start_time: time
    end_time: time
    timezone: str = "UTC"
    status: ReservationStatus = ReservationStatus.PENDING
    purpose: str = ""
    attendees: int = 0
    team: TeamRef | None = None
    notes: str | None = None

    @field_validator("id", "user_id")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized

    def resolved_timezone(self) -> str:
        if is_valid_timezone(self.timezone):
            return self.timezone
        logger.warning(
            "Unknown timezone %r on reservation %s; scheduling in UTC",
            self.timezone,
            self.id,
        )
        return "UTC"

    def start_instant(self) -> datetime:
        return wall_clock_to_utc(self.resolved_timezone(), self.reservation_date, self.start_time)

    def end_instant(self) -> datetime:
        return wall_clock_to_utc(self.resolved_timezone(), self.reservation_date, self.end_time)

    def timing_changed(self, other: ReservationSnapshot) -> bool:
        return (
            self.reservation_date != other.reservation_date
            or self.start_time != other.start_time
            or self.end_time != other.end_time
            or self.timezone != other.timezone
        )


# ---------------------------------------------------------------------------
# Persistent records
# ---------------------------------------------------------------------------


class CalendarIntegration(BaseModel):
    """Stored OAuth credential plus sync configuration for one (user, provider)."""

    id: str
    user_id: str
    provider: Provider
    access_token: str
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    calendar_id: str | None = None
    sync_enabled: bool = True
    last_sync_at: datetime | None = None
    sync_settings: dict[str, Any] = Field(default_factory=dict)


class ExternalEventMapping(BaseModel):
    reservation_id: str
    provider: Provider
    integration_id: str
    external_event_id: str
    created_at: datetime | None = None


class WebhookSubscription(BaseModel):
    id: str
    integration_id: str
    provider: Provider
    webhook_id: str
    resource_uri: str
    callback_url: str
    resource_id: str | None = None
    client_state: str | None = None
    expiration_time: datetime
    is_active: bool = True
    created_at: datetime | None = None


class ReminderRecord(BaseModel):
    id: str
    reservation_id: str
    user_id: str
    channel: ReminderChannel
    minutes_before: int
    fire_at: datetime
    status: ReminderStatus = ReminderStatus.PENDING
    sent_at: datetime | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class SyncLogEntry(BaseModel):
    """Append-only audit record of one sync attempt."""

    operation: SyncOperation
    direction: SyncDirection
    status: SyncStatus
    integration_id: str | None = None
    reservation_id: str | None = None
    user_id: str | None = None
    provider: Provider | None = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class UserContact(BaseModel):
    user_id: str
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    push_token: str | None = None


# ---------------------------------------------------------------------------
# Reminder preferences
# ---------------------------------------------------------------------------


class ReminderTiming(BaseModel):
    model_config = ConfigDict(extra="forbid")

    minutes: int = Field(gt=0)
    enabled: bool = True


def _default_timings() -> list[ReminderTiming]:
    return [ReminderTiming(minutes=1440), ReminderTiming(minutes=60)]


class ReminderSettings(BaseModel):
    """Per-user reminder preferences; defaults are email at 24h and 1h."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    methods: list[ReminderChannel] = Field(default_factory=lambda: [ReminderChannel.EMAIL])
    timings: list[ReminderTiming] = Field(default_factory=_default_timings)
    custom_message: str | None = None
    webhook_url: str | None = None

    @field_validator("methods")
    @classmethod
    def _dedupe_methods(cls, value: list[ReminderChannel]) -> list[ReminderChannel]:
        return list(dict.fromkeys(value))

    def enabled_offsets(self) -> list[int]:
        return sorted({t.minutes for t in self.timings if t.enabled}, reverse=True)


# ---------------------------------------------------------------------------
# Inbound webhook events
# ---------------------------------------------------------------------------


class WebhookEvent(BaseModel):
    """Provider-neutral inbound push notification."""

    model_config = ConfigDict(extra="forbid")

    subscription_id: str
    resource_uri: str = ""
    change_type: str
    event_time: datetime = Field(default_factory=lambda: datetime.now(UTC))
    data: dict[str, Any] = Field(default_factory=dict)
    client_state: str | None = None
    provider: Provider | None = None


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


class SyncOutcome(BaseModel):
    """Explicit ``Ok | Err(kind, detail)`` result of one sync step."""

    ok: bool
    kind: ErrorKind | None = None
    detail: str | None = None
    external_event_id: str | None = None

    @classmethod
    def success(
        cls, *, external_event_id: str | None = None, detail: str | None = None
    ) -> SyncOutcome:
        return cls(ok=True, external_event_id=external_event_id, detail=detail)

    @classmethod
    def failure(cls, kind: ErrorKind, detail: str) -> SyncOutcome:
        return cls(ok=False, kind=kind, detail=detail)


class ProviderResult(BaseModel):
    """Outcome for one integration; ``skipped`` when there was nothing to change."""

    integration_id: str
    provider: Provider
    operation: SyncOperation
    outcome: SyncOutcome
    skipped: bool = False


class ReservationChangeResult(BaseModel):
    reservation_id: str
    change_type: ChangeType
    integrations: SyncOutcome = Field(default_factory=SyncOutcome.success)
    providers: list[ProviderResult] = Field(default_factory=list)
    reminders: SyncOutcome = Field(default_factory=SyncOutcome.success)

    @property
    def ok(self) -> bool:
        return (
            self.integrations.ok
            and self.reminders.ok
            and all(p.outcome.ok for p in self.providers)
        )


class BulkSyncResult(BaseModel):
    total: int = 0
    synced: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0 and not self.errors


class CleanupResult(BaseModel):
    cleaned: int = 0
    errors: list[str] = Field(default_factory=list)


class ProcessDueResult(BaseModel):
    processed: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)


class ScheduledSyncResult(BaseModel):
    users: int = 0
    synced: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)


class RescheduleResult(BaseModel):
    rescheduled: int = 0
    cancelled: int = 0
