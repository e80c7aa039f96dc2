"""Reminder scheduling and dispatch.

Reminder fire times are computed from the reservation's start instant (wall
clock resolved in the reservation's timezone, then converted to UTC) minus
each enabled lead-time offset. A periodic sweep (``process_due``) delivers
reminders that fall due within a small look-ahead buffer so that a
once-per-minute schedule never skips a reminder landing between two runs.

Status transitions are monotonic: ``pending`` moves to exactly one of
``sent``, ``failed`` or ``cancelled`` and never back. Failed deliveries are
terminal; nothing here retries them.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import httpx
from opentelemetry import trace
from pydantic import BaseModel

from fieldsync.core import metrics
from fieldsync.models import (
    ProcessDueResult,
    ReminderChannel,
    ReminderRecord,
    ReminderSettings,
    ReminderStatus,
    RescheduleResult,
    ReservationSnapshot,
    ReservationStatus,
    UserContact,
)
from fieldsync.providers.base import sanitize_error
from fieldsync.storage.base import SyncStore
from fieldsync.timezones import format_in_timezone

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_MINUTES = 2
DEFAULT_BATCH_LIMIT = 100
REMINDER_USER_AGENT = "FieldReservations-CalendarReminder/1.0"
WEBHOOK_TIMEOUT_SECONDS = 10.0


class ReminderDeliveryError(RuntimeError):
    """Raised when a reminder cannot be handed to its delivery channel."""


# ---------------------------------------------------------------------------
# Delivery channels
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReminderMessage:
    recipient: str
    title: str
    body: str
    metadata: dict[str, Any] = field(default_factory=dict)


class NotificationSender(Protocol):
    """Fire-and-forget delivery function for one channel.

    Implementations raise on failure; the dispatcher records the error.
    """

    async def send(
        self, recipient: str, title: str, body: str, metadata: dict[str, Any]
    ) -> None: ...


class LoggingNotificationSender:
    """Channel stand-in that only logs; used where no transport is configured."""

    def __init__(self, channel: ReminderChannel) -> None:
        self._channel = channel

    async def send(self, recipient: str, title: str, body: str, metadata: dict[str, Any]) -> None:
        logger.info(
            "Reminder (%s) to %s: %s",
            self._channel,
            recipient,
            title,
            extra={"reminder_id": metadata.get("reminder_id")},
        )


class WebhookNotificationSender:
    """POST reminder payloads as JSON to the user's configured webhook URL."""

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        timeout_s: float = WEBHOOK_TIMEOUT_SECONDS,
    ) -> None:
        self._owns_http_client = http_client is None
        self._timeout = httpx.Timeout(timeout_s)
        self._http_client = http_client or httpx.AsyncClient(timeout=self._timeout)

    async def send(self, recipient: str, title: str, body: str, metadata: dict[str, Any]) -> None:
        payload = {
            "type": "reservation_reminder",
            "title": title,
            "message": body,
            **metadata,
            "timestamp": datetime.now(UTC).isoformat(),
        }
        try:
            response = await self._http_client.post(
                recipient,
                json=payload,
                headers={"User-Agent": REMINDER_USER_AGENT},
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            raise ReminderDeliveryError(f"Webhook delivery to {recipient} failed: {exc}") from exc
        if response.status_code < 200 or response.status_code >= 300:
            raise ReminderDeliveryError(
                f"Webhook delivery to {recipient} failed with HTTP {response.status_code}"
            )

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()


# ---------------------------------------------------------------------------
# Message builders
# ---------------------------------------------------------------------------


def format_time_label(minutes: int) -> str:
    """Render a lead time as ``"N minute(s)"``, ``"N hour(s)"`` or ``"N day(s)"``."""
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    if minutes < 1440:
        hours = minutes // 60
        return f"{hours} hour{'s' if hours != 1 else ''}"
    days = minutes // 1440
    return f"{days} day{'s' if days != 1 else ''}"


def _when(reservation: ReservationSnapshot) -> str:
    return format_in_timezone(
        reservation.start_instant(),
        reservation.resolved_timezone(),
        "%A, %B %d at %I:%M %p %Z",
    )


def build_reminder_message(
    reservation: ReservationSnapshot,
    minutes_before: int,
    custom_message: str | None = None,
) -> str:
    lines = [
        f"Your reservation at {reservation.field.name} starts in "
        f"{format_time_label(minutes_before)}.",
        "",
        f"When: {_when(reservation)}",
        f"Where: {reservation.field.address or reservation.field.name}",
    ]
    if reservation.purpose:
        lines.append(f"Purpose: {reservation.purpose}")
    if reservation.team is not None:
        lines.append(f"Team: {reservation.team.name}")
    if reservation.attendees:
        lines.append(f"Expected attendees: {reservation.attendees}")
    if reservation.notes:
        lines.append(f"Notes: {reservation.notes}")
    if custom_message:
        lines += ["", custom_message]
    return "\n".join(lines)


def build_sms_message(reservation: ReservationSnapshot, minutes_before: int) -> str:
    start = format_in_timezone(
        reservation.start_instant(), reservation.resolved_timezone(), "%I:%M %p"
    )
    return (
        f"Reminder: {reservation.field.name} reservation in "
        f"{format_time_label(minutes_before)} ({start})."
    )


class ReminderStats(BaseModel):
    total: int = 0
    pending: int = 0
    sent: int = 0
    failed: int = 0
    cancelled: int = 0


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class ReminderScheduler:
    """Computes, persists and dispatches reservation reminders."""

    def __init__(
        self,
        store: SyncStore,
        senders: Mapping[ReminderChannel, NotificationSender] | None = None,
        *,
        buffer_minutes: int = DEFAULT_BUFFER_MINUTES,
        batch_limit: int = DEFAULT_BATCH_LIMIT,
    ) -> None:
        self._store = store
        self._senders: dict[ReminderChannel, NotificationSender] = dict(senders or {})
        self.unconfigured_channels = frozenset(ReminderChannel) - self._senders.keys()
        for channel in sorted(self.unconfigured_channels):
            logger.warning(
                "No %s transport configured; those reminders will be logged, not delivered",
                channel,
            )
            self._senders[channel] = LoggingNotificationSender(channel)
        self._buffer_minutes = buffer_minutes
        self._batch_limit = batch_limit

    async def _settings_for(self, user_id: str) -> ReminderSettings:
        try:
            settings = await self._store.get_reminder_settings(user_id)
        except Exception:
            logger.warning(
                "Failed to load reminder settings for user %s; using defaults",
                user_id,
                exc_info=True,
            )
            settings = None
        return settings or ReminderSettings()

    async def get_settings(self, user_id: str) -> ReminderSettings:
        """Stored preferences for *user_id*, or the defaults when none are saved."""
        return await self._store.get_reminder_settings(user_id) or ReminderSettings()

    async def update_settings(self, user_id: str, settings: ReminderSettings) -> ReminderSettings:
        """Persist new preferences; reminders already scheduled are left as they are."""
        if ReminderChannel.WEBHOOK in settings.methods and not settings.webhook_url:
            raise ValueError("webhook_url is required when the webhook method is enabled")
        await self._store.save_reminder_settings(user_id, settings)
        logger.info(
            "Updated reminder settings for user %s (%s)",
            user_id,
            ", ".join(settings.methods) or "no methods",
        )
        return settings

    async def create_reminders(
        self,
        reservation_id: str,
        user_id: str,
        start_instant: datetime,
        settings: ReminderSettings | None = None,
        *,
        now: datetime | None = None,
    ) -> list[ReminderRecord]:
        """Create one pending reminder per enabled channel and offset.

        Offsets whose fire time is already in the past are skipped.
        """
        settings = settings or await self._settings_for(user_id)
        if not settings.enabled:
            logger.debug("Reminders disabled for user %s", user_id)
            return []

        current = now or datetime.now(UTC)
        candidates: list[ReminderRecord] = []
        for channel in settings.methods:
            metadata: dict[str, Any] = {}
            if settings.custom_message:
                metadata["custom_message"] = settings.custom_message
            if channel == ReminderChannel.WEBHOOK:
                if not settings.webhook_url:
                    logger.warning(
                        "Webhook reminders enabled for user %s without a webhook URL", user_id
                    )
                    continue
                metadata["webhook_url"] = settings.webhook_url
            for minutes in settings.enabled_offsets():
                fire_at = start_instant - timedelta(minutes=minutes)
                if fire_at < current:
                    continue
                candidates.append(
                    ReminderRecord(
                        id=str(uuid.uuid4()),
                        reservation_id=reservation_id,
                        user_id=user_id,
                        channel=channel,
                        minutes_before=minutes,
                        fire_at=fire_at,
                        metadata=metadata,
                    )
                )

        if not candidates:
            return []
        created = await self._store.insert_reminders(candidates)
        logger.info(
            "Scheduled %d reminder(s) for reservation %s", len(created), reservation_id
        )
        return created

    async def update_reminders(
        self,
        reservation_id: str,
        new_start_instant: datetime,
        *,
        now: datetime | None = None,
    ) -> RescheduleResult:
        """Recompute fire times of pending reminders after a time change."""
        current = now or datetime.now(UTC)
        result = RescheduleResult()
        for reminder in await self._store.list_pending_reminders(reservation_id):
            fire_at = new_start_instant - timedelta(minutes=reminder.minutes_before)
            if fire_at > current:
                if await self._store.reschedule_reminder(reminder.id, fire_at):
                    result.rescheduled += 1
            elif await self._store.transition_reminder(reminder.id, ReminderStatus.CANCELLED):
                result.cancelled += 1
        logger.info(
            "Rescheduled reminders for reservation %s (rescheduled=%d, cancelled=%d)",
            reservation_id,
            result.rescheduled,
            result.cancelled,
        )
        return result

    async def cancel_reminders(self, reservation_id: str) -> int:
        cancelled = await self._store.cancel_pending_reminders(reservation_id)
        if cancelled:
            logger.info("Cancelled %d reminder(s) for reservation %s", cancelled, reservation_id)
        return cancelled

    async def process_due(
        self,
        now: datetime | None = None,
        buffer_minutes: int | None = None,
        batch_limit: int | None = None,
    ) -> ProcessDueResult:
        """Deliver pending reminders due within ``now + buffer_minutes``.

        Each reminder is marked ``sent`` or ``failed`` independently; a
        delivery error never aborts the batch. Reminders whose reservation
        was cancelled or removed are cancelled instead of sent.
        """
        current = now or datetime.now(UTC)
        buffer = self._buffer_minutes if buffer_minutes is None else buffer_minutes
        limit = self._batch_limit if batch_limit is None else batch_limit
        result = ProcessDueResult()

        tracer = trace.get_tracer("fieldsync")
        with tracer.start_as_current_span("fieldsync.reminders.process_due") as span:
            due = await self._store.list_due_reminders(current + timedelta(minutes=buffer), limit)
            span.set_attribute("reminders_due", len(due))

            for reminder in due:
                try:
                    delivered = await self._deliver(reminder)
                except Exception as exc:
                    detail = sanitize_error(exc)
                    logger.warning(
                        "Reminder %s (%s) failed: %s", reminder.id, reminder.channel, detail
                    )
                    await self._store.transition_reminder(
                        reminder.id, ReminderStatus.FAILED, error_message=detail
                    )
                    metrics.record_reminder(reminder.channel.value, "failed")
                    result.failed += 1
                    result.errors.append(f"{reminder.id}: {detail}")
                    continue

                if delivered:
                    await self._store.transition_reminder(
                        reminder.id, ReminderStatus.SENT, sent_at=datetime.now(UTC)
                    )
                    metrics.record_reminder(reminder.channel.value, "sent")
                    result.processed += 1

            span.set_attribute("reminders_sent", result.processed)
            span.set_attribute("reminders_failed", result.failed)

        if due:
            logger.info(
                "Processed reminders (due=%d, sent=%d, failed=%d)",
                len(due),
                result.processed,
                result.failed,
            )
        return result

    async def _deliver(self, reminder: ReminderRecord) -> bool:
        """Send one reminder; returns False if it was cancelled instead."""
        reservation = await self._store.get_reservation(reminder.reservation_id)
        if reservation is None or reservation.status == ReservationStatus.CANCELLED:
            await self._store.transition_reminder(reminder.id, ReminderStatus.CANCELLED)
            logger.info(
                "Cancelled reminder %s: reservation %s is no longer active",
                reminder.id,
                reminder.reservation_id,
            )
            return False

        contact = await self._store.get_user_contact(reminder.user_id)
        message = self.compose(reminder, reservation, contact)
        sender = self._senders.get(reminder.channel)
        if sender is None:
            raise ReminderDeliveryError(f"No sender configured for channel {reminder.channel}")
        await sender.send(message.recipient, message.title, message.body, message.metadata)
        return True

    @staticmethod
    def compose(
        reminder: ReminderRecord,
        reservation: ReservationSnapshot,
        contact: UserContact | None,
    ) -> ReminderMessage:
        """Build the channel-specific message; raises when the recipient is unknown."""
        label = format_time_label(reminder.minutes_before)
        custom = reminder.metadata.get("custom_message")
        metadata = {
            "reminder_id": reminder.id,
            "reservation_id": reservation.id,
            "user_id": reminder.user_id,
            "field": reservation.field.name,
            "start": reservation.start_instant().isoformat(),
            "minutes_before": reminder.minutes_before,
        }

        if reminder.channel == ReminderChannel.EMAIL:
            if contact is None or not contact.email:
                raise ReminderDeliveryError(f"User {reminder.user_id} has no email address")
            return ReminderMessage(
                recipient=contact.email,
                title=f"Field Reservation Reminder - {label}",
                body=build_reminder_message(reservation, reminder.minutes_before, custom),
                metadata=metadata,
            )
        if reminder.channel == ReminderChannel.SMS:
            if contact is None or not contact.phone:
                raise ReminderDeliveryError(f"User {reminder.user_id} has no phone number")
            return ReminderMessage(
                recipient=contact.phone,
                title=f"Field Reservation - {label}",
                body=build_sms_message(reservation, reminder.minutes_before),
                metadata=metadata,
            )
        if reminder.channel == ReminderChannel.PUSH:
            recipient = (contact.push_token if contact else None) or reminder.user_id
            return ReminderMessage(
                recipient=recipient,
                title=f"Field Reservation - {label}",
                body=f"{reservation.field.name} at {_when(reservation)}",
                metadata=metadata,
            )
        webhook_url = reminder.metadata.get("webhook_url")
        if not webhook_url:
            raise ReminderDeliveryError(f"Reminder {reminder.id} has no webhook URL")
        return ReminderMessage(
            recipient=str(webhook_url),
            title=f"Field Reservation Reminder - {label}",
            body=build_reminder_message(reservation, reminder.minutes_before, custom),
            metadata=metadata,
        )

    async def get_stats(self, user_id: str | None = None) -> ReminderStats:
        counts = await self._store.reminder_status_counts(user_id)
        return ReminderStats(
            total=sum(counts.values()),
            pending=counts.get(ReminderStatus.PENDING.value, 0),
            sent=counts.get(ReminderStatus.SENT.value, 0),
            failed=counts.get(ReminderStatus.FAILED.value, 0),
            cancelled=counts.get(ReminderStatus.CANCELLED.value, 0),
        )
