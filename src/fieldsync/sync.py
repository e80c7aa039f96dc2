"""Reservation change orchestration.

Every reservation lifecycle change fans out to each of the user's enabled
calendar integrations concurrently, then recomputes reminders. One
provider's failure never blocks another provider or the reminder step, and
``on_reservation_change`` reports failures through its result instead of
raising. Changes to the same reservation are serialized in-process.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from datetime import UTC, date, datetime, timedelta

from pydantic import BaseModel, Field

from fieldsync.config import SyncConfig
from fieldsync.core import metrics
from fieldsync.core.locks import KeyedLocks
from fieldsync.core.logging import bind_sync_context
from fieldsync.core.telemetry import sync_span
from fieldsync.models import (
    BulkSyncResult,
    CalendarIntegration,
    ChangeType,
    CleanupResult,
    ErrorKind,
    ExternalEventMapping,
    Provider,
    ProviderResult,
    ReservationChangeResult,
    ReservationSnapshot,
    ReservationStatus,
    ScheduledSyncResult,
    SyncDirection,
    SyncLogEntry,
    SyncOperation,
    SyncOutcome,
    SyncStatus,
    WebhookEvent,
    WebhookSubscription,
)
from fieldsync.providers.base import (
    CalendarProvider,
    ProviderNotFoundError,
    classify_error,
    sanitize_error,
)
from fieldsync.providers.registry import ProviderRegistry
from fieldsync.reminders import ReminderScheduler
from fieldsync.storage.base import SyncStore

logger = logging.getLogger(__name__)

SYNCABLE_STATUSES = (ReservationStatus.PENDING, ReservationStatus.CONFIRMED)
RECENT_FAILURE_WINDOW = timedelta(hours=24)


class IntegrationStats(BaseModel):
    integration_id: str
    provider: Provider
    enabled: bool
    last_sync_at: datetime | None = None


class SyncStats(BaseModel):
    integrations: list[IntegrationStats] = Field(default_factory=list)
    synced_events: int = 0
    recent_failures: int = 0
    last_sync_at: datetime | None = None


def _failure(exc: BaseException) -> SyncOutcome:
    return SyncOutcome.failure(classify_error(exc), sanitize_error(exc))


def _implied_operation(change_type: ChangeType) -> SyncOperation:
    """The calendar operation a change asks for before the mapping is known."""
    if change_type in (ChangeType.CANCELLED, ChangeType.DELETED):
        return SyncOperation.DELETE
    if change_type == ChangeType.UPDATED:
        return SyncOperation.UPDATE
    return SyncOperation.CREATE


def _provider_log_entry(
    result: ProviderResult, change_type: ChangeType, reservation_id: str, user_id: str
) -> SyncLogEntry:
    outcome = result.outcome
    if not outcome.ok:
        status = SyncStatus.FAILED
    elif result.skipped:
        status = SyncStatus.SKIPPED
    else:
        status = SyncStatus.SUCCESS
    return SyncLogEntry(
        operation=result.operation,
        direction=SyncDirection.OUTBOUND,
        status=status,
        integration_id=result.integration_id,
        reservation_id=reservation_id,
        user_id=user_id,
        provider=result.provider,
        error_kind=outcome.kind,
        error_message=None if outcome.ok else outcome.detail,
        details={
            "change_type": change_type.value,
            "external_event_id": outcome.external_event_id,
        },
    )


class SyncOrchestrator:
    def __init__(
        self,
        store: SyncStore,
        providers: ProviderRegistry,
        reminders: ReminderScheduler,
        config: SyncConfig | None = None,
    ) -> None:
        self._store = store
        self._providers = providers
        self._reminders = reminders
        self._config = config or SyncConfig()
        self._reservation_locks = KeyedLocks()

    async def _audit(self, entry: SyncLogEntry) -> None:
        # Audit writes never fail the operation being audited.
        try:
            await self._store.append_sync_log(entry)
        except Exception:
            logger.warning(
                "Failed to write sync log entry for reservation %s",
                entry.reservation_id,
                exc_info=True,
            )

    # -- Single reservation ------------------------------------------------

    async def on_reservation_change(
        self,
        change_type: ChangeType | str,
        reservation: ReservationSnapshot,
        previous: ReservationSnapshot | None = None,
        user_id: str | None = None,
    ) -> ReservationChangeResult:
        """Propagate one reservation change to calendars and reminders.

        Never raises; per-provider and reminder failures are reported in the
        returned result and in the sync log.
        """
        change_type = ChangeType(change_type)
        owner = user_id or reservation.user_id
        result = ReservationChangeResult(reservation_id=reservation.id, change_type=change_type)

        with bind_sync_context(reservation_id=reservation.id, user_id=owner):
            async with self._reservation_locks.hold(reservation.id):
                with sync_span("reservation_change", change_type=change_type.value) as span:
                    result.integrations, result.providers = await self._fan_out(
                        change_type, reservation, owner
                    )
                    result.reminders = await self._recompute_reminders(
                        change_type, reservation, previous, owner
                    )
                    span.set_attribute("providers", len(result.providers))
                    span.set_attribute("ok", result.ok)

            if not result.integrations.ok:
                await self._audit(
                    SyncLogEntry(
                        operation=_implied_operation(change_type),
                        direction=SyncDirection.OUTBOUND,
                        status=SyncStatus.FAILED,
                        reservation_id=reservation.id,
                        user_id=owner,
                        error_kind=result.integrations.kind,
                        error_message=result.integrations.detail,
                        details={"change_type": change_type.value, "stage": "integrations"},
                    )
                )
            for provider_result in result.providers:
                await self._audit(
                    _provider_log_entry(provider_result, change_type, reservation.id, owner)
                )
            await self._audit(
                SyncLogEntry(
                    operation=SyncOperation.REMINDERS,
                    direction=SyncDirection.OUTBOUND,
                    status=SyncStatus.SUCCESS if result.reminders.ok else SyncStatus.FAILED,
                    reservation_id=reservation.id,
                    user_id=owner,
                    error_kind=result.reminders.kind,
                    error_message=None if result.reminders.ok else result.reminders.detail,
                    details={"change_type": change_type.value},
                )
            )

            if result.ok:
                logger.info("Synced %s change for reservation %s", change_type, reservation.id)
            else:
                logger.warning(
                    "Reservation %s %s change completed with failures", reservation.id, change_type
                )
        return result

    async def _fan_out(
        self, change_type: ChangeType, reservation: ReservationSnapshot, user_id: str
    ) -> tuple[SyncOutcome, list[ProviderResult]]:
        try:
            integrations = await self._store.list_enabled_integrations(user_id)
        except Exception as exc:
            logger.exception("Failed to load calendar integrations for user %s", user_id)
            return SyncOutcome.failure(ErrorKind.INTERNAL, sanitize_error(exc)), []
        if not integrations:
            return SyncOutcome.success(detail="no enabled integrations"), []

        gathered = await asyncio.gather(
            *(self._sync_provider(i, change_type, reservation) for i in integrations),
            return_exceptions=True,
        )
        results: list[ProviderResult] = []
        for integration, item in zip(integrations, gathered, strict=True):
            if isinstance(item, BaseException):
                logger.error(
                    "Unhandled error syncing %s integration %s",
                    integration.provider,
                    integration.id,
                    exc_info=item,
                )
                item = ProviderResult(
                    integration_id=integration.id,
                    provider=integration.provider,
                    operation=_implied_operation(change_type),
                    outcome=SyncOutcome.failure(ErrorKind.INTERNAL, sanitize_error(item)),
                )
            results.append(item)
        return SyncOutcome.success(), results

    async def _sync_provider(
        self,
        integration: CalendarIntegration,
        change_type: ChangeType,
        reservation: ReservationSnapshot,
    ) -> ProviderResult:
        operation = _implied_operation(change_type)
        skipped = False
        try:
            mapping = await self._store.get_mapping(reservation.id, integration.provider)
            planned = self._operation_for(change_type, reservation, mapping)
            if planned is None:
                skipped = True
                outcome = SyncOutcome.success(detail="no external event to change")
            else:
                operation = planned
                adapter = self._providers.get(integration.provider)
                with (
                    sync_span(
                        f"provider.{operation.value}",
                        provider=integration.provider.value,
                        integration_id=integration.id,
                    ),
                    metrics.track_provider_latency(integration.provider.value, operation.value),
                ):
                    outcome = await self._apply(
                        operation, adapter, integration, reservation, mapping
                    )
        except Exception as exc:
            logger.warning(
                "%s sync failed for reservation %s: %s",
                integration.provider,
                reservation.id,
                sanitize_error(exc),
            )
            outcome = _failure(exc)

        if skipped:
            status = "skipped"
        else:
            status = "success" if outcome.ok else "failed"
        metrics.record_provider_operation(integration.provider.value, operation.value, status)
        if outcome.ok and not skipped:
            try:
                await self._store.mark_integration_synced(integration.id, datetime.now(UTC))
            except Exception:
                logger.warning(
                    "Failed to update last_sync_at for %s", integration.id, exc_info=True
                )
        return ProviderResult(
            integration_id=integration.id,
            provider=integration.provider,
            operation=operation,
            outcome=outcome,
            skipped=skipped,
        )

    @staticmethod
    def _operation_for(
        change_type: ChangeType,
        reservation: ReservationSnapshot,
        mapping: ExternalEventMapping | None,
    ) -> SyncOperation | None:
        if change_type in (ChangeType.CANCELLED, ChangeType.DELETED):
            return SyncOperation.DELETE if mapping else None
        if mapping is not None:
            return SyncOperation.UPDATE
        if reservation.status == ReservationStatus.CANCELLED:
            return None
        return SyncOperation.CREATE

    async def _apply(
        self,
        operation: SyncOperation,
        adapter: CalendarProvider,
        integration: CalendarIntegration,
        reservation: ReservationSnapshot,
        mapping: ExternalEventMapping | None,
    ) -> SyncOutcome:
        if operation == SyncOperation.DELETE:
            assert mapping is not None
            await adapter.delete_event(integration, mapping.external_event_id)
            await self._store.delete_mapping(reservation.id, integration.provider)
            return SyncOutcome.success(external_event_id=mapping.external_event_id)

        if operation == SyncOperation.UPDATE:
            assert mapping is not None
            try:
                await adapter.update_event(integration, mapping.external_event_id, reservation)
                return SyncOutcome.success(external_event_id=mapping.external_event_id)
            except ProviderNotFoundError:
                # Removed provider-side; the reservation still exists, so recreate it.
                logger.info(
                    "%s event %s missing; recreating for reservation %s",
                    integration.provider,
                    mapping.external_event_id,
                    reservation.id,
                )
                await self._store.delete_mapping(reservation.id, integration.provider)

        event_id = await adapter.create_event(integration, reservation)
        await self._store.save_mapping(
            ExternalEventMapping(
                reservation_id=reservation.id,
                provider=integration.provider,
                integration_id=integration.id,
                external_event_id=event_id,
                created_at=datetime.now(UTC),
            )
        )
        return SyncOutcome.success(external_event_id=event_id)

    async def _recompute_reminders(
        self,
        change_type: ChangeType,
        reservation: ReservationSnapshot,
        previous: ReservationSnapshot | None,
        user_id: str,
    ) -> SyncOutcome:
        try:
            if (
                change_type in (ChangeType.CANCELLED, ChangeType.DELETED)
                or reservation.status == ReservationStatus.CANCELLED
            ):
                cancelled = await self._reminders.cancel_reminders(reservation.id)
                return SyncOutcome.success(detail=f"cancelled {cancelled}")

            confirmed = reservation.status == ReservationStatus.CONFIRMED
            if change_type == ChangeType.CREATED:
                if not confirmed:
                    return SyncOutcome.success(detail="awaiting confirmation")
                created = await self._reminders.create_reminders(
                    reservation.id, user_id, reservation.start_instant()
                )
                return SyncOutcome.success(detail=f"created {len(created)}")

            details: list[str] = []
            if previous is None or reservation.timing_changed(previous):
                moved = await self._reminders.update_reminders(
                    reservation.id, reservation.start_instant()
                )
                details.append(f"rescheduled {moved.rescheduled}, cancelled {moved.cancelled}")
            newly_confirmed = previous is None or previous.status != ReservationStatus.CONFIRMED
            if confirmed and newly_confirmed:
                created = await self._reminders.create_reminders(
                    reservation.id, user_id, reservation.start_instant()
                )
                details.append(f"created {len(created)}")
            return SyncOutcome.success(detail="; ".join(details) or "unchanged")
        except Exception as exc:
            logger.exception("Reminder update failed for reservation %s", reservation.id)
            return _failure(exc)

    # -- Batch operations --------------------------------------------------

    async def bulk_sync_user(
        self,
        user_id: str,
        start_date: date | None = None,
        end_date: date | None = None,
        force_resync: bool = False,
    ) -> BulkSyncResult:
        """Push every pending or confirmed reservation in the window.

        Defaults to reservations from today onward. Re-running is idempotent
        because create falls back to update when a mapping exists.
        """
        window_start = start_date or datetime.now(UTC).date()
        result = BulkSyncResult()
        try:
            reservations = await self._store.list_user_reservations(
                user_id,
                statuses=SYNCABLE_STATUSES,
                start_date=window_start,
                end_date=end_date,
            )
        except Exception as exc:
            logger.exception("Failed to load reservations for user %s", user_id)
            reservations = []
            result.errors.append(f"Loading reservations: {sanitize_error(exc)}")
        change_type = ChangeType.UPDATED if force_resync else ChangeType.CREATED
        result.total = len(reservations)

        with sync_span("bulk_sync", user_id=user_id, reservations=len(reservations)):
            for reservation in reservations:
                change = await self.on_reservation_change(change_type, reservation, user_id=user_id)
                if change.ok:
                    result.synced += 1
                    continue
                result.failed += 1
                if not change.integrations.ok:
                    result.errors.append(
                        f"Reservation {reservation.id} (integrations): "
                        f"{change.integrations.detail}"
                    )
                for provider_result in change.providers:
                    if not provider_result.outcome.ok:
                        result.errors.append(
                            f"Reservation {reservation.id} ({provider_result.provider}): "
                            f"{provider_result.outcome.detail}"
                        )
                if not change.reminders.ok:
                    result.errors.append(
                        f"Reservation {reservation.id} (reminders): {change.reminders.detail}"
                    )

        if result.ok:
            await self._mark_user_synced(user_id, result)

        await self._audit(
            SyncLogEntry(
                operation=SyncOperation.BULK_SYNC,
                direction=SyncDirection.OUTBOUND,
                status=SyncStatus.SUCCESS if result.ok else SyncStatus.FAILED,
                user_id=user_id,
                details=result.model_dump(exclude={"errors"}),
            )
        )
        logger.info(
            "Bulk sync for user %s: %d/%d synced, %d failed",
            user_id,
            result.synced,
            result.total,
            result.failed,
        )
        return result

    async def _mark_user_synced(self, user_id: str, result: BulkSyncResult) -> None:
        try:
            integrations = await self._store.list_enabled_integrations(user_id)
        except Exception as exc:
            logger.exception("Failed to load calendar integrations for user %s", user_id)
            result.errors.append(f"Loading integrations: {sanitize_error(exc)}")
            return
        now = datetime.now(UTC)
        for integration in integrations:
            try:
                await self._store.mark_integration_synced(integration.id, now)
            except Exception:
                logger.warning(
                    "Failed to update last_sync_at for %s", integration.id, exc_info=True
                )

    async def cleanup_orphaned_events(self, user_id: str | None) -> CleanupResult:
        """Delete provider events whose reservation is cancelled or gone."""
        result = CleanupResult()
        try:
            orphans = await self._store.list_orphaned_mappings(user_id)
        except Exception as exc:
            logger.exception("Failed to list orphaned mappings")
            orphans = []
            result.errors.append(f"Listing orphaned events: {sanitize_error(exc)}")
        for mapping in orphans:
            try:
                integration = await self._store.get_integration(mapping.integration_id)
                if integration is not None:
                    adapter = self._providers.get(mapping.provider)
                    with sync_span("provider.delete", provider=mapping.provider.value):
                        await adapter.delete_event(integration, mapping.external_event_id)
                await self._store.delete_mapping(mapping.reservation_id, mapping.provider)
                result.cleaned += 1
            except Exception as exc:
                detail = sanitize_error(exc)
                logger.warning(
                    "Failed to clean up %s event %s: %s",
                    mapping.provider,
                    mapping.external_event_id,
                    detail,
                )
                result.errors.append(
                    f"Failed to clean up {mapping.provider} event "
                    f"{mapping.external_event_id}: {detail}"
                )

        if result.cleaned or result.errors:
            await self._audit(
                SyncLogEntry(
                    operation=SyncOperation.CLEANUP,
                    direction=SyncDirection.OUTBOUND,
                    status=SyncStatus.FAILED if result.errors else SyncStatus.SUCCESS,
                    user_id=user_id,
                    details={"cleaned": result.cleaned, "errors": len(result.errors)},
                )
            )
        return result

    async def run_orphaned_event_cleanup(self) -> CleanupResult:
        """Orphan cleanup across every user."""
        return await self.cleanup_orphaned_events(None)

    async def run_scheduled_sync(self, now: datetime | None = None) -> ScheduledSyncResult:
        """Periodic bulk sync for all users, least recently synced first.

        Users synced within the minimum re-sync interval are skipped.
        """
        current = now or datetime.now(UTC)
        min_interval = timedelta(minutes=self._config.min_resync_interval_minutes)
        window_start = current.date()
        window_end = window_start + timedelta(days=self._config.window_days)
        result = ScheduledSyncResult()

        try:
            users: Sequence[tuple[str, datetime | None]] = await self._store.list_sync_users()
        except Exception as exc:
            logger.exception("Failed to list users for scheduled sync")
            users = []
            result.errors.append(f"Listing users: {sanitize_error(exc)}")
        result.users = len(users)
        for user_id, last_sync_at in users:
            if last_sync_at is not None and current - last_sync_at < min_interval:
                result.skipped += 1
                continue
            try:
                bulk = await self.bulk_sync_user(user_id, window_start, window_end)
            except Exception as exc:
                logger.exception("Scheduled sync failed for user %s", user_id)
                result.failed += 1
                result.errors.append(f"User {user_id}: {sanitize_error(exc)}")
                continue
            if not bulk.ok:
                result.failed += 1
                result.errors.extend(bulk.errors)
            else:
                result.synced += 1

        await self._audit(
            SyncLogEntry(
                operation=SyncOperation.SCHEDULED_SYNC,
                direction=SyncDirection.OUTBOUND,
                status=SyncStatus.FAILED if result.errors else SyncStatus.SUCCESS,
                details=result.model_dump(exclude={"errors"}),
            )
        )
        logger.info(
            "Scheduled sync: %d users, %d synced, %d skipped, %d failed",
            result.users,
            result.synced,
            result.skipped,
            result.failed,
        )
        return result

    # -- Inbound and reporting ---------------------------------------------

    async def handle_inbound_event(
        self, event: WebhookEvent, subscription: WebhookSubscription, reservation_id: str
    ) -> None:
        """Correlate a provider-side edit with its reservation.

        The reservation store stays authoritative; provider-side edits are
        recorded, not applied.
        """
        reservation = await self._store.get_reservation(reservation_id)
        if reservation is None:
            logger.warning(
                "%s %s notification references unknown reservation %s",
                subscription.provider,
                event.change_type,
                reservation_id,
            )
            return
        mapping = await self._store.get_mapping(reservation_id, subscription.provider)
        logger.info(
            "Provider-side %s of reservation %s on %s (mapped event %s)",
            event.change_type,
            reservation_id,
            subscription.provider,
            mapping.external_event_id if mapping else None,
        )

    async def get_sync_stats(self, user_id: str, now: datetime | None = None) -> SyncStats:
        current = now or datetime.now(UTC)
        integrations = await self._store.list_enabled_integrations(user_id)
        synced = [i.last_sync_at for i in integrations if i.last_sync_at is not None]
        return SyncStats(
            integrations=[
                IntegrationStats(
                    integration_id=i.id,
                    provider=i.provider,
                    enabled=i.sync_enabled,
                    last_sync_at=i.last_sync_at,
                )
                for i in integrations
            ],
            synced_events=await self._store.count_mappings(user_id),
            recent_failures=await self._store.count_sync_failures(
                user_id, current - RECENT_FAILURE_WINDOW
            ),
            last_sync_at=max(synced) if synced else None,
        )
