"""Entry points that turn reservation table changes into sync calls.

The ``fieldsync_001`` migration installs a trigger that publishes each
reservation INSERT/UPDATE/DELETE on the ``reservation_changes`` channel.
``ReservationChangeListener`` consumes those notifications; the HTTP API and
CLI use ``trigger_reservation_sync`` and ``trigger_batch_sync`` directly.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping, Sequence
from datetime import date, time
from typing import Any

import asyncpg

from fieldsync.models import (
    BulkSyncResult,
    ChangeType,
    FieldRef,
    ReservationChangeResult,
    ReservationSnapshot,
    ReservationStatus,
    TeamRef,
)
from fieldsync.storage.base import SyncStore
from fieldsync.sync import SyncOrchestrator

logger = logging.getLogger(__name__)

RESERVATION_CHANGES_CHANNEL = "reservation_changes"


def change_type_from_trigger(
    operation: str,
    new: Mapping[str, Any] | None,
    old: Mapping[str, Any] | None = None,
) -> ChangeType | None:
    """Map a row-trigger operation to a change type; None for unknown operations."""
    op = operation.upper()
    if op == "INSERT":
        return ChangeType.CREATED
    if op == "UPDATE":
        new_status = (new or {}).get("status")
        old_status = (old or {}).get("status")
        if new_status == ReservationStatus.CANCELLED and old_status != ReservationStatus.CANCELLED:
            return ChangeType.CANCELLED
        return ChangeType.UPDATED
    if op == "DELETE":
        return ChangeType.DELETED
    return None


def snapshot_from_record(
    record: Mapping[str, Any], *, timezone: str = "UTC"
) -> ReservationSnapshot:
    """Build a snapshot from a raw ``row_to_json`` reservation record.

    Raw rows carry only foreign keys, so field and team names are blank.
    """
    status = record.get("status") or ReservationStatus.PENDING
    if status not in {s.value for s in ReservationStatus}:
        status = ReservationStatus.CONFIRMED
    team_id = record.get("team_id")
    return ReservationSnapshot(
        id=str(record["id"]),
        user_id=str(record["user_id"]),
        field=FieldRef(id=str(record.get("field_id") or ""), name=record.get("field_name") or ""),
        reservation_date=date.fromisoformat(str(record["date"])),
        start_time=time.fromisoformat(str(record["start_time"])),
        end_time=time.fromisoformat(str(record["end_time"])),
        timezone=timezone,
        status=status,
        purpose=record.get("purpose") or "",
        attendees=record.get("attendees") or 0,
        team=TeamRef(id=str(team_id), name="") if team_id else None,
        notes=record.get("notes"),
    )


async def trigger_reservation_sync(
    orchestrator: SyncOrchestrator,
    store: SyncStore,
    reservation_id: str,
    change_type: ChangeType | str,
    *,
    previous: ReservationSnapshot | None = None,
    user_id: str | None = None,
) -> ReservationChangeResult:
    """Load a reservation by id and run it through the orchestrator."""
    reservation = await store.get_reservation(reservation_id)
    if reservation is None:
        raise LookupError(f"Reservation {reservation_id} not found")
    return await orchestrator.on_reservation_change(
        change_type, reservation, previous=previous, user_id=user_id
    )


async def trigger_batch_sync(
    orchestrator: SyncOrchestrator,
    store: SyncStore,
    reservation_ids: Sequence[str],
    user_id: str,
    change_type: ChangeType = ChangeType.UPDATED,
) -> BulkSyncResult:
    """Sync a set of one user's reservations; ids owned by other users are skipped."""
    result = BulkSyncResult()
    for reservation_id in reservation_ids:
        reservation = await store.get_reservation(reservation_id)
        if reservation is None or reservation.user_id != user_id:
            logger.debug("Skipping reservation %s for batch sync of %s", reservation_id, user_id)
            continue
        result.total += 1
        change = await orchestrator.on_reservation_change(
            change_type, reservation, user_id=user_id
        )
        if change.ok:
            result.synced += 1
        else:
            result.failed += 1
            result.errors.append(f"{reservation_id}: sync completed with failures")
    return result


class ReservationChangeListener:
    """LISTEN subscriber for reservation row changes.

    Each notification is handled in its own task so the connection's
    callback never blocks; failures are logged and never reach the database.
    """

    def __init__(
        self,
        dsn: str,
        orchestrator: SyncOrchestrator,
        store: SyncStore,
        *,
        channel: str = RESERVATION_CHANGES_CHANNEL,
        default_timezone: str = "UTC",
    ) -> None:
        self._dsn = dsn
        self._orchestrator = orchestrator
        self._store = store
        self._channel = channel
        self._default_timezone = default_timezone
        self._conn: asyncpg.Connection | None = None
        self._tasks: set[asyncio.Task] = set()

    async def start(self) -> None:
        self._conn = await asyncpg.connect(self._dsn)
        await self._conn.add_listener(self._channel, self._on_notify)
        logger.info("Listening for reservation changes on channel %s", self._channel)

    async def stop(self) -> None:
        if self._conn is not None:
            try:
                await self._conn.remove_listener(self._channel, self._on_notify)
            finally:
                await self._conn.close()
                self._conn = None
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def _on_notify(
        self,
        connection: asyncpg.Connection,  # noqa: ARG002
        pid: int,  # noqa: ARG002
        channel: str,  # noqa: ARG002
        payload: str,
    ) -> None:
        task = asyncio.create_task(self.handle_payload(payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def handle_payload(self, payload: str) -> ReservationChangeResult | None:
        try:
            message = json.loads(payload)
        except ValueError:
            logger.warning("Ignoring undecodable reservation change payload")
            return None
        if not isinstance(message, dict) or message.get("table", "reservations") != "reservations":
            return None

        record = message.get("record")
        old_record = message.get("old_record")
        change_type = change_type_from_trigger(
            str(message.get("operation", "")), record, old_record
        )
        source = record or old_record
        if change_type is None or not source or not source.get("user_id"):
            return None

        try:
            previous = (
                snapshot_from_record(old_record, timezone=self._default_timezone)
                if old_record
                else None
            )
            reservation = None
            if change_type != ChangeType.DELETED:
                reservation = await self._store.get_reservation(str(source["id"]))
            if reservation is None:
                reservation = snapshot_from_record(source, timezone=self._default_timezone)
            result = await self._orchestrator.on_reservation_change(
                change_type, reservation, previous=previous
            )
        except Exception:
            logger.exception("Error handling reservation change notification")
            return None

        logger.info(
            "Calendar sync triggered for reservation %s: %s", reservation.id, change_type
        )
        return result
