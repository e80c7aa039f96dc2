"""Reservation change intake and per-user sync operations.

Called by the reservation system itself, so every route requires the
service token. Single changes are acknowledged with 202 and propagated in
the background; batch and per-user operations run inline and return their
summaries.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Depends

from fieldsync.api.deps import get_services, require_service_token
from fieldsync.api.models import (
    Accepted,
    ApiResponse,
    BatchSyncRequest,
    BulkSyncRequest,
    ReservationChangeRequest,
)
from fieldsync.models import BulkSyncResult, ChangeType, CleanupResult
from fieldsync.services import Services
from fieldsync.triggers import trigger_batch_sync

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api",
    tags=["reservations"],
    dependencies=[Depends(require_service_token)],
)


@router.post("/reservations/changes", status_code=202, response_model=ApiResponse[Accepted])
async def reservation_changed(
    request: ReservationChangeRequest,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
) -> ApiResponse[Accepted]:
    reservation = request.reservation
    if reservation is None:
        reservation = await services.store.get_reservation(request.reservation_id or "")
    if reservation is None and request.change_type == ChangeType.DELETED:
        # Hard deletes can only be resolved from the caller's previous snapshot.
        reservation = request.previous
    if reservation is None:
        raise LookupError(f"Reservation {request.reservation_id} not found")

    background_tasks.add_task(
        services.orchestrator.on_reservation_change,
        request.change_type,
        reservation,
        previous=request.previous,
        user_id=request.user_id,
    )
    logger.info("Queued %s sync for reservation %s", request.change_type, reservation.id)
    return ApiResponse[Accepted](data=Accepted())


@router.post("/reservations/batch-sync", response_model=ApiResponse[BulkSyncResult])
async def batch_sync(
    request: BatchSyncRequest,
    services: Services = Depends(get_services),
) -> ApiResponse[BulkSyncResult]:
    result = await trigger_batch_sync(
        services.orchestrator,
        services.store,
        request.reservation_ids,
        request.user_id,
        request.change_type,
    )
    return ApiResponse[BulkSyncResult](data=result)


@router.post("/users/{user_id}/sync", response_model=ApiResponse[BulkSyncResult])
async def sync_user(
    user_id: str,
    request: BulkSyncRequest | None = None,
    services: Services = Depends(get_services),
) -> ApiResponse[BulkSyncResult]:
    options = request or BulkSyncRequest()
    if options.start_date and options.end_date and options.end_date < options.start_date:
        raise ValueError("end_date must not be before start_date")
    result = await services.orchestrator.bulk_sync_user(
        user_id,
        start_date=options.start_date,
        end_date=options.end_date,
        force_resync=options.force_resync,
    )
    return ApiResponse[BulkSyncResult](data=result)


@router.post("/users/{user_id}/cleanup", response_model=ApiResponse[CleanupResult])
async def cleanup_user(
    user_id: str,
    services: Services = Depends(get_services),
) -> ApiResponse[CleanupResult]:
    result = await services.orchestrator.cleanup_orphaned_events(user_id)
    return ApiResponse[CleanupResult](data=result)
