"""Read-only sync and reminder statistics."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from fieldsync.api.deps import get_services
from fieldsync.api.models import ApiResponse
from fieldsync.reminders import ReminderStats
from fieldsync.services import Services
from fieldsync.sync import SyncStats

router = APIRouter(prefix="/api", tags=["stats"])


@router.get("/users/{user_id}/sync-stats", response_model=ApiResponse[SyncStats])
async def user_sync_stats(
    user_id: str,
    services: Services = Depends(get_services),
) -> ApiResponse[SyncStats]:
    return ApiResponse[SyncStats](data=await services.orchestrator.get_sync_stats(user_id))


@router.get("/reminders/stats", response_model=ApiResponse[ReminderStats])
async def reminder_stats(
    user_id: str | None = Query(default=None),
    services: Services = Depends(get_services),
) -> ApiResponse[ReminderStats]:
    return ApiResponse[ReminderStats](data=await services.reminders.get_stats(user_id))
