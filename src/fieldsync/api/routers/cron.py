"""Cron-triggered maintenance endpoints.

For deployments where an external scheduler (Cloud Scheduler, a k8s
CronJob) drives the jobs instead of the in-process ``JobRunner``. Every
route requires ``Authorization: Bearer <api.cron_secret>``.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from fieldsync.api.deps import get_services, require_service_token
from fieldsync.api.models import ApiResponse
from fieldsync.jobs import run_job
from fieldsync.services import Services

router = APIRouter(
    prefix="/api/cron",
    tags=["cron"],
    dependencies=[Depends(require_service_token)],
)


async def _run(name: str, services: Services) -> ApiResponse[dict[str, Any]]:
    return ApiResponse[dict[str, Any]](data=await run_job(name, services))


@router.post("/reminders", response_model=ApiResponse[dict[str, Any]])
async def process_reminders(services: Services = Depends(get_services)):
    return await _run("reminders", services)


@router.post("/webhooks/renew", response_model=ApiResponse[dict[str, Any]])
async def renew_webhooks(services: Services = Depends(get_services)):
    return await _run("webhook_renewal", services)


@router.post("/webhooks/cleanup", response_model=ApiResponse[dict[str, Any]])
async def cleanup_webhooks(services: Services = Depends(get_services)):
    return await _run("webhook_cleanup", services)


@router.post("/sync", response_model=ApiResponse[dict[str, Any]])
async def scheduled_sync(services: Services = Depends(get_services)):
    return await _run("scheduled_sync", services)


@router.post("/orphans", response_model=ApiResponse[dict[str, Any]])
async def orphan_cleanup(services: Services = Depends(get_services)):
    return await _run("orphan_cleanup", services)
