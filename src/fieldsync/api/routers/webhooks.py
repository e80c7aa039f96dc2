"""Inbound provider push notifications and subscription management.

Provides:

- ``POST /api/webhooks/google``: Google channel notifications (``X-Goog-*``)
- ``POST /api/webhooks/outlook``: Microsoft Graph change notifications,
  including the ``validationToken`` handshake
- ``GET /api/webhooks/stats``: subscription counts
- ``POST /api/integrations/{integration_id}/webhooks``: register a subscription
- ``DELETE /api/webhooks/{webhook_id}``: unregister a subscription

Notifications are authenticated against the stored client state before the
response is sent; routing into the sync engine runs as a background task.
"""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import PlainTextResponse, Response

from fieldsync.api.deps import get_services, require_service_token
from fieldsync.api.models import Accepted, ApiResponse, WebhookRegistrationRequest
from fieldsync.models import WebhookSubscription
from fieldsync.services import Services
from fieldsync.webhooks import WebhookStats, parse_google_notification, parse_graph_notifications

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["webhooks"])


async def _json_body(request: Request) -> dict:
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except ValueError as exc:
        raise ValueError("Request body is not valid JSON") from exc
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body


@router.post("/webhooks/google", response_model=ApiResponse[Accepted])
async def google_notification(
    request: Request,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
) -> ApiResponse[Accepted]:
    event = parse_google_notification(request.headers, await _json_body(request))
    if event.change_type == "sync":
        logger.debug("Acknowledged Google channel handshake %s", event.subscription_id)
        return ApiResponse[Accepted](data=Accepted(status="ok", queued=0))

    await services.webhooks.verify_client_state(event)
    background_tasks.add_task(services.webhooks.process_inbound_event, event)
    return ApiResponse[Accepted](data=Accepted())


@router.post("/webhooks/outlook", status_code=202, response_model=None)
async def outlook_notification(
    request: Request,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
) -> Response | ApiResponse[Accepted]:
    validation_token = request.query_params.get("validationToken")
    if validation_token is not None:
        # Graph expects the token echoed back verbatim as text/plain.
        return PlainTextResponse(validation_token)

    events = parse_graph_notifications(await _json_body(request))
    for event in events:
        await services.webhooks.verify_client_state(event)
    for event in events:
        background_tasks.add_task(services.webhooks.process_inbound_event, event)
    return ApiResponse[Accepted](data=Accepted(queued=len(events)))


@router.get("/webhooks/stats", response_model=ApiResponse[WebhookStats])
async def webhook_stats(
    services: Services = Depends(get_services),
) -> ApiResponse[WebhookStats]:
    return ApiResponse[WebhookStats](data=await services.webhooks.get_stats())


@router.post(
    "/integrations/{integration_id}/webhooks",
    response_model=ApiResponse[WebhookSubscription],
    status_code=201,
    dependencies=[Depends(require_service_token)],
)
async def register_webhook(
    integration_id: str,
    request: WebhookRegistrationRequest,
    services: Services = Depends(get_services),
) -> ApiResponse[WebhookSubscription]:
    subscription = await services.webhooks.register(
        integration_id,
        request.provider,
        resource_uri=request.resource_uri,
        callback_url=request.callback_url,
    )
    # The client state is a shared secret between us and the provider.
    public = subscription.model_copy(update={"client_state": None})
    return ApiResponse[WebhookSubscription](data=public)


@router.delete(
    "/webhooks/{webhook_id}",
    status_code=204,
    dependencies=[Depends(require_service_token)],
)
async def unregister_webhook(
    webhook_id: str,
    services: Services = Depends(get_services),
) -> Response:
    if await services.store.get_webhook(webhook_id) is None:
        raise LookupError(f"Webhook {webhook_id} not found")
    await services.webhooks.unregister(webhook_id)
    return Response(status_code=204)
