"""FastAPI dependencies for the shared service graph and shared-secret auth."""

from __future__ import annotations

import hmac

from fastapi import Depends, Header, HTTPException, Request

from fieldsync.services import Services


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("Services not initialized")
    return services


def require_service_token(
    authorization: str | None = Header(default=None),
    services: Services = Depends(get_services),
) -> None:
    """Require ``Authorization: Bearer <api.cron_secret>``.

    Protects cron triggers and other operator endpoints; without a
    configured secret every request is refused.
    """
    secret = services.config.api.cron_secret
    if not secret:
        raise HTTPException(status_code=403, detail="Service token is not configured")
    expected = f"Bearer {secret}"
    if not hmac.compare_digest(authorization or "", expected):
        raise HTTPException(status_code=403, detail="Invalid service token")
