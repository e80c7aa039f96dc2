"""Provider-agnostic calendar adapter contract.

This module defines:
- the provider error hierarchy and its mapping onto ``ErrorKind``
- ``CalendarProvider``: the uniform adapter interface
- shared authenticated-request helpers (single refresh-and-retry on 401,
  bounded timeouts, per-integration refresh serialization)
- event text helpers shared by every provider payload builder
"""

from __future__ import annotations

import abc
import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import httpx
from pydantic import BaseModel

from fieldsync.core.locks import KeyedLocks
from fieldsync.models import (
    CalendarIntegration,
    ErrorKind,
    Provider,
    ReservationSnapshot,
    WebhookSubscription,
)

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0
# Stored tokens expiring within this margin are refreshed before use.
TOKEN_EXPIRY_MARGIN = timedelta(minutes=5)
DEFAULT_TOKEN_TTL_SECONDS = 3600


class ProviderError(RuntimeError):
    """Base error raised by calendar provider adapters."""


class ProviderAuthError(ProviderError):
    """Raised when a request is still unauthorized after one token refresh."""


class TokenRefreshError(ProviderAuthError):
    """Raised when the refresh-token exchange fails."""


class ProviderRequestError(ProviderError):
    """Raised when a provider API request fails."""

    def __init__(self, *, status_code: int, message: str, provider: str = "calendar") -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"{provider} API request failed ({status_code}): {message}")


class ProviderNotFoundError(ProviderRequestError):
    """Raised when the provider reports the target resource does not exist."""


class ProviderRateLimitError(ProviderRequestError):
    """Raised on HTTP 429."""


class ProviderTimeoutError(ProviderError):
    """Raised when a provider call exceeds its timeout."""


class ProviderDataError(ProviderError):
    """Raised when a payload is missing data needed to complete the call."""


def classify_error(exc: BaseException) -> ErrorKind:
    """Map an exception onto the sync error taxonomy."""
    if isinstance(exc, ProviderAuthError):
        return ErrorKind.AUTH
    if isinstance(exc, ProviderNotFoundError):
        return ErrorKind.NOT_FOUND
    if isinstance(exc, ProviderRateLimitError):
        return ErrorKind.RATE_LIMIT
    if isinstance(exc, ProviderTimeoutError | TimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(exc, ProviderDataError | LookupError | ValueError):
        return ErrorKind.DATA
    if isinstance(exc, ProviderError):
        return ErrorKind.PROVIDER
    return ErrorKind.INTERNAL


def redact_credential_values(message: str) -> str:
    """Redact token and secret values from an error message."""
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._~+/=-]+", "Bearer [REDACTED]", redacted)
    return redacted


def sanitize_error(exc: BaseException | str, limit: int = 200) -> str:
    raw = exc if isinstance(exc, str) else (str(exc) or type(exc).__name__)
    return " ".join(redact_credential_values(raw).split())[:limit]


def safe_error_message(response: httpx.Response) -> str:
    """Extract a short, readable error message from a provider response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
            code = error_payload.get("code")
            if isinstance(code, str) and code.strip():
                return code.strip()[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            if isinstance(description, str) and description.strip():
                return " ".join(f"{error_payload}: {description}".split())[:200]
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_TOKEN_TTL_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_TOKEN_TTL_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or DEFAULT_TOKEN_TTL_SECONDS
    return DEFAULT_TOKEN_TTL_SECONDS


# ---------------------------------------------------------------------------
# Contract types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    expires_at: datetime
    refresh_token: str | None = None


@dataclass(frozen=True)
class PushSubscription:
    """Provider response to a push-notification registration."""

    subscription_id: str
    expiration: datetime
    resource_id: str | None = None


class CalendarInfo(BaseModel):
    id: str
    name: str
    description: str | None = None
    primary: bool = False
    access_role: str | None = None


class TokenStore(Protocol):
    async def save_tokens(self, integration_id: str, grant: TokenGrant) -> None: ...


# ---------------------------------------------------------------------------
# Event text helpers
# ---------------------------------------------------------------------------


def event_title(reservation: ReservationSnapshot) -> str:
    purpose = reservation.purpose.strip()
    if not purpose:
        return reservation.field.name
    return f"{reservation.field.name} - {purpose}"


def event_detail_lines(reservation: ReservationSnapshot) -> list[tuple[str, str]]:
    """Labelled detail rows rendered into provider event descriptions."""
    rows = [
        ("Field", reservation.field.name),
        ("Purpose", reservation.purpose or "-"),
        ("Expected Attendees", str(reservation.attendees)),
    ]
    if reservation.team is not None:
        rows.append(("Team", reservation.team.name))
    if reservation.notes:
        rows.append(("Notes", reservation.notes))
    rows.append(("Status", reservation.status.value.upper()))
    rows.append(("Reservation ID", reservation.id))
    return rows


def event_location(reservation: ReservationSnapshot) -> str:
    return reservation.field.address or reservation.field.name


def local_datetime_string(reservation: ReservationSnapshot, *, end: bool = False) -> str:
    wall = reservation.end_time if end else reservation.start_time
    return f"{reservation.reservation_date.isoformat()}T{wall.strftime('%H:%M:%S')}"


# ---------------------------------------------------------------------------
# Provider interface
# ---------------------------------------------------------------------------


class CalendarProvider(abc.ABC):
    """Uniform adapter over one external calendar provider's HTTP API.

    Subclasses implement payload construction and endpoint paths. The base
    class owns authenticated requests: a stored token close to expiry is
    refreshed before use, and a 401 response triggers exactly one refresh
    followed by exactly one retry of the same request. Refreshed tokens are
    written back to the integration and handed to the ``TokenStore``.
    """

    token_url: str

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        http_client: httpx.AsyncClient | None = None,
        timeout_s: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        token_store: TokenStore | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._timeout = httpx.Timeout(timeout_s)
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=self._timeout)
        self._token_store = token_store
        self._refresh_locks = KeyedLocks()
        self._latest_grants: dict[str, TokenGrant] = {}

    @property
    @abc.abstractmethod
    def name(self) -> Provider:
        """Provider tag this adapter serves."""
        ...

    def bind_token_store(self, token_store: TokenStore) -> None:
        self._token_store = token_store

    # -- Event contract ---------------------------------------------------

    @abc.abstractmethod
    async def create_event(
        self, integration: CalendarIntegration, reservation: ReservationSnapshot
    ) -> str:
        """Create a provider event for *reservation* and return its id."""
        ...

    @abc.abstractmethod
    async def update_event(
        self,
        integration: CalendarIntegration,
        external_event_id: str,
        reservation: ReservationSnapshot,
    ) -> None:
        """Replace the provider event with the reservation's current state."""
        ...

    @abc.abstractmethod
    async def delete_event(self, integration: CalendarIntegration, external_event_id: str) -> None:
        """Delete a provider event; an already-missing event is success."""
        ...

    @abc.abstractmethod
    async def list_calendars(self, integration: CalendarIntegration) -> list[CalendarInfo]:
        """Return calendars the integration's account can see."""
        ...

    @abc.abstractmethod
    async def refresh_token(self, integration: CalendarIntegration) -> TokenGrant:
        """Exchange the integration's refresh token for a new access token."""
        ...

    # -- Push-notification contract ----------------------------------------

    @abc.abstractmethod
    def default_resource_uri(self, integration: CalendarIntegration) -> str:
        """Resource watched for event changes when none is given."""
        ...

    @abc.abstractmethod
    async def subscribe(
        self,
        integration: CalendarIntegration,
        *,
        resource_uri: str,
        callback_url: str,
        client_state: str,
        ttl_seconds: int,
    ) -> PushSubscription:
        """Register a push-notification subscription."""
        ...

    @abc.abstractmethod
    async def renew_subscription(
        self,
        integration: CalendarIntegration,
        subscription: WebhookSubscription,
        *,
        ttl_seconds: int,
    ) -> PushSubscription:
        """Extend a subscription; the returned id may differ from the old one."""
        ...

    @abc.abstractmethod
    async def unsubscribe(
        self, integration: CalendarIntegration, subscription: WebhookSubscription
    ) -> None:
        """Cancel a subscription provider-side."""
        ...

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    # -- Token handling ----------------------------------------------------

    async def _exchange_refresh_token(
        self, integration: CalendarIntegration, extra: dict[str, str] | None = None
    ) -> TokenGrant:
        refresh_token = (integration.refresh_token or "").strip()
        if not refresh_token:
            raise TokenRefreshError(
                f"{self.name} integration {integration.id} has no refresh token"
            )
        data = {
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        if extra:
            data.update(extra)
        try:
            response = await self._http_client.post(
                self.token_url,
                data=data,
                headers={"Accept": "application/json"},
                timeout=self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(f"{self.name} OAuth token refresh timed out") from exc
        except httpx.HTTPError as exc:
            raise TokenRefreshError(
                f"{self.name} OAuth token refresh request failed: {exc}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise TokenRefreshError(
                f"{self.name} OAuth token refresh failed "
                f"({response.status_code}): {safe_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise TokenRefreshError(
                f"{self.name} OAuth token endpoint returned invalid JSON"
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise TokenRefreshError(
                f"{self.name} OAuth token response is missing a non-empty access_token"
            )
        expires_in = coerce_expires_in_seconds(payload.get("expires_in"))
        new_refresh = payload.get("refresh_token")
        return TokenGrant(
            access_token=access_token.strip(),
            expires_at=datetime.now(UTC) + timedelta(seconds=expires_in),
            refresh_token=new_refresh.strip()
            if isinstance(new_refresh, str) and new_refresh.strip()
            else None,
        )

    @staticmethod
    def _token_expiring(integration: CalendarIntegration) -> bool:
        if integration.token_expires_at is None:
            return False
        return integration.token_expires_at <= datetime.now(UTC) + TOKEN_EXPIRY_MARGIN

    async def _refresh_integration(
        self, integration: CalendarIntegration, *, stale_token: str | None
    ) -> str:
        """Refresh under the integration's lock and return the usable token.

        A concurrent caller that already refreshed past *stale_token* wins;
        its grant is reused instead of issuing a second exchange.
        """
        async with self._refresh_locks.hold(integration.id):
            self._prune_grants()
            latest = self._latest_grants.get(integration.id)
            if latest is not None and latest.access_token != stale_token:
                self._apply_grant(integration, latest)
                return latest.access_token

            grant = await self.refresh_token(integration)
            self._latest_grants[integration.id] = grant
            self._apply_grant(integration, grant)
            logger.info(
                "Refreshed %s access token for integration %s", self.name, integration.id
            )
            if self._token_store is not None:
                try:
                    await self._token_store.save_tokens(integration.id, grant)
                except Exception:
                    logger.warning(
                        "Failed to persist refreshed token for integration %s",
                        integration.id,
                        exc_info=True,
                    )
            return grant.access_token

    def _prune_grants(self) -> None:
        """Forget cached grants that are too close to expiry to hand out."""
        cutoff = datetime.now(UTC) + TOKEN_EXPIRY_MARGIN
        for integration_id, grant in list(self._latest_grants.items()):
            if grant.expires_at <= cutoff:
                del self._latest_grants[integration_id]

    @staticmethod
    def _apply_grant(integration: CalendarIntegration, grant: TokenGrant) -> None:
        integration.access_token = grant.access_token
        integration.token_expires_at = grant.expires_at
        if grant.refresh_token:
            integration.refresh_token = grant.refresh_token

    # -- Requests ----------------------------------------------------------

    async def _send(
        self,
        *,
        method: str,
        url: str,
        access_token: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
                timeout=self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(f"{self.name} request timed out: {method} {url}") from exc
        except httpx.HTTPError as exc:
            raise ProviderRequestError(
                status_code=0, message=str(exc), provider=str(self.name)
            ) from exc

    async def _request(
        self,
        integration: CalendarIntegration,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        token = integration.access_token
        if self._token_expiring(integration) and integration.refresh_token:
            token = await self._refresh_integration(integration, stale_token=token)

        response = await self._send(
            method=method, url=url, access_token=token, params=params, json_body=json_body
        )
        if response.status_code != 401:
            return response

        logger.info(
            "%s returned 401 for integration %s; refreshing token and retrying once",
            self.name,
            integration.id,
        )
        token = await self._refresh_integration(integration, stale_token=token)
        response = await self._send(
            method=method, url=url, access_token=token, params=params, json_body=json_body
        )
        if response.status_code == 401:
            raise ProviderAuthError(
                f"{self.name} request still unauthorized after token refresh: "
                f"{safe_error_message(response)}"
            )
        return response

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return
        message = safe_error_message(response)
        if status in (404, 410):
            raise ProviderNotFoundError(
                status_code=status, message=message, provider=str(self.name)
            )
        if status == 429:
            raise ProviderRateLimitError(
                status_code=status, message=message, provider=str(self.name)
            )
        raise ProviderRequestError(status_code=status, message=message, provider=str(self.name))

    async def _request_json(
        self,
        integration: CalendarIntegration,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request(
            integration, method, url, params=params, json_body=json_body
        )
        self._raise_for_status(response)
        if response.status_code == 204 or not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderDataError(
                f"{self.name} returned invalid JSON for a successful response"
            ) from exc
        if not isinstance(payload, dict):
            raise ProviderDataError(f"{self.name} returned an unexpected JSON payload shape")
        return payload

    async def _delete_tolerating_missing(
        self,
        integration: CalendarIntegration,
        url: str,
        *,
        method: str = "DELETE",
        json_body: dict[str, Any] | None = None,
    ) -> bool:
        """Issue a delete-style request; return False when the target was already gone."""
        response = await self._request(integration, method, url, json_body=json_body)
        if response.status_code in (404, 410):
            logger.debug("%s %s: target already gone; treating as success", self.name, url)
            return False
        self._raise_for_status(response)
        return True
