"""Calendar provider adapters."""

from fieldsync.providers.base import (
    CalendarInfo,
    CalendarProvider,
    ProviderAuthError,
    ProviderDataError,
    ProviderError,
    ProviderNotFoundError,
    ProviderRateLimitError,
    ProviderRequestError,
    ProviderTimeoutError,
    PushSubscription,
    TokenGrant,
    TokenRefreshError,
    TokenStore,
    classify_error,
)
from fieldsync.providers.google import GoogleCalendarProvider
from fieldsync.providers.outlook import OutlookCalendarProvider
from fieldsync.providers.registry import ProviderRegistry

__all__ = [
    "CalendarInfo",
    "CalendarProvider",
    "GoogleCalendarProvider",
    "OutlookCalendarProvider",
    "ProviderAuthError",
    "ProviderDataError",
    "ProviderError",
    "ProviderNotFoundError",
    "ProviderRateLimitError",
    "ProviderRegistry",
    "ProviderRequestError",
    "ProviderTimeoutError",
    "PushSubscription",
    "TokenGrant",
    "TokenRefreshError",
    "TokenStore",
    "classify_error",
]
