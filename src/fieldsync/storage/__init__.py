"""Persistence for integrations, mappings, webhooks, reminders and the sync log."""

from fieldsync.storage.base import SyncStore
from fieldsync.storage.postgres import PostgresSyncStore

__all__ = ["PostgresSyncStore", "SyncStore"]
