"""HTTP surface: provider webhooks, cron triggers, change intake and stats."""

from fieldsync.api.app import create_app

__all__ = ["create_app"]
