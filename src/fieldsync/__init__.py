"""FieldSync: external calendar sync and reminders for field reservations."""

__version__ = "0.1.0"
