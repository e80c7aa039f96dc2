"""Core infrastructure: logging, telemetry and concurrency helpers."""
