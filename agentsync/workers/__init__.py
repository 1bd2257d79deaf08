"""Celery workers for background maintenance."""
