"""Celery task infrastructure package.

Importing this module wires the configured Celery app; periodic jobs are
declared in ``config.beat``.
"""
from .config.celery import celery_app

__all__ = ["celery_app"]
