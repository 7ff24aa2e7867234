"""Entry point for a local worker with the embedded beat scheduler.

Production runs ``celery -A infrastructure.tasks worker`` and a separate
``celery -A infrastructure.tasks beat``; this script is for development.
"""
from __future__ import annotations

from .config.celery import celery_app


def main() -> None:
    celery_app.worker_main(
        argv=["worker", "--beat", "--loglevel=INFO", "--hostname=worker@%h", "-Q", "default,maintenance"]
    )


if __name__ == "__main__":
    main()
