#!/usr/bin/env python3
# =============================================================================
# scripts/start_worker.py - Celery Worker Entry Point
# =============================================================================
# Starts a Celery worker consuming every EduDash queue, with the embedded
# beat scheduler so the hourly notification sweep runs in development.
#
# Usage:
#   python scripts/start_worker.py
#
#   # Or use Celery CLI directly (production runs beat separately)
#   celery -A workers.celery_app worker -Q default,notifications,transcription --loglevel=info
#
# Prerequisites:
#   - Redis must be running
#   - Environment variables must be set (.env file)
# =============================================================================

import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from workers.celery_app import WORKER_QUEUES, celery_app


def main():
    """Start the Celery worker."""
    print("=" * 60)
    print("EduDash Celery Worker")
    print("=" * 60)
    print()
    print(f"Queues: {', '.join(WORKER_QUEUES)}")
    print("Press Ctrl+C to stop")
    print()

    celery_app.worker_main([
        "worker",
        "--loglevel=info",
        "--concurrency=2",
        f"--queues={','.join(WORKER_QUEUES)}",
        "--beat",
    ])


if __name__ == "__main__":
    main()
