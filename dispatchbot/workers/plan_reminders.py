"""Executor plan reminder worker.

Run with:
    python -m dispatchbot.workers.plan_reminders

On start it drains the mutation backlog, rebuilds reminder jobs from the
database and then runs an RQ worker (with its scheduler) on the reminder queue.
"""
import argparse
import logging
import sys

from rq import Queue, Worker, get_current_job

from dispatchbot.core.config import settings, validate_config
from dispatchbot.core.database import create_all_tables, dispose_engine
from dispatchbot.core.logging import configure_logging, correlation_id_ctx_var
from dispatchbot.features.executor_plans.service import get_executor_plan_service

logger = logging.getLogger("dispatchbot")


def run_reminder_job(plan_id: int, reminder_index: int) -> str:
    """RQ entry point for a fired reminder job."""
    job = get_current_job()
    token = correlation_id_ctx_var.set(job.id if job else None)
    try:
        result = get_executor_plan_service().reminders.handle_reminder_job(plan_id, reminder_index)
        logger.info(f"[plan_reminders] job {plan_id}:{reminder_index} -> {result}", extra={"plan_id": plan_id})
        return result
    except Exception:
        logger.error("Executor plan reminder job failed", extra={"plan_id": plan_id}, exc_info=True)
        raise
    finally:
        correlation_id_ctx_var.reset(token)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run the executor plan reminder worker.")
    parser.add_argument("--flush-only", action="store_true", help="Drain the mutation backlog and exit.")
    parser.add_argument("--no-rehydrate", action="store_true", help="Skip rebuilding reminder jobs on start.")
    args = parser.parse_args(argv)

    configure_logging(settings.ENV, settings.LOG_LEVEL)
    validate_config()
    create_all_tables()

    service = get_executor_plan_service()
    if service.redis is None:
        logger.error("REDIS_URL is not configured; the reminder worker cannot run")
        return 1

    flushed = service.mutations.flush()
    logger.info(f"[plan_reminders] flushed {flushed} queued mutation(s)")
    if args.flush_only:
        return 0

    if not args.no_rehydrate:
        service.reminders.rehydrate()

    queue = Queue(settings.REMINDER_QUEUE_NAME, connection=service.redis)
    worker = Worker([queue], connection=service.redis)
    # Forked work-horses must not inherit pooled DB connections
    dispose_engine()
    logger.info(f"Starting RQ worker on queue {settings.REMINDER_QUEUE_NAME}")
    worker.work(with_scheduler=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
