"""
Delayed-job backend for executor plan reminders.

Jobs are addressed by the logical id ``"<plan_id>:<reminder_index>"``. Scheduling
the same id twice replaces the earlier job; removing an unknown id is a no-op.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional, Protocol

from redis import Redis
from rq import Queue
from rq.exceptions import NoSuchJobError
from rq.job import Job

from dispatchbot.core.config import Settings, settings

logger = logging.getLogger("dispatchbot")

REMINDER_JOB_FUNC = "dispatchbot.workers.plan_reminders.run_reminder_job"


class ReminderJobQueue(Protocol):
    def schedule(self, job_id: str, delay: timedelta, payload: Dict[str, Any]) -> None:
        """Fire ``payload`` after ``delay``; replaces a pending job with the same id."""
        ...

    def remove(self, job_id: str) -> None:
        """Drop a pending job; unknown ids are ignored."""
        ...


def to_rq_job_id(job_id: str) -> str:
    # rq job ids may only contain letters, digits, "-" and "_"
    return job_id.replace(":", "-")


class RQReminderJobQueue:
    def __init__(self, redis_conn: Redis, queue_name: str = "executor-plan-reminders", job_timeout: int = 60):
        self.redis = redis_conn
        self.queue = Queue(queue_name, connection=redis_conn)
        self.job_timeout = job_timeout

    @classmethod
    def from_settings(cls, redis_conn: Redis, settings_obj: Optional[Settings] = None) -> "RQReminderJobQueue":
        cfg = settings_obj or settings
        return cls(redis_conn, cfg.REMINDER_QUEUE_NAME, cfg.REMINDER_JOB_TIMEOUT_SECONDS)

    def schedule(self, job_id: str, delay: timedelta, payload: Dict[str, Any]) -> None:
        rq_id = to_rq_job_id(job_id)
        # Drop any pending job with this id so it leaves the scheduled registry
        self.remove(job_id)
        self.queue.enqueue_in(
            delay,
            REMINDER_JOB_FUNC,
            payload["planId"],
            payload["reminderIndex"],
            job_id=rq_id,
            job_timeout=self.job_timeout,
            result_ttl=0,
            failure_ttl=3600,
            description=f"executor plan reminder {job_id}",
        )
        logger.debug(f"[reminders] scheduled job {job_id} in {delay}")

    def remove(self, job_id: str) -> None:
        try:
            job = Job.fetch(to_rq_job_id(job_id), connection=self.redis)
        except NoSuchJobError:
            return
        job.delete()
