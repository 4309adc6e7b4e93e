"""
dispatchbot/features/executor_plans/reminders.py

Reminder Scheduler.

Each plan runs a fixed campaign of reminders relative to its end date. The
plan's ``reminder_index`` points at the next stage to fire, and at most one
delayed job, id ``"<plan_id>:<reminder_index>"``, exists per plan. A job exists
only while the plan is active, not muted and has stages left.

Scheduling is driven by mutation outcomes (the scheduler is the Mutation
Queue's listener), by cold-start rehydration, and by the job handler itself
which advances the stage with a compare-and-set and schedules the next one.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from dispatchbot.core.config import Settings, settings
from dispatchbot.core.errors import QueueUnavailableError
from dispatchbot.core.logging import log_event
from dispatchbot.core.metrics import (
    executor_plan_reminder_jobs_total,
    executor_plan_reminders_sent_total,
)
from dispatchbot.features.executor_plans.jobs import ReminderJobQueue
from dispatchbot.features.executor_plans.messages import (
    build_reminder_keyboard,
    build_reminder_message,
)
from dispatchbot.features.executor_plans.policy import (
    REMINDER_OFFSETS_HOURS,
    REMINDER_STAGE_LABELS,
    reminder_due_at,
)
from dispatchbot.features.executor_plans.queue import ExecutorPlanMutationQueue
from dispatchbot.features.executor_plans.store import PlanStore
from dispatchbot.models.executor_plan import (
    ExecutorPlan,
    MutationOutcome,
    PlanCreated,
    PlanDeleted,
    PlanUpdated,
    SetStatusMutation,
    SetStatusPayload,
)
from dispatchbot.services.telegram import Messenger

logger = logging.getLogger("dispatchbot")

__all__ = [
    "REMINDER_OFFSETS_HOURS",
    "REMINDER_STAGE_LABELS",
    "ExecutorPlanReminderScheduler",
    "build_job_id",
    "compute_reminder_time",
    "is_eligible",
]

Clock = Callable[[], datetime]


def build_job_id(plan_id: int, reminder_index: int) -> str:
    return f"{plan_id}:{reminder_index}"


def compute_reminder_time(plan: ExecutorPlan, reminder_index: int) -> Optional[datetime]:
    return reminder_due_at(plan.ends_at, reminder_index)


def is_eligible(plan: ExecutorPlan) -> bool:
    return (
        plan.status == "active"
        and not plan.muted
        and plan.reminder_index < len(REMINDER_OFFSETS_HOURS)
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutorPlanReminderScheduler:
    def __init__(
        self,
        store: PlanStore,
        mutations: ExecutorPlanMutationQueue,
        jobs: Optional[ReminderJobQueue] = None,
        messenger: Optional[Messenger] = None,
        clock: Optional[Clock] = None,
        settings_obj: Optional[Settings] = None,
    ):
        self.store = store
        self.mutations = mutations
        self.jobs = jobs
        self.messenger = messenger
        self.settings = settings_obj or settings
        self._clock = clock or _utcnow

    @property
    def reminders_enabled(self) -> bool:
        return self.jobs is not None

    def _check_enabled(self) -> bool:
        if self.jobs is not None:
            return True
        # Reported to the user per action by ExecutorPlanService.submit
        logger.debug("Executor plan reminders are disabled; skipping")
        return False

    # -- scheduling ----------------------------------------------------------

    def _remove_all(self, plan_id: int) -> None:
        for index in range(len(REMINDER_OFFSETS_HOURS)):
            job_id = build_job_id(plan_id, index)
            try:
                self.jobs.remove(job_id)
            except Exception:
                logger.debug(
                    f"Failed to remove executor plan reminder job {job_id}",
                    extra={"plan_id": plan_id, "job_id": job_id},
                    exc_info=True,
                )
        executor_plan_reminder_jobs_total.inc({"action": "removed"})

    def _schedule(self, plan: ExecutorPlan) -> Optional[str]:
        self._remove_all(plan.id)

        if not is_eligible(plan):
            executor_plan_reminder_jobs_total.inc({"action": "skipped"})
            return None

        due_at = compute_reminder_time(plan, plan.reminder_index)
        delay = max(timedelta(0), due_at - self._clock())
        job_id = build_job_id(plan.id, plan.reminder_index)
        self.jobs.schedule(job_id, delay, {"planId": plan.id, "reminderIndex": plan.reminder_index})
        executor_plan_reminder_jobs_total.inc({"action": "scheduled"})
        log_event(
            "debug",
            f"Scheduled executor plan reminder {REMINDER_STAGE_LABELS[plan.reminder_index]}",
            plan_id=plan.id,
            job_id=job_id,
            extra={"due_at": due_at.isoformat()},
        )
        return job_id

    def reschedule(self, plan: ExecutorPlan) -> Optional[str]:
        """Replace whatever jobs the plan has with the one its state calls for.

        Returns the scheduled job id, or None when the plan gets no job.
        """
        if not self._check_enabled():
            return None
        return self._schedule(plan)

    def cancel(self, plan_id: int) -> None:
        if not self._check_enabled():
            return
        self._remove_all(plan_id)

    def on_mutation_outcome(self, outcome: MutationOutcome) -> None:
        if isinstance(outcome, (PlanCreated, PlanUpdated)):
            self.reschedule(outcome.plan)
        elif isinstance(outcome, PlanDeleted):
            self.cancel(outcome.id)

    def rehydrate(self) -> int:
        """Rebuild jobs for every schedulable plan after a restart."""
        if not self._check_enabled():
            return 0
        try:
            plans = self.store.list_for_scheduling()
        except Exception:
            logger.error("Failed to load executor plans for scheduling", exc_info=True)
            return 0

        for plan in plans:
            try:
                self._schedule(plan)
            except Exception:
                logger.error("Failed to schedule executor plan reminder", extra={"plan_id": plan.id}, exc_info=True)
        logger.info(f"Rehydrated reminder schedules for {len(plans)} executor plan(s)")
        return len(plans)

    # -- job handler ---------------------------------------------------------

    def handle_reminder_job(self, plan_id: int, reminder_index: int) -> str:
        """Run one fired reminder job.

        Returns what happened: ``missing``, ``stale``, ``inactive``,
        ``undeliverable``, ``duplicate``, ``sent`` or ``completed``.
        """
        job_id = build_job_id(plan_id, reminder_index)
        plan = self.store.get_by_id(plan_id)
        if plan is None:
            if self.jobs is not None:
                self._remove_all(plan_id)
            log_event("debug", "Reminder job for deleted executor plan", plan_id=plan_id, job_id=job_id)
            return "missing"

        if plan.reminder_index != reminder_index:
            self.reschedule(plan)
            executor_plan_reminders_sent_total.inc({"result": "stale"})
            log_event("debug", "Stale executor plan reminder job", plan_id=plan_id, job_id=job_id)
            return "stale"

        if plan.status != "active" or plan.muted:
            self.reschedule(plan)
            return "inactive"

        if not self._deliver(plan, reminder_index):
            # Stage stays pending; rehydrate picks it up once a messenger is configured
            return "undeliverable"

        next_index = reminder_index + 1
        updated = self.store.advance_reminder_index(plan.id, reminder_index, next_index, self._clock())
        if updated is None:
            executor_plan_reminders_sent_total.inc({"result": "duplicate"})
            log_event("debug", "Executor plan reminder already advanced", plan_id=plan_id, job_id=job_id)
            return "duplicate"

        if updated.reminder_index < len(REMINDER_OFFSETS_HOURS):
            self.reschedule(updated)
            return "sent"

        self._submit_completion(updated)
        return "completed"

    def _deliver(self, plan: ExecutorPlan, reminder_index: int) -> bool:
        """Send the stage message. Returns False when no send could be attempted."""
        if self.messenger is None:
            logger.error("No messenger configured for executor plan reminders", extra={"plan_id": plan.id})
            executor_plan_reminders_sent_total.inc({"result": "undeliverable"})
            return False

        text = build_reminder_message(plan, reminder_index, self.settings)
        try:
            self.messenger.send(plan.chat_id, plan.thread_id, text, build_reminder_keyboard(plan))
        except Exception:
            logger.error("Failed to send executor plan reminder", extra={"plan_id": plan.id}, exc_info=True)
            executor_plan_reminders_sent_total.inc({"result": "failed"})
            return True
        executor_plan_reminders_sent_total.inc({"result": "sent"})
        return True

    def _submit_completion(self, plan: ExecutorPlan) -> None:
        mutation = SetStatusMutation(payload=SetStatusPayload(id=plan.id, status="completed"))
        try:
            self.mutations.enqueue(mutation)
        except QueueUnavailableError:
            # Without a backlog apply it live so the listener still runs
            logger.warning("Mutation backlog unavailable; completing executor plan directly", extra={"plan_id": plan.id})
            self.mutations.process(mutation)
            return

        try:
            self.mutations.flush()
        except Exception:
            logger.warning("Executor plan backlog flush failed after completion", extra={"plan_id": plan.id}, exc_info=True)
