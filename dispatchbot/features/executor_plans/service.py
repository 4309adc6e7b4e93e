"""
Wiring of the executor plan engine from settings.

Redis backs the mutation backlog, the reminder jobs and the access cache; when
REDIS_URL is unset all three are absent and the engine runs store-only.
"""

import logging
from dataclasses import dataclass, replace
from typing import Optional

from redis import Redis

from dispatchbot.core.config import Settings, settings
from dispatchbot.features.executor_plans.access_cache import RedisAccessCache
from dispatchbot.features.executor_plans.jobs import RQReminderJobQueue
from dispatchbot.features.executor_plans.queue import (
    ExecutorPlanMutationQueue,
    MutationSubmitResult,
    RedisMutationBacklog,
)
from dispatchbot.features.executor_plans.reminders import ExecutorPlanReminderScheduler
from dispatchbot.features.executor_plans.store import PlanStore
from dispatchbot.services.telegram import TelegramMessenger

logger = logging.getLogger("dispatchbot")

_service = None


@dataclass
class ExecutorPlanService:
    store: PlanStore
    mutations: ExecutorPlanMutationQueue
    reminders: ExecutorPlanReminderScheduler
    redis: Optional[Redis] = None

    def submit(self, mutation) -> MutationSubmitResult:
        """Submit a user action and flag whether reminders will follow it."""
        result = self.mutations.submit(mutation)
        if self.reminders.reminders_enabled:
            return result
        logger.warning(
            "Executor plan reminders are disabled; no reminders will be sent for this change",
            extra={"mutation_type": mutation.type},
        )
        return replace(result, reminders_enabled=False)


def get_redis_conn(settings_obj: Optional[Settings] = None) -> Optional[Redis]:
    cfg = settings_obj or settings
    if not cfg.REDIS_URL:
        return None
    return Redis.from_url(cfg.REDIS_URL)


def build_executor_plan_service(
    settings_obj: Optional[Settings] = None,
    redis_conn: Optional[Redis] = None,
) -> ExecutorPlanService:
    cfg = settings_obj or settings
    conn = redis_conn or get_redis_conn(cfg)

    store = PlanStore()
    backlog = RedisMutationBacklog.from_settings(conn, cfg) if conn is not None else None
    access_cache = RedisAccessCache(conn, cfg) if conn is not None else None
    jobs = RQReminderJobQueue.from_settings(conn, cfg) if conn is not None else None
    messenger = TelegramMessenger.from_settings(cfg) if cfg.TELEGRAM_BOT_TOKEN else None

    mutations = ExecutorPlanMutationQueue(store, backlog=backlog, access_cache=access_cache, settings_obj=cfg)
    reminders = ExecutorPlanReminderScheduler(store, mutations, jobs=jobs, messenger=messenger, settings_obj=cfg)
    mutations.bind_listener(reminders.on_mutation_outcome)

    if conn is None:
        logger.warning("REDIS_URL is not configured; executor plans run without backlog, reminders or access cache")
    return ExecutorPlanService(store=store, mutations=mutations, reminders=reminders, redis=conn)


def get_executor_plan_service() -> ExecutorPlanService:
    """Process-wide service built from the global settings on first use."""
    global _service
    if _service is None:
        _service = build_executor_plan_service()
    return _service


def reset_executor_plan_service() -> None:
    global _service
    _service = None
