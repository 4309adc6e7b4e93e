"""
dispatchbot/features/executor_plans/queue.py

Mutation Queue: the single entry point for changing executor plans.

Mutations are applied live against the Plan Store when it is reachable and
otherwise buffered, JSON-encoded, in a durable FIFO backlog that is drained by
``flush``. Every applied mutation is reported to one listener (the reminder
scheduler) so notification state follows plan state.

Callers follow ``submit``: flush first so older queued mutations are never
shadowed by a newer live one, then process, and fall back to the backlog when
the store is unavailable.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Literal, Optional, Protocol, Union

from pydantic import ValidationError as PydanticValidationError
from redis import Redis

from dispatchbot.core.config import Settings, settings
from dispatchbot.core.errors import MutationRejectedError, QueueUnavailableError
from dispatchbot.core.logging import log_event
from dispatchbot.core.metrics import (
    executor_plan_backlog_size,
    executor_plan_mutations_queued_total,
    executor_plan_mutations_total,
)
from dispatchbot.features.executor_plans.access_cache import AccessCacheRefresher
from dispatchbot.features.executor_plans.dates import parse_start_date
from dispatchbot.features.executor_plans.store import PlanStore
from dispatchbot.models.executor_plan import (
    CommentMutation,
    CreateMutation,
    DeleteMutation,
    ExecutorPlan,
    ExtendMutation,
    MutationOutcome,
    MuteMutation,
    PlanCreated,
    PlanDeleted,
    PlanUpdated,
    SetStartMutation,
    SetStatusMutation,
    dump_mutation,
    load_mutation,
)

logger = logging.getLogger("dispatchbot")

MUTATION_QUEUE_KEY = "executor-plan-mutations"
MAX_MUTATIONS_PER_FLUSH = 100

MutationListener = Callable[[MutationOutcome], None]


class MutationBacklog(Protocol):
    """Durable, ordered list of serialized mutations."""

    def push_tail(self, record: str) -> None:
        ...

    def pop_head(self) -> Optional[Union[str, bytes]]:
        """Remove and return the oldest record, or None when empty."""
        ...

    def push_head(self, record: Union[str, bytes]) -> None:
        """Put a record back in front of everything else."""
        ...

    def size(self) -> int:
        ...


class RedisMutationBacklog:
    """Backlog stored in a Redis list: RPUSH to append, LPOP/LPUSH at the head."""

    def __init__(self, redis_conn: Redis, key: str):
        self.redis = redis_conn
        self.key = key

    @classmethod
    def from_settings(cls, redis_conn: Redis, settings_obj: Optional[Settings] = None) -> "RedisMutationBacklog":
        cfg = settings_obj or settings
        return cls(redis_conn, f"{cfg.REDIS_KEY_PREFIX}{MUTATION_QUEUE_KEY}")

    def push_tail(self, record: str) -> None:
        self.redis.rpush(self.key, record)

    def pop_head(self) -> Optional[Union[str, bytes]]:
        return self.redis.lpop(self.key)

    def push_head(self, record: Union[str, bytes]) -> None:
        self.redis.lpush(self.key, record)

    def size(self) -> int:
        return int(self.redis.llen(self.key))


@dataclass(frozen=True)
class MutationSubmitResult:
    """Result of ``submit``: applied live, or parked in the backlog."""
    status: Literal["applied", "queued"]
    outcome: Optional[MutationOutcome] = None
    reminders_enabled: bool = True

    @property
    def queued(self) -> bool:
        return self.status == "queued"


class ExecutorPlanMutationQueue:
    def __init__(
        self,
        store: PlanStore,
        backlog: Optional[MutationBacklog] = None,
        access_cache: Optional[AccessCacheRefresher] = None,
        listener: Optional[MutationListener] = None,
        settings_obj: Optional[Settings] = None,
    ):
        self.store = store
        self.backlog = backlog
        self.access_cache = access_cache
        self.settings = settings_obj or settings
        self._listener = listener

    def bind_listener(self, listener: Optional[MutationListener]) -> None:
        """Register the single outcome listener, replacing any previous one."""
        self._listener = listener

    @property
    def backlog_configured(self) -> bool:
        return self.backlog is not None

    # -- live path ----------------------------------------------------------

    def apply(self, mutation) -> Optional[MutationOutcome]:
        """Apply one mutation to the store; None when the plan does not exist."""
        if isinstance(mutation, CreateMutation):
            return PlanCreated(plan=self.store.create(mutation.payload))

        if isinstance(mutation, ExtendMutation):
            plan = self.store.extend_by_days(mutation.payload.id, mutation.payload.days)
            return PlanUpdated(plan=plan) if plan else None

        if isinstance(mutation, SetStatusMutation):
            return self._apply_set_status(mutation)

        if isinstance(mutation, MuteMutation):
            plan = self.store.set_muted(mutation.payload.id, mutation.payload.muted)
            return PlanUpdated(plan=plan) if plan else None

        if isinstance(mutation, SetStartMutation):
            start_at = parse_start_date(mutation.payload.start_at, self.settings.TIMEZONE)
            if start_at is None:
                log_event(
                    "warning",
                    "Skipping executor plan start update due to invalid date",
                    plan_id=mutation.payload.id,
                    mutation_type=mutation.type,
                    extra={"start_at": mutation.payload.start_at},
                )
                return None
            plan = self.store.set_start_date(mutation.payload.id, start_at)
            return PlanUpdated(plan=plan) if plan else None

        if isinstance(mutation, CommentMutation):
            plan = self.store.set_comment(mutation.payload.id, mutation.payload.comment)
            return PlanUpdated(plan=plan) if plan else None

        if isinstance(mutation, DeleteMutation):
            return self._apply_delete(mutation)

        logger.warning(f"Unsupported executor plan mutation: {mutation!r}")
        return None

    def process(self, mutation) -> Optional[MutationOutcome]:
        """Apply a mutation and notify the listener of a non-empty outcome.

        Store errors propagate; listener errors are logged and swallowed.
        """
        try:
            outcome = self.apply(mutation)
        except Exception:
            executor_plan_mutations_total.inc({"type": mutation.type, "outcome": "failed"})
            raise

        executor_plan_mutations_total.inc(
            {"type": mutation.type, "outcome": "applied" if outcome else "missing"}
        )
        if outcome is not None:
            self._notify(outcome)
        return outcome

    def _notify(self, outcome: MutationOutcome) -> None:
        if self._listener is None:
            return
        try:
            self._listener(outcome)
        except Exception:
            logger.error("Executor plan mutation listener failed", exc_info=True)

    # -- set-status / delete side effects -------------------------------------

    def _apply_set_status(self, mutation: SetStatusMutation) -> Optional[MutationOutcome]:
        payload = mutation.payload
        plan = self.store.set_status(payload.id, payload.status)
        if plan is None:
            return None

        if payload.status == "blocked":
            self._guard("persist executor block entry", plan.id,
                        lambda: self.store.upsert_block(plan.phone, payload.reason))
        elif payload.status == "active":
            self._guard("remove executor block entry", plan.id,
                        lambda: self.store.remove_block(plan.phone))
        else:
            self._guard("release executor block entry", plan.id,
                        lambda: self._release_block(plan.phone, exclude_id=plan.id))

        self._refresh_access(plan)
        return PlanUpdated(plan=plan)

    def _apply_delete(self, mutation: DeleteMutation) -> Optional[MutationOutcome]:
        plan_id = mutation.payload.id
        existing = self.store.get_by_id(plan_id)
        if not self.store.delete(plan_id):
            return None

        if existing is not None and existing.status == "blocked":
            released = self._guard("release executor block entry", plan_id,
                                   lambda: self._release_block(existing.phone))
            if released:
                self._refresh_access(existing, is_blocked=False)
        return PlanDeleted(id=plan_id)

    def _release_block(self, phone: str, exclude_id: Optional[int] = None) -> bool:
        """Drop the block row unless another plan for the phone is still blocked."""
        if self.store.has_blocked_plan(phone, exclude_id=exclude_id):
            return False
        return self.store.remove_block(phone)

    def _guard(self, action: str, plan_id: int, fn: Callable[[], object]):
        try:
            return fn()
        except Exception:
            logger.error(f"Failed to {action}", extra={"plan_id": plan_id}, exc_info=True)
            return None

    def _refresh_access(self, plan: ExecutorPlan, is_blocked: Optional[bool] = None) -> None:
        if self.access_cache is None:
            return
        blocked = plan.status == "blocked" if is_blocked is None else is_blocked
        try:
            self.access_cache.refresh(plan.chat_id, phone=plan.phone, is_blocked=blocked)
        except Exception:
            logger.warning(
                f"Failed to refresh executor order access cache for chat {plan.chat_id}",
                extra={"plan_id": plan.id},
                exc_info=True,
            )

    # -- durable path --------------------------------------------------------

    def enqueue(self, mutation) -> None:
        """Append a mutation to the tail of the backlog.

        Raises:
            QueueUnavailableError: no backlog is configured.
        """
        if self.backlog is None:
            raise QueueUnavailableError("Redis is not configured; cannot enqueue executor plan mutation")

        self.backlog.push_tail(dump_mutation(mutation))
        executor_plan_mutations_queued_total.inc({"type": mutation.type})
        executor_plan_backlog_size.set(self.backlog.size())
        log_event(
            "info",
            "Executor plan mutation queued",
            plan_id=getattr(mutation.payload, "id", None),
            mutation_type=mutation.type,
        )

    def flush(self, limit: int = MAX_MUTATIONS_PER_FLUSH) -> int:
        """Drain up to ``limit`` records from the backlog head.

        Malformed records are dropped. A record that fails to apply is pushed
        back onto the head and the batch stops. Returns the number applied.
        """
        if self.backlog is None:
            return 0

        applied = 0
        for _ in range(limit):
            raw = self.backlog.pop_head()
            if raw is None:
                break

            try:
                mutation = load_mutation(raw)
            except (PydanticValidationError, ValueError):
                logger.error(
                    f"Failed to parse executor plan mutation, dropping it: {raw!r}",
                    exc_info=True,
                )
                continue

            try:
                self.process(mutation)
            except Exception:
                logger.error(
                    "Failed to apply executor plan mutation",
                    extra={"mutation_type": mutation.type},
                    exc_info=True,
                )
                self.backlog.push_head(raw)
                break
            applied += 1

        executor_plan_backlog_size.set(self.backlog.size())
        if applied:
            logger.info(f"Flushed {applied} queued executor plan mutation(s)")
        return applied

    def submit(self, mutation) -> MutationSubmitResult:
        """Flush, then apply live; park the mutation in the backlog on failure.

        Raises:
            MutationRejectedError: the store failed and no backlog is configured.
        """
        try:
            self.flush()
        except Exception:
            logger.warning("Executor plan backlog flush failed before live mutation", exc_info=True)

        try:
            return MutationSubmitResult(status="applied", outcome=self.process(mutation))
        except Exception as exc:
            logger.warning(
                f"Executor plan mutation failed, queueing it: {exc}",
                extra={"mutation_type": mutation.type},
            )
            try:
                self.enqueue(mutation)
            except QueueUnavailableError as queue_exc:
                raise MutationRejectedError(
                    "Executor plan mutation could not be applied or queued"
                ) from queue_exc
            return MutationSubmitResult(status="queued")
