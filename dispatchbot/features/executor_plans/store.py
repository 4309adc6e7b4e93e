"""
dispatchbot/features/executor_plans/store.py

Plan Store: persistence and state transitions for executor plans and the
phone-keyed block list.

Updates that match no row return None (or False) and are treated by callers
as "already gone", never as errors.
"""

from __future__ import annotations

import logging
from contextlib import AbstractContextManager
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from sqlalchemy import and_, delete, insert, or_, select, update
from sqlalchemy.orm import Session

from dispatchbot.core.database import executor_blocks, executor_plans, get_db_session
from dispatchbot.features.executor_plans.policy import (
    FALLBACK_PLAN_CHOICE,
    get_plan_choice_duration_days,
)
from dispatchbot.models.executor_plan import (
    PLAN_CHOICES,
    PLAN_STATUSES,
    TERMINAL_STATUSES,
    ExecutorBlock,
    ExecutorPlan,
    PlanInsertInput,
)

logger = logging.getLogger("dispatchbot")

SessionScope = Callable[[], AbstractContextManager[Session]]


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise a stored datetime to aware UTC (sqlite drops tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def compute_ends_at(start_at: datetime, duration_days: int) -> datetime:
    return start_at + timedelta(days=duration_days)


def _normalise_plan_choice(value: str) -> str:
    if value in PLAN_CHOICES:
        return value
    logger.warning(f"Unknown executor plan choice {value!r}, using fallback")
    return FALLBACK_PLAN_CHOICE


def _normalise_status(value: str) -> str:
    if value in PLAN_STATUSES:
        return value
    logger.warning(f"Unknown executor plan status {value!r}, using fallback")
    return "active"


def _map_plan(row) -> ExecutorPlan:
    plan_choice = _normalise_plan_choice(row.plan_choice)
    start_at = _utc(row.start_at)
    ends_at = _utc(row.ends_at) or compute_ends_at(
        start_at, get_plan_choice_duration_days(plan_choice)
    )
    created_at = _utc(row.created_at) or datetime.now(timezone.utc)
    return ExecutorPlan(
        id=row.id,
        chat_id=int(row.chat_id),
        thread_id=row.thread_id,
        phone=row.phone,
        nickname=row.nickname,
        plan_choice=plan_choice,
        start_at=start_at,
        ends_at=ends_at,
        comment=row.comment,
        status=_normalise_status(row.status),
        muted=bool(row.muted),
        reminder_index=int(row.reminder_index or 0),
        reminder_last_sent=_utc(row.reminder_last_sent),
        card_message_id=row.card_message_id,
        card_chat_id=row.card_chat_id,
        created_at=created_at,
        updated_at=_utc(row.updated_at) or created_at,
    )


def _map_block(row) -> ExecutorBlock:
    return ExecutorBlock(
        id=row.id,
        phone=row.phone,
        reason=row.reason,
        created_at=_utc(row.created_at) or datetime.now(timezone.utc),
    )


class PlanStore:
    """Executor plan and block-list persistence over SQLAlchemy Core."""

    def __init__(self, session_scope: Optional[SessionScope] = None):
        self._session_scope = session_scope or get_db_session

    # -- helpers ----------------------------------------------------------

    @staticmethod
    def _now(now: Optional[datetime]) -> datetime:
        return now or datetime.now(timezone.utc)

    @staticmethod
    def _fetch(session: Session, plan_id: int, *, for_update: bool = False):
        query = select(executor_plans).where(executor_plans.c.id == plan_id)
        if for_update:
            query = query.with_for_update()
        return session.execute(query).first()

    def _update(self, plan_id: int, values: dict, *extra_conditions) -> Optional[ExecutorPlan]:
        with self._session_scope() as session:
            result = session.execute(
                update(executor_plans)
                .where(executor_plans.c.id == plan_id, *extra_conditions)
                .values(**values)
            )
            if result.rowcount == 0:
                return None
            row = self._fetch(session, plan_id)
            return _map_plan(row) if row else None

    # -- plans ------------------------------------------------------------

    def create(self, data: PlanInsertInput, now: Optional[datetime] = None) -> ExecutorPlan:
        ts = self._now(now)
        start_at = _utc(data.start_at)
        ends_at = _utc(data.ends_at) or compute_ends_at(
            start_at, get_plan_choice_duration_days(data.plan_choice)
        )
        with self._session_scope() as session:
            result = session.execute(
                insert(executor_plans).values(
                    chat_id=data.chat_id,
                    thread_id=data.thread_id,
                    phone=data.phone,
                    nickname=data.nickname,
                    plan_choice=data.plan_choice,
                    start_at=start_at,
                    ends_at=ends_at,
                    comment=data.comment,
                    status="active",
                    muted=False,
                    reminder_index=0,
                    created_at=ts,
                    updated_at=ts,
                )
            )
            plan_id = result.inserted_primary_key[0]
            return _map_plan(self._fetch(session, plan_id))

    def get_by_id(self, plan_id: int) -> Optional[ExecutorPlan]:
        with self._session_scope() as session:
            row = self._fetch(session, plan_id)
            return _map_plan(row) if row else None

    def set_status(self, plan_id: int, status: str, now: Optional[datetime] = None) -> Optional[ExecutorPlan]:
        """Change status; terminal plans only accept their own status again."""
        return self._update(
            plan_id,
            {"status": status, "updated_at": self._now(now)},
            or_(
                executor_plans.c.status.notin_(TERMINAL_STATUSES),
                executor_plans.c.status == status,
            ),
        )

    def set_muted(self, plan_id: int, muted: bool, now: Optional[datetime] = None) -> Optional[ExecutorPlan]:
        return self._update(plan_id, {"muted": muted, "updated_at": self._now(now)})

    def set_comment(self, plan_id: int, comment: Optional[str], now: Optional[datetime] = None) -> Optional[ExecutorPlan]:
        return self._update(plan_id, {"comment": comment, "updated_at": self._now(now)})

    def set_card_message(self, plan_id: int, chat_id: int, message_id: int, now: Optional[datetime] = None) -> Optional[ExecutorPlan]:
        """Remember where the UI layer rendered the plan card."""
        return self._update(
            plan_id,
            {"card_chat_id": chat_id, "card_message_id": message_id, "updated_at": self._now(now)},
        )

    def extend_by_days(self, plan_id: int, days: int, now: Optional[datetime] = None) -> Optional[ExecutorPlan]:
        """Start a new period at the previous end and reset reminder progress."""
        ts = self._now(now)
        with self._session_scope() as session:
            row = self._fetch(session, plan_id, for_update=True)
            if not row or row.status in TERMINAL_STATUSES:
                return None
            current = _map_plan(row)
            start_at = current.ends_at
            session.execute(
                update(executor_plans)
                .where(executor_plans.c.id == plan_id)
                .values(
                    start_at=start_at,
                    ends_at=compute_ends_at(start_at, days),
                    reminder_index=0,
                    reminder_last_sent=None,
                    updated_at=ts,
                )
            )
            return _map_plan(self._fetch(session, plan_id))

    def set_start_date(self, plan_id: int, start_at: datetime, now: Optional[datetime] = None) -> Optional[ExecutorPlan]:
        """Move the plan to a new start, keeping its original duration."""
        ts = self._now(now)
        with self._session_scope() as session:
            row = self._fetch(session, plan_id, for_update=True)
            if not row or row.status in TERMINAL_STATUSES:
                return None
            current = _map_plan(row)
            start_at = _utc(start_at)
            duration = current.ends_at - current.start_at
            session.execute(
                update(executor_plans)
                .where(executor_plans.c.id == plan_id)
                .values(
                    start_at=start_at,
                    ends_at=start_at + duration,
                    reminder_index=0,
                    reminder_last_sent=None,
                    updated_at=ts,
                )
            )
            return _map_plan(self._fetch(session, plan_id))

    def advance_reminder_index(
        self,
        plan_id: int,
        expected_index: int,
        next_index: int,
        sent_at: Optional[datetime] = None,
    ) -> Optional[ExecutorPlan]:
        """Compare-and-set the reminder cursor.

        Returns None when the stored index no longer equals ``expected_index``.
        """
        ts = self._now(sent_at)
        return self._update(
            plan_id,
            {"reminder_index": next_index, "reminder_last_sent": ts, "updated_at": ts},
            executor_plans.c.reminder_index == expected_index,
        )

    def delete(self, plan_id: int) -> bool:
        with self._session_scope() as session:
            result = session.execute(
                delete(executor_plans).where(executor_plans.c.id == plan_id)
            )
            return result.rowcount > 0

    def list_for_scheduling(self) -> List[ExecutorPlan]:
        with self._session_scope() as session:
            rows = session.execute(
                select(executor_plans)
                .where(executor_plans.c.status.in_(("active", "blocked")))
                .order_by(executor_plans.c.id)
            ).fetchall()
            return [_map_plan(row) for row in rows]

    def has_blocked_plan(self, phone: str, exclude_id: Optional[int] = None) -> bool:
        conditions = [executor_plans.c.phone == phone, executor_plans.c.status == "blocked"]
        if exclude_id is not None:
            conditions.append(executor_plans.c.id != exclude_id)
        with self._session_scope() as session:
            row = session.execute(
                select(executor_plans.c.id).where(and_(*conditions)).limit(1)
            ).first()
            return row is not None

    # -- block list -------------------------------------------------------

    def upsert_block(self, phone: str, reason: Optional[str] = None, now: Optional[datetime] = None) -> ExecutorBlock:
        ts = self._now(now)
        with self._session_scope() as session:
            existing = session.execute(
                select(executor_blocks.c.id)
                .where(executor_blocks.c.phone == phone)
                .with_for_update()
            ).first()
            if existing:
                session.execute(
                    update(executor_blocks)
                    .where(executor_blocks.c.phone == phone)
                    .values(reason=reason, created_at=ts)
                )
            else:
                session.execute(
                    insert(executor_blocks).values(phone=phone, reason=reason, created_at=ts)
                )
            row = session.execute(
                select(executor_blocks).where(executor_blocks.c.phone == phone)
            ).first()
            return _map_block(row)

    def remove_block(self, phone: str) -> bool:
        with self._session_scope() as session:
            result = session.execute(
                delete(executor_blocks).where(executor_blocks.c.phone == phone)
            )
            return result.rowcount > 0

    def find_block(self, phone: str) -> Optional[ExecutorBlock]:
        with self._session_scope() as session:
            row = session.execute(
                select(executor_blocks).where(executor_blocks.c.phone == phone).limit(1)
            ).first()
            return _map_block(row) if row else None
