"""
dispatchbot/features/executor_plans/messages.py

Plain-text plan summaries, reminder texts and the reminder inline keyboard.
Everything here is pure: no I/O, no clock reads.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from dispatchbot.core.config import Settings, settings
from dispatchbot.features.executor_plans.policy import (
    REMINDER_STAGE_LABELS,
    get_plan_choice_label,
    reminder_due_at,
)
from dispatchbot.models.executor_plan import ExecutorPlan

CALLBACK_PREFIX = "executor-plan"
EXTEND_ACTION = "extend"
BLOCK_ACTION = "block"
UNBLOCK_ACTION = "unblock"
TOGGLE_MUTE_ACTION = "toggle-mute"
EDIT_ACTION = "edit"

EXTEND_OPTIONS_DAYS = (7, 15, 30)

_STATUS_LABELS = {
    "active": "active",
    "blocked": "blocked",
    "completed": "completed",
    "cancelled": "cancelled",
}


def format_datetime(value: datetime, settings_obj: Optional[Settings] = None) -> str:
    cfg = settings_obj or settings
    return value.astimezone(ZoneInfo(cfg.TIMEZONE)).strftime("%d.%m.%Y %H:%M")


def format_plan_status(plan: ExecutorPlan) -> str:
    return _STATUS_LABELS.get(plan.status, plan.status)


def build_plan_summary(plan: ExecutorPlan, settings_obj: Optional[Settings] = None) -> str:
    """Multi-line card describing a plan and where its reminder campaign stands."""
    lines: List[str] = [
        f"Plan ID: {plan.id}",
        f"Phone: {plan.phone}",
    ]
    if plan.nickname:
        lines.append(f"Nickname/ID: {plan.nickname}")
    lines.append(f"Plan: {get_plan_choice_label(plan.plan_choice, settings_obj)}")
    lines.append(f"Start: {format_datetime(plan.start_at, settings_obj)}")
    lines.append(f"End: {format_datetime(plan.ends_at, settings_obj)}")

    muted_note = " (notifications muted)" if plan.muted else ""
    lines.append(f"Status: {format_plan_status(plan)}{muted_note}")

    if plan.reminder_index < len(REMINDER_STAGE_LABELS):
        stage = REMINDER_STAGE_LABELS[plan.reminder_index]
    else:
        stage = "exhausted"
    lines.append(f"Reminder stage: {stage}")

    next_at = reminder_due_at(plan.ends_at, plan.reminder_index)
    if next_at is None:
        lines.append("Next reminder: all sent")
    else:
        lines.append(f"Next reminder: {format_datetime(next_at, settings_obj)}")

    if plan.comment:
        lines.extend(["", f"Comment: {plan.comment}"])
    return "\n".join(lines)


def build_reminder_message(plan: ExecutorPlan, stage_index: int, settings_obj: Optional[Settings] = None) -> str:
    if 0 <= stage_index < len(REMINDER_STAGE_LABELS):
        stage = REMINDER_STAGE_LABELS[stage_index]
    else:
        stage = "T"

    lines: List[str] = [f"⏰ Reminder {stage}", f"Phone: {plan.phone}"]
    if plan.nickname:
        lines.append(f"Nickname/ID: {plan.nickname}")
    lines.append(f"Plan: {get_plan_choice_label(plan.plan_choice, settings_obj)}")
    lines.append(f"Start: {format_datetime(plan.start_at, settings_obj)}")
    lines.append(f"End: {format_datetime(plan.ends_at, settings_obj)}")
    if plan.comment:
        lines.extend(["", f"Comment: {plan.comment}"])
    return "\n".join(lines)


def build_callback_data(action: str, plan_id: int, *args: Any) -> str:
    parts = [CALLBACK_PREFIX, action, str(plan_id), *(str(arg) for arg in args)]
    return ":".join(parts)


def build_reminder_keyboard(plan: ExecutorPlan) -> Dict[str, Any]:
    """Telegram ``InlineKeyboardMarkup`` attached to reminder messages."""

    def button(text: str, action: str, *args: Any) -> Dict[str, str]:
        return {"text": text, "callback_data": build_callback_data(action, plan.id, *args)}

    rows = [
        [button(f"+{days}", EXTEND_ACTION, days) for days in EXTEND_OPTIONS_DAYS],
        [
            button("⛔", BLOCK_ACTION),
            button("🔔" if plan.muted else "🔕", TOGGLE_MUTE_ACTION),
            button("✏️", EDIT_ACTION),
        ],
    ]
    if plan.status == "blocked":
        rows.append([button("✅ Unblock", UNBLOCK_ACTION)])
    return {"inline_keyboard": rows}
