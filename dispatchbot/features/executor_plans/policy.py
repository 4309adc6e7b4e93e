"""
dispatchbot/features/executor_plans/policy.py

Plan duration and reminder stage policy.

Maps a plan choice to its duration in days. Trial reads TRIAL_DAYS, paid
plans read the PLAN_DURATIONS vector by position (7, 15, 30).
"""

import math
from datetime import datetime, timedelta
from typing import Optional

from dispatchbot.core.config import Settings, settings, PLAN_DURATION_KEYS, DEFAULT_PLAN_DURATIONS

FALLBACK_PLAN_CHOICE = "7"


def _normalise_days(value, fallback: int) -> int:
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(numeric) or numeric <= 0:
        return fallback
    return max(1, int(round(numeric)))


def get_trial_plan_duration_days(settings_obj: Optional[Settings] = None) -> int:
    cfg = settings_obj or settings
    return _normalise_days(cfg.TRIAL_DAYS, 1)


def get_plan_choice_duration_days(choice: str, settings_obj: Optional[Settings] = None) -> int:
    """Return the duration in days for a plan choice.

    Never raises and always returns a positive integer. Unknown choices are
    treated as the 7-day plan.
    """
    cfg = settings_obj or settings
    if choice == "trial":
        return get_trial_plan_duration_days(cfg)

    if choice not in PLAN_DURATION_KEYS:
        choice = FALLBACK_PLAN_CHOICE

    position = PLAN_DURATION_KEYS.index(choice)
    default = DEFAULT_PLAN_DURATIONS[position]
    durations = cfg.plan_durations
    configured = durations[position] if position < len(durations) else None
    return _normalise_days(configured, default)


def get_plan_choice_label(choice: str, settings_obj: Optional[Settings] = None) -> str:
    days = get_plan_choice_duration_days(choice, settings_obj)
    if choice == "trial":
        return f"Trial plan ({days} days)"
    return f"{days}-day plan"


# Reminder stages relative to ends_at, in hours
REMINDER_OFFSETS_HOURS = (-48, -24, -3, 0, 24)
REMINDER_STAGE_LABELS = ("T-48", "T-24", "T-3", "T", "T+24")


def reminder_due_at(ends_at: datetime, reminder_index: int) -> Optional[datetime]:
    """Due time of a reminder stage, or None past the last stage."""
    if reminder_index < 0 or reminder_index >= len(REMINDER_OFFSETS_HOURS):
        return None
    return ends_at + timedelta(hours=REMINDER_OFFSETS_HOURS[reminder_index])
