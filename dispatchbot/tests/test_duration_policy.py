"""Tests for the plan duration policy."""

from types import SimpleNamespace

import pytest

from dispatchbot.features.executor_plans.policy import (
    get_plan_choice_duration_days,
    get_plan_choice_label,
    get_trial_plan_duration_days,
)


def make_settings(trial=2, durations=(7.0, 15.0, 30.0)):
    return SimpleNamespace(TRIAL_DAYS=trial, plan_durations=list(durations))


def test_defaults_match_plan_names():
    cfg = make_settings()
    assert get_plan_choice_duration_days("7", cfg) == 7
    assert get_plan_choice_duration_days("15", cfg) == 15
    assert get_plan_choice_duration_days("30", cfg) == 30
    assert get_plan_choice_duration_days("trial", cfg) == 2


def test_configured_durations_are_read_by_position():
    cfg = make_settings(durations=(10, 20, 45))
    assert get_plan_choice_duration_days("7", cfg) == 10
    assert get_plan_choice_duration_days("15", cfg) == 20
    assert get_plan_choice_duration_days("30", cfg) == 45


@pytest.mark.parametrize("bad", [0, -3, float("nan"), float("inf"), None, "abc"])
def test_invalid_paid_duration_falls_back_to_slot_default(bad):
    cfg = make_settings(durations=(bad, bad, bad))
    assert get_plan_choice_duration_days("7", cfg) == 7
    assert get_plan_choice_duration_days("15", cfg) == 15
    assert get_plan_choice_duration_days("30", cfg) == 30


@pytest.mark.parametrize("bad", [0, -1, float("nan"), float("inf"), None])
def test_invalid_trial_falls_back_to_one_day(bad):
    assert get_trial_plan_duration_days(make_settings(trial=bad)) == 1


def test_fractional_values_are_rounded_and_at_least_one():
    cfg = make_settings(trial=0.3, durations=(7.6, 14.4, 30.0))
    assert get_plan_choice_duration_days("trial", cfg) == 1
    assert get_plan_choice_duration_days("7", cfg) == 8
    assert get_plan_choice_duration_days("15", cfg) == 14


def test_short_vector_keeps_defaults_for_missing_slots():
    cfg = make_settings(durations=(9,))
    assert get_plan_choice_duration_days("7", cfg) == 9
    assert get_plan_choice_duration_days("30", cfg) == 30


def test_unknown_choice_is_treated_as_seven_day_plan():
    cfg = make_settings(durations=(11, 15, 30))
    assert get_plan_choice_duration_days("90", cfg) == 11


def test_labels():
    cfg = make_settings(trial=3, durations=(7, 15, 31))
    assert get_plan_choice_label("trial", cfg) == "Trial plan (3 days)"
    assert get_plan_choice_label("30", cfg) == "31-day plan"
