"""End-to-end executor plan flows through the wired service and the worker entry point."""

import logging
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from dispatchbot.core import database as database_module
from dispatchbot.core.config import Settings
from dispatchbot.core.logging import get_correlation_id
from dispatchbot.features.executor_plans import jobs as jobs_module
from dispatchbot.features.executor_plans import service as service_module
from dispatchbot.features.executor_plans.queue import ExecutorPlanMutationQueue, RedisMutationBacklog
from dispatchbot.features.executor_plans.reminders import ExecutorPlanReminderScheduler
from dispatchbot.features.executor_plans.service import ExecutorPlanService, build_executor_plan_service
from dispatchbot.features.executor_plans.store import PlanStore
from dispatchbot.models.executor_plan import CreateMutation, ExtendMutation, SetStatusMutation
from dispatchbot.services.telegram import TelegramMessenger
from dispatchbot.tests.mocks import FakeAccessCache, FakeJobQueue, FakeMessenger, FakeRedis, FrozenClock
from dispatchbot.workers import plan_reminders

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
PHONE = "+77010000001"


@pytest.fixture
def wired(db):
    cfg = Settings(_env_file=None, TIMEZONE="Europe/Moscow", REDIS_KEY_PREFIX="test:")
    redis_conn = FakeRedis()
    store = PlanStore()
    jobs = FakeJobQueue()
    messenger = FakeMessenger()
    access_cache = FakeAccessCache()
    mutations = ExecutorPlanMutationQueue(
        store,
        backlog=RedisMutationBacklog.from_settings(redis_conn, cfg),
        access_cache=access_cache,
        settings_obj=cfg,
    )
    reminders = ExecutorPlanReminderScheduler(
        store, mutations, jobs=jobs, messenger=messenger, clock=FrozenClock(T0), settings_obj=cfg
    )
    mutations.bind_listener(reminders.on_mutation_outcome)
    service = ExecutorPlanService(store=store, mutations=mutations, reminders=reminders, redis=redis_conn)
    return SimpleNamespace(service=service, jobs=jobs, messenger=messenger, access_cache=access_cache, redis=redis_conn)


def submit(service, mutation):
    return service.submit(mutation)


def test_extend_seven_day_plan_by_seven(wired):
    plan = submit(wired.service, CreateMutation(payload=dict(chat_id=-1, phone=PHONE, plan_choice="7", start_at=T0))).outcome.plan
    wired.service.store.advance_reminder_index(plan.id, 0, 1)

    extended = submit(wired.service, ExtendMutation(payload={"id": plan.id, "days": 7})).outcome.plan

    assert extended.start_at == T0 + timedelta(days=7)
    assert extended.ends_at == T0 + timedelta(days=14)
    assert extended.reminder_index == 0
    assert wired.jobs.job_ids_for(plan.id) == [f"{plan.id}:0"]


def test_block_then_unblock_round_trip(wired):
    store = wired.service.store
    plan = submit(wired.service, CreateMutation(payload=dict(chat_id=-1, phone=PHONE, plan_choice="15", start_at=T0))).outcome.plan

    submit(wired.service, SetStatusMutation(payload={"id": plan.id, "status": "blocked", "reason": "fraud"}))
    assert store.find_block(PHONE).reason == "fraud"
    assert wired.jobs.job_ids_for(plan.id) == []

    submit(wired.service, SetStatusMutation(payload={"id": plan.id, "status": "active"}))
    assert store.find_block(PHONE) is None
    assert wired.jobs.job_ids_for(plan.id) == [f"{plan.id}:0"]
    assert [r[2] for r in wired.access_cache.refreshes] == [True, False]


def test_outage_then_recovery_replays_in_order(wired, monkeypatch):
    store = wired.service.store
    plan = submit(wired.service, CreateMutation(payload=dict(chat_id=-1, phone=PHONE, plan_choice="7", start_at=T0))).outcome.plan

    original_extend = store.extend_by_days

    def boom(*args, **kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(store, "extend_by_days", boom)
    assert submit(wired.service, ExtendMutation(payload={"id": plan.id, "days": 7})).queued
    assert submit(wired.service, ExtendMutation(payload={"id": plan.id, "days": 15})).queued

    monkeypatch.setattr(store, "extend_by_days", original_extend)
    assert wired.service.mutations.flush() == 2
    assert store.get_by_id(plan.id).ends_at == T0 + timedelta(days=29)


def test_full_campaign_completes_plan(wired):
    plan = submit(wired.service, CreateMutation(payload=dict(chat_id=-1, phone=PHONE, plan_choice="trial", start_at=T0))).outcome.plan
    reminders = wired.service.reminders

    results = [reminders.handle_reminder_job(plan.id, index) for index in range(5)]

    assert results == ["sent", "sent", "sent", "sent", "completed"]
    assert len(wired.messenger.sent) == 5
    assert wired.service.store.get_by_id(plan.id).status == "completed"
    assert wired.jobs.job_ids_for(plan.id) == []


def test_worker_entry_point_binds_job_id(wired, monkeypatch):
    plan = submit(wired.service, CreateMutation(payload=dict(chat_id=-1, phone=PHONE, plan_choice="7", start_at=T0))).outcome.plan
    seen = {}

    def handle(plan_id, reminder_index):
        seen["cid"] = get_correlation_id()
        return "sent"

    monkeypatch.setattr(wired.service.reminders, "handle_reminder_job", handle)
    monkeypatch.setattr(plan_reminders, "get_executor_plan_service", lambda: wired.service)
    monkeypatch.setattr(plan_reminders, "get_current_job", lambda: SimpleNamespace(id=f"{plan.id}-0"))

    assert plan_reminders.run_reminder_job(plan.id, 0) == "sent"
    assert seen["cid"] == f"{plan.id}-0"
    assert get_correlation_id() is None


def test_build_service_without_redis_runs_store_only(db):
    cfg = Settings(_env_file=None, REDIS_URL=None, TELEGRAM_BOT_TOKEN=None)
    service = build_executor_plan_service(cfg)

    assert service.redis is None
    assert service.mutations.backlog_configured is False
    assert service.reminders.reminders_enabled is False
    assert service.reminders.messenger is None


def test_submit_reports_disabled_reminders_per_action(db, caplog):
    cfg = Settings(_env_file=None, REDIS_URL=None, TELEGRAM_BOT_TOKEN=None)
    service = build_executor_plan_service(cfg)

    with caplog.at_level(logging.WARNING, logger="dispatchbot"):
        created = service.submit(CreateMutation(payload=dict(chat_id=-1, phone=PHONE, plan_choice="7", start_at=T0)))
        extended = service.submit(ExtendMutation(payload={"id": created.outcome.plan.id, "days": 7}))

    assert created.reminders_enabled is False
    assert extended.reminders_enabled is False
    assert extended.outcome.plan.ends_at == T0 + timedelta(days=14)
    warnings = [r for r in caplog.records if "reminders are disabled" in r.getMessage()]
    assert len(warnings) == 2


def test_submit_with_reminders_keeps_flag(wired):
    result = submit(wired.service, CreateMutation(payload=dict(chat_id=-1, phone=PHONE, plan_choice="7", start_at=T0)))
    assert result.reminders_enabled is True
    assert result.status == "applied"


def test_build_service_with_redis_wires_collaborators(db, monkeypatch):
    class _Queue:
        def __init__(self, name, connection=None):
            self.name = name

    monkeypatch.setattr(jobs_module, "Queue", _Queue)
    cfg = Settings(_env_file=None, REDIS_URL="redis://localhost:6379/0", TELEGRAM_BOT_TOKEN="123:abc", REDIS_KEY_PREFIX="bot:")

    service = build_executor_plan_service(cfg, redis_conn=FakeRedis())

    assert service.mutations.backlog.key == "bot:executor-plan-mutations"
    assert service.mutations.access_cache is not None
    assert service.reminders.reminders_enabled is True
    assert isinstance(service.reminders.messenger, TelegramMessenger)
    assert service.reminders.jobs.queue.name == cfg.REMINDER_QUEUE_NAME
    assert service_module.get_redis_conn(Settings(_env_file=None, REDIS_URL=None)) is None


def test_worker_main_releases_db_pool_before_forking(wired, monkeypatch):
    calls = []

    class _Queue:
        def __init__(self, name, connection=None):
            self.name = name

    class _Worker:
        def __init__(self, queues, connection=None):
            self.queues = queues

        def work(self, with_scheduler=False):
            calls.append(("work", with_scheduler))

    monkeypatch.setattr(plan_reminders, "configure_logging", lambda *args: None)
    monkeypatch.setattr(plan_reminders, "validate_config", lambda: None)
    monkeypatch.setattr(plan_reminders, "create_all_tables", lambda: calls.append(("tables",)))
    monkeypatch.setattr(plan_reminders, "dispose_engine", lambda: calls.append(("dispose",)))
    monkeypatch.setattr(plan_reminders, "get_executor_plan_service", lambda: wired.service)
    monkeypatch.setattr(plan_reminders, "Queue", _Queue)
    monkeypatch.setattr(plan_reminders, "Worker", _Worker)

    assert plan_reminders.main(["--no-rehydrate"]) == 0
    assert calls == [("tables",), ("dispose",), ("work", True)]


def test_dispose_engine_drops_pooled_connections(monkeypatch):
    disposed = []
    monkeypatch.setattr(database_module, "_engine", SimpleNamespace(dispose=lambda: disposed.append(True)))

    database_module.dispose_engine()

    assert disposed == [True]
