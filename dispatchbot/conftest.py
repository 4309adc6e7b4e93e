# dispatchbot/conftest.py
import sys
from pathlib import Path

import pytest

# Make the ``dispatchbot`` package importable when pytest runs from inside it
PACKAGE_ROOT = Path(__file__).resolve().parent
REPO_ROOT = PACKAGE_ROOT.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


@pytest.fixture(scope="function")
def db(monkeypatch):
    """
    Fresh in-memory sqlite database per test.

    The engine uses StaticPool so every session sees the same connection.
    """
    from dispatchbot.core import database

    monkeypatch.setenv("TEST_DATABASE_URL", "sqlite:///:memory:")
    engine = database.init_engine("sqlite:///:memory:")
    database.reset_database()
    yield engine
    database.drop_all_tables()


@pytest.fixture(scope="function", autouse=True)
def reset_metrics():
    from dispatchbot.core.metrics import METRICS

    METRICS.reset()
    yield


@pytest.fixture(scope="function", autouse=True)
def reset_service():
    from dispatchbot.features.executor_plans.service import reset_executor_plan_service

    reset_executor_plan_service()
    yield
    reset_executor_plan_service()
