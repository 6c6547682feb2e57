# tutorgate/conftest.py
import os
from datetime import datetime, timezone

import pytest

# Must be set before tutorgate.main is imported by any test module
os.environ.setdefault("ENV", "test")
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")


@pytest.fixture(scope="function", autouse=True)
def db(tmp_path):
    """
    Fresh SQLite database per test.

    Every service opens its own sessions through get_db_session(), so pointing
    the module-level engine at a new file is enough to isolate tests.
    """
    from tutorgate.core import database

    url = f"sqlite:///{tmp_path / 'tutorgate.db'}"
    database.init_engine(url)
    database.create_all_tables()
    yield url
    database.drop_all_tables()
    database.get_engine().dispose()


@pytest.fixture
def settings(monkeypatch):
    """Live settings object; override fields with monkeypatch.setattr(settings, ...)."""
    from tutorgate.core.config import settings as live_settings

    monkeypatch.setattr(live_settings, "FREE_TIER_LIMIT", 1)
    monkeypatch.setattr(live_settings, "QUOTA_WINDOW_SECONDS", 24 * 60 * 60)
    monkeypatch.setattr(live_settings, "STORE_FAILURE_POLICY", "closed")
    monkeypatch.setattr(live_settings, "HEURISTIC_LINKING_ENABLED", True)
    monkeypatch.setattr(live_settings, "LINK_WINDOW_SECONDS", 0)
    monkeypatch.setattr(live_settings, "STRIPE_SECRET_KEY", None)
    monkeypatch.setattr(live_settings, "STRIPE_WEBHOOK_SECRET", None)
    return live_settings


@pytest.fixture
def now():
    """Fixed clock for deterministic window arithmetic."""
    return datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)
