"""Tests for the release-phase helpers (no Alembic run)."""
import pytest

from app.botconsole.db import build_engine
from app.botconsole.models import Base
from app.botconsole.modules.loadbalancing.models import RobotLoadBalancing
from app.botconsole.modules.robots.models import Robot
from scripts import release
from scripts._db_utils import script_session


@pytest.fixture()
def db_url(tmp_path):
    url = f"sqlite:///{tmp_path/'release.db'}"
    engine = build_engine(url)
    Base.metadata.create_all(bind=engine)
    engine.dispose()
    return url


def test_production_guardrails(monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "s3cret")
    monkeypatch.setenv("ADMIN_PASSWORD", "change-me")

    release._production_guardrails("development", "sqlite:///x.db")
    with pytest.raises(RuntimeError, match="sqlite"):
        release._production_guardrails("production", "sqlite:///x.db")
    with pytest.raises(RuntimeError, match="ADMIN_PASSWORD"):
        release._production_guardrails("prod", "postgresql://db/console")

    monkeypatch.setenv("ADMIN_PASSWORD", "long-random-value")
    release._production_guardrails("prod", "postgresql://db/console")


def test_missing_tables(tmp_path, db_url):
    assert release._missing_tables(db_url) == []
    assert "robots" in release._missing_tables(f"sqlite:///{tmp_path/'empty.db'}")


def test_backfill_load_balancing(db_url):
    with script_session(db_url) as s:
        s.add(Robot(robot_id="wt-001", name="A", api_base_url="https://wt.test"))
        s.add(Robot(robot_id="wt-002", name="B", api_base_url="https://wt.test"))
        s.flush()
        s.add(RobotLoadBalancing(robot_id="wt-002", max_sessions=10))

    assert release._backfill_load_balancing(db_url) == (2, 1)
    assert release._backfill_load_balancing(db_url) == (2, 0)

    with script_session(db_url) as s:
        lb = s.query(RobotLoadBalancing).filter(RobotLoadBalancing.robot_id == "wt-001").one()
        assert lb.max_sessions == 100
