from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, event, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.automation.enums import HistoryChangeType
from app.automation.models import AutomationRule, HistoryEntry, NotificationIntent
from app.core import celery_app as celery_module
from app.core.config import get_settings
from app.core.database import Base


@pytest.fixture()
def session_factory(monkeypatch: pytest.MonkeyPatch) -> Generator[sessionmaker, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN")

    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    monkeypatch.setattr(celery_module, "SessionLocal", SessionLocal)
    try:
        yield SessionLocal
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("HISTORY_RETENTION_DAYS", "30")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_beat_schedule_registers_tick_and_cleanup() -> None:
    tasks = {entry["task"] for entry in celery_module.celery_app.conf.beat_schedule.values()}

    assert tasks == {"app.tasks.run_time_based_tick", "app.tasks.cleanup_history"}


def test_tick_task_runs_time_based_rules(session_factory: sessionmaker) -> None:
    with session_factory() as session:
        session.add(
            AutomationRule(
                name="Weekly digest",
                trigger="time_based",
                conditions=[],
                actions=[{"type": "send_notification", "config": {"title": "Weekly digest", "recipient_user_id": 7}}],
            )
        )
        session.commit()

    result = celery_module.run_time_based_tick_task.apply()

    assert result.get() == 1
    with session_factory() as session:
        assert [item.title for item in session.scalars(select(NotificationIntent)).all()] == ["Weekly digest"]


def test_cleanup_task_uses_configured_retention(session_factory: sessionmaker) -> None:
    now = datetime.now(timezone.utc)
    with session_factory() as session:
        session.add_all(
            [
                HistoryEntry(
                    entity_type="deal",
                    entity_id="d-1",
                    change_type=HistoryChangeType.CREATED.value,
                    created_at=now - timedelta(days=45),
                ),
                HistoryEntry(
                    entity_type="deal",
                    entity_id="d-1",
                    change_type=HistoryChangeType.UPDATED.value,
                    created_at=now - timedelta(days=5),
                ),
            ]
        )
        session.commit()

    result = celery_module.cleanup_history_task.apply()

    assert result.get() == 1
    with session_factory() as session:
        remaining = session.scalars(select(HistoryEntry.change_type)).all()
    assert remaining == ["updated"]
