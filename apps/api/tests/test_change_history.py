from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.automation.enums import DealStatus, EntityType, HistoryChangeType
from app.automation.history import HistoryRecorder, stringify_value
from app.automation.models import HistoryEntry, as_utc, utcnow
from app.automation.repositories import SqlHistoryRepository
from app.automation.schemas import SYSTEM_ACTOR, Actor, HistoryFilter
from app.core.database import Base


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def recorder(db_session: Session) -> HistoryRecorder:
    return HistoryRecorder(SqlHistoryRepository(db_session))


def test_stringify_value_formats() -> None:
    stage_id = uuid.UUID("5b1c3f0e-2f43-4f7a-9a53-0d7f9e8f1c11")

    assert stringify_value(None) is None
    assert stringify_value(DealStatus.WON) == "won"
    assert stringify_value(True) == "true"
    assert stringify_value(Decimal("1250.50")) == "1250.50"
    assert stringify_value(date(2026, 3, 1)) == "2026-03-01"
    assert stringify_value(stage_id) == str(stage_id)
    assert stringify_value(["b", "a"]) == '["b", "a"]'
    assert stringify_value(42) == "42"


def test_entries_are_listed_newest_first_with_paging(recorder: HistoryRecorder) -> None:
    entity_id = str(uuid.uuid4())
    for value in range(5):
        recorder.record(
            EntityType.DEAL,
            entity_id,
            HistoryChangeType.AMOUNT_CHANGED,
            SYSTEM_ACTOR,
            field_name="amount",
            old_value=value,
            new_value=value + 1,
        )

    page = recorder.list_for_entity(EntityType.DEAL, entity_id, HistoryFilter(limit=2, offset=1))

    assert page.total == 5
    assert [item.new_value for item in page.items] == ["4", "3"]
    assert page.items[0].created_at >= page.items[1].created_at


def test_created_at_never_goes_backwards(recorder: HistoryRecorder, db_session: Session) -> None:
    entity_id = str(uuid.uuid4())
    future = utcnow() + timedelta(minutes=5)
    db_session.add(
        HistoryEntry(
            entity_type="deal",
            entity_id=entity_id,
            change_type=HistoryChangeType.CREATED.value,
            created_at=future,
        )
    )
    db_session.flush()

    entry = recorder.record(EntityType.DEAL, entity_id, HistoryChangeType.UPDATED, SYSTEM_ACTOR)

    assert as_utc(entry.created_at) >= future


def test_filters_by_change_type_actor_and_field(recorder: HistoryRecorder) -> None:
    entity_id = str(uuid.uuid4())
    rep = Actor(id="7", name="Sales Rep")
    recorder.record(EntityType.DEAL, entity_id, HistoryChangeType.CREATED, rep)
    recorder.record(EntityType.DEAL, entity_id, HistoryChangeType.NOTE_ADDED, rep, field_name="notes", new_value="hi")
    recorder.record(EntityType.DEAL, entity_id, HistoryChangeType.NOTE_ADDED, SYSTEM_ACTOR, field_name="notes")

    by_type = recorder.list_for_entity(
        EntityType.DEAL,
        entity_id,
        HistoryFilter(change_types=[HistoryChangeType.NOTE_ADDED], actor_ids=["7"]),
    )
    by_field = recorder.list_for_entity(EntityType.DEAL, entity_id, HistoryFilter(field_names=["notes"]))

    assert by_type.total == 1
    assert by_type.items[0].actor_name == "Sales Rep"
    assert by_field.total == 2


def test_change_statistics_counts_by_type_actor_and_field(recorder: HistoryRecorder) -> None:
    entity_id = str(uuid.uuid4())
    rep = Actor(id="7", name="Sales Rep")
    recorder.record(EntityType.LEAD, entity_id, HistoryChangeType.CREATED, rep)
    recorder.record(EntityType.LEAD, entity_id, HistoryChangeType.UPDATED, SYSTEM_ACTOR, field_name="score")
    recorder.record(EntityType.LEAD, entity_id, HistoryChangeType.UPDATED, SYSTEM_ACTOR, field_name="tags")

    stats = recorder.change_statistics(EntityType.LEAD, entity_id)

    assert stats.total_changes == 3
    assert stats.changes_by_type == {"created": 1, "updated": 2}
    assert stats.changes_by_actor == {"7": 1, "system": 2}
    assert stats.changes_by_field == {"score": 1, "tags": 1}
    assert stats.first_change_at is not None


def test_stage_movements_and_most_active(recorder: HistoryRecorder) -> None:
    busy_deal = str(uuid.uuid4())
    quiet_deal = str(uuid.uuid4())
    for deal_id in (busy_deal, busy_deal, quiet_deal):
        recorder.record(
            EntityType.DEAL,
            deal_id,
            HistoryChangeType.STAGE_MOVED,
            SYSTEM_ACTOR,
            field_name="stage_id",
            old_value="qualification",
            new_value="negotiation",
        )
    recorder.record(EntityType.DEAL, busy_deal, HistoryChangeType.UPDATED, SYSTEM_ACTOR)

    movements = recorder.stage_movement_stats()
    active = recorder.most_active(limit=1)

    assert [(item.from_stage, item.to_stage, item.count) for item in movements.movements] == [
        ("qualification", "negotiation", 3)
    ]
    assert [(item.entity_id, item.changes_count) for item in active] == [(busy_deal, 3)]


def test_compare_states_reports_net_changes(recorder: HistoryRecorder) -> None:
    entity_id = str(uuid.uuid4())
    start = utcnow() - timedelta(seconds=1)
    recorder.record(
        EntityType.DEAL, entity_id, HistoryChangeType.AMOUNT_CHANGED, SYSTEM_ACTOR,
        field_name="amount", old_value=100, new_value=200,
    )
    recorder.record(
        EntityType.DEAL, entity_id, HistoryChangeType.AMOUNT_CHANGED, SYSTEM_ACTOR,
        field_name="amount", old_value=200, new_value=300,
    )
    recorder.record(
        EntityType.DEAL, entity_id, HistoryChangeType.PROBABILITY_CHANGED, SYSTEM_ACTOR,
        field_name="probability", old_value=20, new_value=40,
    )
    recorder.record(
        EntityType.DEAL, entity_id, HistoryChangeType.PROBABILITY_CHANGED, SYSTEM_ACTOR,
        field_name="probability", old_value=40, new_value=20,
    )

    changes = recorder.compare_states(EntityType.DEAL, entity_id, start, utcnow() + timedelta(minutes=1))

    assert list(changes) == ["amount"]
    assert (changes["amount"].old_value, changes["amount"].new_value) == ("100", "300")


def test_retention_cleanup_removes_only_old_entries(recorder: HistoryRecorder, db_session: Session) -> None:
    entity_id = str(uuid.uuid4())
    db_session.add(
        HistoryEntry(
            entity_type="deal",
            entity_id=entity_id,
            change_type=HistoryChangeType.CREATED.value,
            created_at=datetime.now(timezone.utc) - timedelta(days=400),
        )
    )
    db_session.flush()
    recorder.record(EntityType.DEAL, entity_id, HistoryChangeType.UPDATED, SYSTEM_ACTOR)

    assert recorder.delete_older_than(365) == 1
    assert [entry.change_type for entry in recorder.entries_for(EntityType.DEAL, entity_id)] == ["updated"]


def test_retention_cleanup_rejects_negative_days(recorder: HistoryRecorder) -> None:
    with pytest.raises(ValueError):
        recorder.delete_older_than(-1)


def test_recent_changes_span_entities(recorder: HistoryRecorder) -> None:
    first, second = str(uuid.uuid4()), str(uuid.uuid4())
    recorder.record(EntityType.DEAL, first, HistoryChangeType.CREATED, SYSTEM_ACTOR)
    recorder.record(EntityType.LEAD, second, HistoryChangeType.CREATED, SYSTEM_ACTOR)
    recorder.record(EntityType.DEAL, first, HistoryChangeType.NOTE_ADDED, SYSTEM_ACTOR, field_name="notes")

    recent = recorder.recent_changes(limit=2)

    assert [(item.entity_id, item.change_type) for item in recent] == [(first, "note_added"), (second, "created")]
