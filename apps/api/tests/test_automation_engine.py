from __future__ import annotations

import logging
import uuid
from collections.abc import Generator
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, event, select, text
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit
from app.automation.engine import AutomationEngine
from app.automation.enums import DealStatus, EntityType, StageKind, Trigger
from app.automation.errors import AssigneeNotFoundError, InvalidAssigneeError, InvalidRuleError, StageNotFoundError
from app.automation.models import (
    Activity,
    AppUser,
    Assignment,
    AutomationRule,
    Deal,
    Lead,
    NotificationIntent,
    PipelineStage,
)
from app.automation.schemas import Actor, AutomationRuleCreate, AutomationRuleUpdate, FieldChange
from app.core.config import get_settings
from app.core.database import Base


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
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
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.delenv("AUTOMATION_MAX_DEPTH", raising=False)
    get_settings.cache_clear()
    audit.clear()
    yield
    get_settings.cache_clear()
    audit.clear()


@pytest.fixture()
def stages(db_session: Session) -> dict[str, PipelineStage]:
    created = {
        "qualification": PipelineStage(name="Qualification", kind=StageKind.NORMAL.value, position=0, default_probability=20),
        "negotiation": PipelineStage(name="Negotiation", kind=StageKind.NORMAL.value, position=1, default_probability=60),
        "won": PipelineStage(name="Closed Won", kind=StageKind.WON.value, position=10, default_probability=100),
        "lost": PipelineStage(name="Closed Lost", kind=StageKind.LOST.value, position=11, default_probability=0),
    }
    db_session.add_all(created.values())
    db_session.add(AppUser(id=7, username="sales.rep", full_name="Sales Rep"))
    db_session.add(AppUser(id=8, username="former.rep", full_name="Former Rep", is_active=False))
    db_session.commit()
    return created


@pytest.fixture()
def engine(db_session: Session) -> AutomationEngine:
    return AutomationEngine(db_session)


def _create_deal(db_session: Session, stage: PipelineStage, **overrides: object) -> Deal:
    values: dict[str, object] = {
        "title": "Acme renewal",
        "stage_id": stage.id,
        "amount": Decimal("500.00"),
        "currency_code": "USD",
    }
    values.update(overrides)
    deal = Deal(**values)
    db_session.add(deal)
    db_session.commit()
    return deal


def _create_rule(engine: AutomationEngine, **body: object) -> AutomationRule:
    dto = AutomationRuleCreate.model_validate({"name": "rule", **body})
    read = engine.create_rule(dto, Actor(id="1", name="admin"))
    rule = engine.session.get(AutomationRule, read.id)
    assert rule is not None
    return rule


def _change_types(engine: AutomationEngine, deal: Deal) -> list[str]:
    return [entry.change_type for entry in engine.history.entries_for(EntityType.DEAL, str(deal.id))]


def _install_failing_trigger(db_session: Session, name: str, timing: str, message: str) -> None:
    db_session.execute(text(f"CREATE TRIGGER {name} {timing} BEGIN SELECT RAISE(ABORT, '{message}'); END"))
    db_session.commit()


def test_deal_created_rule_assigns_user_once(
    engine: AutomationEngine,
    db_session: Session,
    stages: dict[str, PipelineStage],
) -> None:
    rule = _create_rule(
        engine,
        trigger=Trigger.DEAL_CREATED,
        actions=[{"type": "assign_to_user", "config": {"user_id": 7}}],
    )
    deal = _create_deal(db_session, stages["qualification"])

    engine.on_entity_created(EntityType.DEAL, deal.id, Actor(id="1", name="admin"))

    assignments = db_session.scalars(select(Assignment).where(Assignment.entity_id == str(deal.id))).all()
    assert [(item.user_id, item.status) for item in assignments] == [(7, "active")]
    change_types = _change_types(engine, deal)
    assert change_types.count("assigned") == 1
    assert change_types[0] == "created"

    db_session.refresh(rule)
    assert rule.trigger_count == 1
    assert rule.last_triggered_at is not None


def test_deal_created_backfills_probability_from_stage(
    engine: AutomationEngine,
    db_session: Session,
    stages: dict[str, PipelineStage],
) -> None:
    deal = _create_deal(db_session, stages["qualification"])

    engine.on_entity_created(EntityType.DEAL, deal.id)

    db_session.refresh(deal)
    assert deal.probability == 20
    assert _change_types(engine, deal) == ["created", "probability_changed"]


def test_move_to_won_stage_closes_deal(
    engine: AutomationEngine,
    db_session: Session,
    stages: dict[str, PipelineStage],
) -> None:
    deal = _create_deal(db_session, stages["qualification"], probability=20)

    result = engine.move_to_stage(deal.id, stages["won"].id)

    assert result.status == DealStatus.WON.value
    assert result.stage_id == stages["won"].id
    assert result.actual_close_date is not None
    assert result.probability == 20
    assert _change_types(engine, deal) == ["stage_moved", "won", "date_changed"]

    stage_entry = engine.history.entries_for(EntityType.DEAL, str(deal.id))[0]
    assert stage_entry.metadata_json == {"from_stage_name": "Qualification", "to_stage_name": "Closed Won"}


def test_forced_move_overwrites_probability(
    engine: AutomationEngine,
    db_session: Session,
    stages: dict[str, PipelineStage],
) -> None:
    deal = _create_deal(db_session, stages["qualification"], probability=20)

    result = engine.move_to_stage(deal.id, stages["negotiation"].id, force=True)

    assert result.probability == 60
    assert result.status == DealStatus.OPEN.value
    assert _change_types(engine, deal) == ["stage_moved", "probability_changed"]


def test_move_without_probability_backfills(
    engine: AutomationEngine,
    db_session: Session,
    stages: dict[str, PipelineStage],
) -> None:
    deal = _create_deal(db_session, stages["qualification"])

    result = engine.move_to_stage(deal.id, stages["negotiation"].id)

    assert result.probability == 60


def test_change_status_won_matches_move_to_won_stage(
    engine: AutomationEngine,
    db_session: Session,
    stages: dict[str, PipelineStage],
) -> None:
    moved = _create_deal(db_session, stages["qualification"], probability=20)
    changed = _create_deal(db_session, stages["qualification"], probability=20)

    by_stage = engine.move_to_stage(moved.id, stages["won"].id)
    by_status = engine.change_status(changed.id, DealStatus.WON)

    assert (by_status.stage_id, by_status.status, by_status.probability) == (
        by_stage.stage_id,
        by_stage.status,
        by_stage.probability,
    )
    assert by_status.actual_close_date is not None
    assert _change_types(engine, changed) == _change_types(engine, moved)


def test_win_records_amount_then_close(
    engine: AutomationEngine,
    db_session: Session,
    stages: dict[str, PipelineStage],
) -> None:
    deal = _create_deal(db_session, stages["negotiation"], probability=60)

    result = engine.win(deal.id, Decimal("750.00"))

    assert result.amount == Decimal("750.00")
    assert result.status == DealStatus.WON.value
    assert result.stage_id == stages["won"].id
    assert _change_types(engine, deal) == ["amount_changed", "stage_moved", "won", "date_changed"]


def test_lose_appends_reason_to_notes(
    engine: AutomationEngine,
    db_session: Session,
    stages: dict[str, PipelineStage],
) -> None:
    deal = _create_deal(db_session, stages["negotiation"], probability=60, notes="Met twice")

    result = engine.lose(deal.id, "price")

    assert result.notes == "Met twice\nLoss reason: price"
    assert result.status == DealStatus.LOST.value
    assert result.stage_id == stages["lost"].id
    assert "lost" in _change_types(engine, deal)


def test_reopen_moves_closed_deal_back_to_first_stage(
    engine: AutomationEngine,
    db_session: Session,
    stages: dict[str, PipelineStage],
) -> None:
    deal = _create_deal(db_session, stages["negotiation"], probability=60)
    engine.win(deal.id)

    result = engine.change_status(deal.id, DealStatus.OPEN)

    assert result.status == DealStatus.OPEN.value
    assert result.stage_id == stages["qualification"].id
    assert result.actual_close_date is None
    assert "reopened" in _change_types(engine, deal)


def test_unknown_stage_raises(
    engine: AutomationEngine,
    db_session: Session,
    stages: dict[str, PipelineStage],
) -> None:
    deal = _create_deal(db_session, stages["qualification"])

    with pytest.raises(StageNotFoundError):
        engine.move_to_stage(deal.id, uuid.uuid4())


def test_assign_deal_validates_assignee(
    engine: AutomationEngine,
    db_session: Session,
    stages: dict[str, PipelineStage],
) -> None:
    deal = _create_deal(db_session, stages["qualification"])

    with pytest.raises(InvalidAssigneeError):
        engine.assign_deal(deal.id, "sales.rep")
    with pytest.raises(AssigneeNotFoundError):
        engine.assign_deal(deal.id, 999)
    with pytest.raises(AssigneeNotFoundError):
        engine.assign_deal(deal.id, 8)


def test_assigning_same_user_twice_is_a_no_op(
    engine: AutomationEngine,
    db_session: Session,
    stages: dict[str, PipelineStage],
) -> None:
    deal = _create_deal(db_session, stages["qualification"])

    engine.assign_deal(deal.id, "7")
    engine.assign_deal(deal.id, 7)

    assert _change_types(engine, deal) == ["assigned"]


def test_failing_action_does_not_stop_later_actions(
    engine: AutomationEngine,
    db_session: Session,
    stages: dict[str, PipelineStage],
    caplog: pytest.LogCaptureFixture,
) -> None:
    rule = _create_rule(
        engine,
        trigger=Trigger.DEAL_CREATED,
        actions=[
            {"type": "log_activity", "config": {"message": "deal arrived"}},
            {"type": "change_stage", "config": {"stage_id": str(uuid.uuid4())}},
            {"type": "create_task", "config": {"title": "Call customer", "due_in_days": 2}},
        ],
    )
    deal = _create_deal(db_session, stages["qualification"], probability=10)

    with caplog.at_level(logging.WARNING, logger="app.automation.actions"):
        engine.on_entity_created(EntityType.DEAL, deal.id)

    activities = db_session.scalars(select(Activity).where(Activity.entity_id == str(deal.id))).all()
    assert sorted(activity.activity_type for activity in activities) == ["log", "task"]
    assert any(record.getMessage() == "automation_action_failed" for record in caplog.records)
    db_session.refresh(rule)
    assert rule.trigger_count == 1


def test_rules_run_in_priority_order(
    engine: AutomationEngine,
    db_session: Session,
    stages: dict[str, PipelineStage],
) -> None:
    _create_rule(
        engine,
        trigger=Trigger.DEAL_CREATED,
        priority=10,
        actions=[{"type": "update_probability", "config": {"probability": 70}}],
    )
    _create_rule(
        engine,
        trigger=Trigger.DEAL_CREATED,
        priority=1,
        actions=[{"type": "update_probability", "config": {"probability": 30}}],
    )
    deal = _create_deal(db_session, stages["qualification"], probability=5)

    engine.on_entity_created(EntityType.DEAL, deal.id)

    db_session.refresh(deal)
    assert deal.probability == 70
    probability_entries = [
        (entry.old_value, entry.new_value)
        for entry in engine.history.entries_for(EntityType.DEAL, str(deal.id))
        if entry.field_name == "probability"
    ]
    assert probability_entries == [("5", "30"), ("30", "70")]


def test_non_matching_and_disabled_rules_do_not_run(
    engine: AutomationEngine,
    db_session: Session,
    stages: dict[str, PipelineStage],
) -> None:
    large_deals = _create_rule(
        engine,
        trigger=Trigger.DEAL_CREATED,
        conditions=[{"field": "amount_greater_than", "operator": "greater_than", "value": 1000}],
        actions=[{"type": "log_activity", "config": {"message": "large deal"}}],
    )
    disabled = _create_rule(
        engine,
        trigger=Trigger.DEAL_CREATED,
        actions=[{"type": "log_activity", "config": {"message": "disabled"}}],
    )
    engine.toggle_rule(disabled.id)
    deal = _create_deal(db_session, stages["qualification"], probability=10)

    engine.on_entity_created(EntityType.DEAL, deal.id)

    assert db_session.scalars(select(Activity)).all() == []
    db_session.refresh(large_deals)
    db_session.refresh(disabled)
    assert large_deals.trigger_count == 0
    assert disabled.trigger_count == 0
    assert disabled.is_active is False


def test_nested_dispatch_stops_at_max_depth(
    engine: AutomationEngine,
    db_session: Session,
    stages: dict[str, PipelineStage],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("AUTOMATION_MAX_DEPTH", "1")
    get_settings.cache_clear()
    _create_rule(
        engine,
        trigger=Trigger.DEAL_CREATED,
        actions=[{"type": "change_stage", "config": {"stage_id": str(stages["negotiation"].id)}}],
    )
    _create_rule(
        engine,
        trigger=Trigger.DEAL_STAGE_CHANGED,
        actions=[{"type": "log_activity", "config": {"message": "stage changed"}}],
    )
    deal = _create_deal(db_session, stages["qualification"], probability=10)

    engine.on_entity_created(EntityType.DEAL, deal.id)

    db_session.refresh(deal)
    assert deal.stage_id == stages["negotiation"].id
    assert db_session.scalars(select(Activity)).all() == []


def test_nested_dispatch_runs_within_depth(
    engine: AutomationEngine,
    db_session: Session,
    stages: dict[str, PipelineStage],
) -> None:
    _create_rule(
        engine,
        trigger=Trigger.DEAL_CREATED,
        actions=[{"type": "change_stage", "config": {"stage_id": str(stages["negotiation"].id)}}],
    )
    _create_rule(
        engine,
        trigger=Trigger.DEAL_STAGE_CHANGED,
        actions=[{"type": "log_activity", "config": {"message": "stage changed"}}],
    )
    deal = _create_deal(db_session, stages["qualification"], probability=10)

    engine.on_entity_created(EntityType.DEAL, deal.id)

    activities = db_session.scalars(select(Activity)).all()
    assert [activity.description for activity in activities] == ["stage changed"]


def test_time_based_tick_runs_entityless_actions_only(
    engine: AutomationEngine,
    db_session: Session,
    stages: dict[str, PipelineStage],
) -> None:
    _create_rule(
        engine,
        trigger=Trigger.TIME_BASED,
        actions=[
            {"type": "send_notification", "config": {"title": "Daily digest", "recipient_user_id": 7}},
            {"type": "log_activity", "config": {"message": "needs an entity"}},
        ],
    )

    assert engine.run_time_based_tick() == 1

    notifications = db_session.scalars(select(NotificationIntent)).all()
    assert [(item.title, item.recipient_user_id, item.entity_id) for item in notifications] == [
        ("Daily digest", 7, None)
    ]
    assert db_session.scalars(select(Activity)).all() == []


def test_lead_score_change_triggers_tagging(
    engine: AutomationEngine,
    db_session: Session,
) -> None:
    _create_rule(
        engine,
        trigger=Trigger.LEAD_SCORE_CHANGED,
        conditions=[{"field": "score_greater_than", "operator": "greater_than", "value": 50}],
        actions=[
            {"type": "add_tags", "config": {"tags": ["hot"]}},
            {"type": "change_stage", "config": {"stage_id": str(uuid.uuid4())}},
        ],
    )
    lead = Lead(name="Jane Prospect", score=80, tags=["inbound"])
    db_session.add(lead)
    db_session.commit()

    engine.on_entity_updated(EntityType.LEAD, lead.id, [FieldChange(field="score", old_value=10, new_value=80)])

    db_session.refresh(lead)
    assert lead.tags == ["inbound", "hot"]
    entries = engine.history.entries_for(EntityType.LEAD, str(lead.id))
    assert [(entry.change_type, entry.field_name) for entry in entries] == [
        ("updated", "score"),
        ("updated", "tags"),
    ]


def test_rule_changes_are_audited(engine: AutomationEngine) -> None:
    rule_id = _create_rule(engine, trigger=Trigger.DEAL_CREATED).id
    engine.toggle_rule(rule_id, Actor(id="1", name="admin"))
    engine.delete_rule(rule_id, Actor(id="1", name="admin"))

    actions = [entry["action"] for entry in audit.entries_for("automation.rule", str(rule_id))]
    assert actions == ["automation.rule.created", "automation.rule.toggled", "automation.rule.deleted"]


def test_database_failure_in_one_action_keeps_the_stage_move_and_other_actions(
    engine: AutomationEngine,
    db_session: Session,
    stages: dict[str, PipelineStage],
    caplog: pytest.LogCaptureFixture,
) -> None:
    rule = _create_rule(
        engine,
        trigger=Trigger.DEAL_STAGE_CHANGED,
        actions=[
            {"type": "update_amount", "config": {"amount": "900.00"}},
            {"type": "create_task", "config": {"title": "Prepare proposal", "due_in_days": 1}},
            {"type": "log_activity", "config": {"message": "entered negotiation"}},
        ],
    )
    _install_failing_trigger(
        db_session,
        "task_service_down",
        "BEFORE INSERT ON crm_activity WHEN NEW.activity_type = 'task'",
        "task service down",
    )
    deal = _create_deal(db_session, stages["qualification"], probability=20)

    with caplog.at_level(logging.WARNING, logger="app.automation.actions"):
        result = engine.move_to_stage(deal.id, stages["negotiation"].id)

    assert result.stage_id == stages["negotiation"].id
    assert result.amount == Decimal("900.00")
    activities = db_session.scalars(select(Activity).where(Activity.entity_id == str(deal.id))).all()
    assert [(item.activity_type, item.description) for item in activities] == [("log", "entered negotiation")]
    assert any(record.getMessage() == "automation_action_failed" for record in caplog.records)
    assert _change_types(engine, deal) == ["stage_moved", "amount_changed"]
    db_session.refresh(rule)
    assert rule.trigger_count == 1


def test_history_write_failure_does_not_undo_the_stage_move(
    engine: AutomationEngine,
    db_session: Session,
    stages: dict[str, PipelineStage],
    caplog: pytest.LogCaptureFixture,
) -> None:
    _create_rule(
        engine,
        trigger=Trigger.DEAL_STAGE_CHANGED,
        actions=[{"type": "log_activity", "config": {"message": "stage changed"}}],
    )
    _install_failing_trigger(
        db_session,
        "history_store_down",
        "BEFORE INSERT ON crm_history_entry WHEN NEW.change_type = 'stage_moved'",
        "history store down",
    )
    deal = _create_deal(db_session, stages["qualification"])

    with caplog.at_level(logging.WARNING, logger="app.automation.history"):
        result = engine.move_to_stage(deal.id, stages["negotiation"].id)

    assert result.stage_id == stages["negotiation"].id
    assert result.probability == 60
    assert _change_types(engine, deal) == ["probability_changed"]
    activities = db_session.scalars(select(Activity).where(Activity.entity_id == str(deal.id))).all()
    assert [item.description for item in activities] == ["stage changed"]
    assert any(record.getMessage() == "history_record_failed" for record in caplog.records)


def test_rule_statistics_write_failure_is_swallowed(
    engine: AutomationEngine,
    db_session: Session,
    stages: dict[str, PipelineStage],
    caplog: pytest.LogCaptureFixture,
) -> None:
    rule = _create_rule(
        engine,
        trigger=Trigger.DEAL_CREATED,
        actions=[{"type": "log_activity", "config": {"message": "deal arrived"}}],
    )
    _install_failing_trigger(
        db_session,
        "rule_store_down",
        "BEFORE UPDATE OF trigger_count ON automation_rule",
        "rule store down",
    )
    deal = _create_deal(db_session, stages["qualification"], probability=20)

    with caplog.at_level(logging.WARNING, logger="app.automation.dispatcher"):
        engine.on_entity_created(EntityType.DEAL, deal.id)

    activities = db_session.scalars(select(Activity).where(Activity.entity_id == str(deal.id))).all()
    assert [item.description for item in activities] == ["deal arrived"]
    assert _change_types(engine, deal) == ["created"]
    assert any(record.getMessage() == "automation_rule_stats_failed" for record in caplog.records)
    db_session.refresh(rule)
    assert rule.trigger_count == 0
    assert rule.last_triggered_at is None


def test_several_stages_of_one_kind_resolve_by_position_then_name(
    engine: AutomationEngine,
    db_session: Session,
    stages: dict[str, PipelineStage],
    caplog: pytest.LogCaptureFixture,
) -> None:
    later = PipelineStage(name="Archived Won", kind=StageKind.WON.value, position=20, default_probability=100)
    tied = PipelineStage(name="Booked Won", kind=StageKind.WON.value, position=10, default_probability=100)
    db_session.add_all([later, tied])
    db_session.commit()
    deal = _create_deal(db_session, stages["negotiation"], probability=60)

    with caplog.at_level(logging.WARNING, logger="app.automation.deals"):
        result = engine.change_status(deal.id, DealStatus.WON)

    assert result.stage_id == tied.id
    assert result.status == DealStatus.WON.value
    ambiguous = [record for record in caplog.records if record.getMessage() == "stage_kind_ambiguous"]
    assert ambiguous
    assert ambiguous[0].kind == "won"


def test_closing_without_terminal_stages_sets_status_directly(
    engine: AutomationEngine,
    db_session: Session,
) -> None:
    discovery = PipelineStage(name="Discovery", kind=StageKind.NORMAL.value, position=0, default_probability=10)
    db_session.add(discovery)
    db_session.commit()
    changed = _create_deal(db_session, discovery, probability=10)
    won = _create_deal(db_session, discovery, probability=10)
    lost = _create_deal(db_session, discovery, probability=10)

    by_status = engine.change_status(changed.id, DealStatus.WON)
    by_win = engine.win(won.id)
    by_loss = engine.lose(lost.id, "budget")

    assert (by_status.status, by_status.stage_id) == (DealStatus.WON.value, discovery.id)
    assert by_status.actual_close_date is not None
    assert (by_win.status, by_win.stage_id) == (DealStatus.WON.value, discovery.id)
    assert (by_loss.status, by_loss.stage_id) == (DealStatus.LOST.value, discovery.id)
    assert _change_types(engine, changed) == ["won", "date_changed"]
    assert _change_types(engine, won) == ["won", "date_changed"]
    assert _change_types(engine, lost) == ["note_added", "lost", "date_changed"]


def test_rule_update_rejects_non_deal_status_for_stored_deal_trigger(engine: AutomationEngine) -> None:
    rule = _create_rule(engine, trigger=Trigger.DEAL_CREATED)

    with pytest.raises(InvalidRuleError):
        engine.update_rule(
            rule.id,
            AutomationRuleUpdate(actions=[{"type": "change_status", "config": {"status": "qualified"}}]),
        )

    assert engine.get_rule(rule.id).actions == []
