from contextlib import asynccontextmanager, contextmanager
import logging
from typing import Any
import uuid

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.automation.engine import AutomationEngine
from app.automation.enums import EntityType
from app.automation.scheduler import PeriodicScheduler
from app.automation.schemas import Actor, FieldChange
from app.context import get_automation_depth, reset_automation_depth, set_automation_depth
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.core.events import InternalEvent, event_bus
from app.core.database import SessionLocal, get_db
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False

# event name -> (entity type, is creation)
_automation_event_types: dict[str, tuple[EntityType, bool]] = {
    "crm.deal.created": (EntityType.DEAL, True),
    "crm.deal.updated": (EntityType.DEAL, False),
    "crm.lead.created": (EntityType.LEAD, True),
    "crm.lead.updated": (EntityType.LEAD, False),
}


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name, "service": event.payload.get("service")})


@contextmanager
def _automation_session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


def _parse_changes(raw: Any) -> list[FieldChange]:
    if not isinstance(raw, list):
        return []
    return [FieldChange.model_validate(item) for item in raw if isinstance(item, dict)]


def _on_crm_domain_event(event: InternalEvent) -> None:
    route = _automation_event_types.get(event.name)
    if route is None or not isinstance(event.payload, dict):
        return
    entity_type, is_creation = route
    envelope: dict[str, Any] = event.payload

    try:
        entity_id = uuid.UUID(str(envelope.get("entity_id")))
    except ValueError:
        logger.warning("automation_event_ignored", extra={"event_name": event.name, "reason": "invalid_entity_id"})
        return

    actor_id = envelope.get("actor_id")
    actor = Actor(
        id=str(actor_id) if actor_id is not None else None,
        name=envelope.get("actor_name") if isinstance(envelope.get("actor_name"), str) else None,
    )
    meta = envelope.get("meta") if isinstance(envelope.get("meta"), dict) else {}
    inherited_depth = meta.get("automation_depth")
    token = None
    if isinstance(inherited_depth, int) and inherited_depth > get_automation_depth():
        token = set_automation_depth(inherited_depth)

    try:
        with _automation_session_scope() as session:
            engine = AutomationEngine(session)
            if is_creation:
                engine.on_entity_created(entity_type, entity_id, actor)
            else:
                engine.on_entity_updated(entity_type, entity_id, _parse_changes(envelope.get("changes")), actor)
    except Exception as exc:
        logger.exception(
            "automation_event_failed",
            extra={"event_name": event.name, "entity_id": str(entity_id), "error": str(exc)[:500]},
        )
    finally:
        if token is not None:
            reset_automation_depth(token)


def _run_scheduled_tick() -> int:
    with _automation_session_scope() as session:
        return AutomationEngine(session).run_time_based_tick()


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _automation_event_types:
            event_bus.subscribe(event_name, _on_crm_domain_event)
        _subscriptions_registered = True

    settings = get_settings()
    scheduler: PeriodicScheduler | None = None
    if settings.automation_scheduler_enabled:
        scheduler = PeriodicScheduler(_run_scheduled_tick, settings.automation_scheduler_interval_seconds)
        scheduler.start()
    app.state.automation_scheduler = scheduler

    event_bus.publish("system.started", {"service": "api"})
    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.stop()


app = FastAPI(title="CRM Automation API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()

if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
