import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from iris_crm.api.routes import router as api_router
from iris_crm.core.config import get_settings
from iris_crm.core.context import RequestContextMiddleware
from iris_crm.core.events import InternalEvent, event_bus
from iris_crm.logging import configure_logging
from iris_crm.middleware.correlation_id import CorrelationIdMiddleware
from iris_crm.middleware.request_logging import RequestLoggingMiddleware
from iris_crm.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("iris.lifecycle")

_domain_event_types = [
    "crm.lead.created",
    "crm.lead.updated",
    "crm.lead.deleted",
    "crm.lead.status_changed",
    "crm.lead.converted",
    "crm.lead.assigned",
    "crm.account.created",
    "crm.account.updated",
    "crm.account.deleted",
    "crm.account.reverted_to_lead",
    "crm.opportunity.created",
    "crm.opportunity.status_changed",
    "crm.update.created",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system.started", extra={"event_name": event.name})


def _on_crm_domain_event(event: InternalEvent) -> None:
    logger.debug("crm.domain_event", extra={"event_name": event.name})


@asynccontextmanager
async def lifespan(app: FastAPI):
    event_bus.subscribe("system.started", _on_system_started)
    for event_name in _domain_event_types:
        event_bus.subscribe(event_name, _on_crm_domain_event)
    event_bus.publish("system.started", {"service": "iris-api"})
    yield
    for event_name in _domain_event_types:
        event_bus.unsubscribe(event_name, _on_crm_domain_event)
    event_bus.unsubscribe("system.started", _on_system_started)


settings = get_settings()
app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("iris-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
