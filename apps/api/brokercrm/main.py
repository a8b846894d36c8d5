from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from brokercrm.api.routes import router as api_router
from brokercrm.core.config import get_settings
from brokercrm.core.context import RequestContextMiddleware
from brokercrm.core.events import InternalEvent, event_bus
from brokercrm.errors import register_exception_handlers
from brokercrm.logging import configure_logging
from brokercrm.middleware.correlation_id import CorrelationIdMiddleware
from brokercrm.middleware.rate_limit import MutationRateLimitMiddleware
from brokercrm.middleware.request_logging import RequestLoggingMiddleware
from brokercrm.otel import get_fastapi_server_request_hook, setup_otel
from brokercrm.records.service import build_services
from brokercrm.records.storage import build_store


configure_logging()
logger = logging.getLogger("brokercrm.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"backend": event.payload.get("storage")})


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        _subscriptions_registered = True

    # tests may install their own store before startup
    store = getattr(app.state, "store", None)
    if store is None:
        store = build_store(get_settings())
        app.state.store = store
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(store)
    await store.connect()
    event_bus.publish("system.started", {"service": "api", "storage": store.name})
    try:
        yield
    finally:
        await store.close()


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(MutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
register_exception_handlers(app)
app.include_router(api_router)

setup_otel(settings)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
