from contextlib import asynccontextmanager
import logging

from fastapi import Depends, FastAPI
from fastapi.responses import Response
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from sqlalchemy.orm import Session, sessionmaker

from estatecrm.api.errors import register_exception_handlers
from estatecrm.core.auth import get_current_principal
from estatecrm.core.config import get_settings
from estatecrm.core.database import get_session_factory
from estatecrm.core.events import event_bus
from estatecrm.crm.handlers import register_handlers
from estatecrm.logging import configure_logging
from estatecrm.metrics import generate_metrics_payload, metrics_content_type
from estatecrm.middleware.request_context import RequestContextMiddleware
from estatecrm.otel import get_fastapi_server_request_hook, setup_otel
from estatecrm.platform.security.context import Principal


configure_logging()
logger = logging.getLogger("estatecrm.lifecycle")


def create_app(session_factory: sessionmaker[Session] | None = None) -> FastAPI:
    """Assemble the service shell: error mapping, request context, health and metrics."""

    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        handlers = register_handlers(event_bus, session_factory or get_session_factory())
        logger.info("startup", extra={"event_name": "system.started"})
        try:
            yield
        finally:
            for event_name, handler in handlers.items():
                event_bus.unsubscribe(event_name, handler)
            logger.info("shutdown", extra={"event_name": "system.stopped"})

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.add_middleware(RequestContextMiddleware)
    register_exception_handlers(app)

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/me")
    def me(principal: Principal = Depends(get_current_principal)) -> dict[str, str]:
        return {"id": str(principal.id), "tenant_id": principal.tenant_id, "role": principal.role}

    if settings.metrics_enabled:

        @app.get("/metrics")
        def metrics() -> Response:
            return Response(content=generate_metrics_payload(), media_type=metrics_content_type())

    if settings.otel_enabled:
        setup_otel(settings.app_name, True)
        if not getattr(app, "_is_instrumented_by_opentelemetry", False):
            FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())

    return app


app = create_app()
