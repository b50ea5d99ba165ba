import os
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.engine import Engine

from notifyhub import config
from notifyhub.errors import install_error_handlers
from notifyhub.notifications.bootstrap import ensure_schema
from notifyhub.notifications.broker import BrokerClient
from notifyhub.notifications.database import create_db_engine, create_session_factory
from notifyhub.notifications.recipients import RecipientValidator
from notifyhub.notifications.routers import health, notifications
from notifyhub.observability import init_logging, CorrelationIdMiddleware, RequestLoggingMiddleware

logger = init_logging(config.NOTIFICATION_SERVICE_NAME, config.LOG_LEVEL)


def create_app(
    engine: Optional[Engine] = None,
    broker: Optional[BrokerClient] = None,
    http: Optional[httpx.Client] = None,
    bootstrap_attempts: Optional[int] = None,
) -> FastAPI:
    """Build the service; resources not passed in are created in the lifespan and owned by it."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned_engine = engine is None
        owned_broker = broker is None
        owned_http = http is None
        db_engine = engine or create_db_engine()
        # refuse traffic until the schema is in place; raises after the last attempt
        await run_in_threadpool(ensure_schema, db_engine, bootstrap_attempts)

        app.state.engine = db_engine
        app.state.session_factory = create_session_factory(db_engine)
        app.state.broker = broker or BrokerClient()
        app.state.http = http or httpx.Client()
        app.state.recipient_validator = RecipientValidator(app.state.http)
        logger.info("notification-service ready", extra={"extra": {"event": "service_ready"}})
        try:
            yield
        finally:
            logger.info("notification-service shutting down", extra={"extra": {"event": "service_shutdown"}})
            if owned_http:
                app.state.http.close()
            if owned_broker:
                app.state.broker.close()
            if owned_engine:
                db_engine.dispose()

    app = FastAPI(title=config.NOTIFICATION_SERVICE_NAME, version="1.0.0", lifespan=lifespan)
    # last added runs first: correlation id is bound before the request is logged
    app.add_middleware(RequestLoggingMiddleware, logger=logger)
    app.add_middleware(CorrelationIdMiddleware)
    install_error_handlers(app)
    app.include_router(health.router)
    app.include_router(notifications.router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "notifyhub.notifications.main:app",
        host=os.getenv("SERVICE_HOST", "0.0.0.0"),
        port=int(os.getenv("SERVICE_PORT", "3000")),
        log_level=config.LOG_LEVEL.lower(),
    )
