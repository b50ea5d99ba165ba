from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from notifyhub import config
from notifyhub.resilience import get_snapshot

router = APIRouter(tags=["Health"])


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/ready")
def ready(request: Request):
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        return JSONResponse(status_code=503, content={"status": "not_ready", "error": str(e)})
    return {"status": "ready"}


@router.get("/resilience")
def resilience(request: Request):
    broker = request.app.state.broker
    return {
        "service": config.NOTIFICATION_SERVICE_NAME,
        "exchange": broker.exchange,
        "broker_connected": broker.connected,
        "snapshot": get_snapshot(),
    }
