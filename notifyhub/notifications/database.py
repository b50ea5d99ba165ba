import logging
from typing import Optional

from fastapi import Request
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from notifyhub import config

logger = logging.getLogger(__name__)


def create_db_engine(url: Optional[str] = None) -> Engine:
    """Engine with a bounded pool; checkouts wait instead of failing fast."""
    url = url or config.NOTIFICATIONS_DATABASE_URL
    kwargs = {"pool_pre_ping": True}
    if url.startswith(("postgresql", "mysql")):
        kwargs.update(
            pool_size=config.DB_POOL_SIZE,
            max_overflow=0,
            pool_timeout=config.DB_POOL_TIMEOUT,
            connect_args={"connect_timeout": config.DB_CONNECT_TIMEOUT},
        )
    engine = create_engine(url, **kwargs)

    if engine.dialect.name == "postgresql":
        @event.listens_for(engine, "connect")
        def set_psql_timeouts(dbapi_conn, connection_record):
            try:
                with dbapi_conn.cursor() as cur:
                    cur.execute(f"SET SESSION statement_timeout = {config.DB_STATEMENT_TIMEOUT_MS}")
            except Exception as e:
                logger.warning(f"statement_timeout not applied: {e}")

    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()
