from typing import Optional

from fastapi import Request
from sqlalchemy import Integer, String, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from notifyhub import config


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)


def create_db_engine(url: Optional[str] = None) -> Engine:
    url = url or config.USERS_DATABASE_URL
    kwargs = {"pool_pre_ping": True}
    if url.startswith(("postgresql", "mysql")):
        kwargs.update(pool_size=config.DB_POOL_SIZE, pool_timeout=config.DB_POOL_TIMEOUT,
                      connect_args={"connect_timeout": config.DB_CONNECT_TIMEOUT})
    return create_engine(url, **kwargs)


def init_db(engine: Engine):
    Base.metadata.create_all(bind=engine)


def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
