import os
from contextlib import asynccontextmanager
from typing import List, Optional

import httpx
from fastapi import BackgroundTasks, Depends, FastAPI, Path, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, EmailStr, field_validator
from sqlalchemy import desc, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from notifyhub import config
from notifyhub.errors import Conflict, NotFound, ValidationFailed, install_error_handlers
from notifyhub.observability import init_logging, CorrelationIdMiddleware, RequestLoggingMiddleware
from notifyhub.users.database import User, create_db_engine, create_session_factory, get_db, init_db
from notifyhub.users.notifier import NotificationServiceClient

logger = init_logging(config.USER_SERVICE_NAME, config.LOG_LEVEL)


# --- Schemas ---
def _required_name(v: str) -> str:
    v = v.strip()
    if not v:
        raise ValueError("name is required")
    return v


class UserCreate(BaseModel):
    name: str
    email: EmailStr

    @field_validator("name")
    @classmethod
    def _name(cls, v: str) -> str:
        return _required_name(v)


class UserUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None

    @field_validator("name")
    @classmethod
    def _name(cls, v: Optional[str]) -> Optional[str]:
        return None if v is None else _required_name(v)


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str


class NotifyReq(BaseModel):
    subject: Optional[str] = None
    message: Optional[str] = None


UserId = Path(..., gt=0)


def _get_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFound()
    return user


def _email_taken(db: Session, email: str, exclude_id: Optional[int] = None) -> bool:
    stmt = select(User.id).where(User.email == email)
    if exclude_id is not None:
        stmt = stmt.where(User.id != exclude_id)
    return db.scalar(stmt) is not None


def create_app(engine: Optional[Engine] = None, http: Optional[httpx.Client] = None) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db_engine = engine or create_db_engine()
        await run_in_threadpool(init_db, db_engine)
        app.state.engine = db_engine
        app.state.session_factory = create_session_factory(db_engine)
        app.state.http = http or httpx.Client()
        app.state.notifier = NotificationServiceClient(app.state.http)
        try:
            yield
        finally:
            if http is None:
                app.state.http.close()
            if engine is None:
                db_engine.dispose()

    app = FastAPI(title="User Service", version="1.0.0", lifespan=lifespan)
    app.add_middleware(RequestLoggingMiddleware, logger=logger)
    app.add_middleware(CorrelationIdMiddleware)
    install_error_handlers(app)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/users", response_model=List[UserOut])
    def list_users(db: Session = Depends(get_db)):
        return list(db.scalars(select(User).order_by(desc(User.id))))

    @app.get("/users/{user_id}", response_model=UserOut)
    def get_user(user_id: int = UserId, db: Session = Depends(get_db)):
        return _get_user(db, user_id)

    @app.post("/users", response_model=UserOut, status_code=201)
    def create_user(req: UserCreate, request: Request, background: BackgroundTasks, db: Session = Depends(get_db)):
        if _email_taken(db, req.email):
            raise Conflict("email already exists")
        user = User(name=req.name, email=req.email)
        db.add(user)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            raise Conflict("email already exists")
        db.refresh(user)
        logger.info("user_registered", extra={"extra": {"event": "UserRegistered", "target_user_id": user.id}})
        # runs after the response is sent; its failure never reaches the client
        background.add_task(
            request.app.state.notifier.send_welcome, user.id, user.name, request.state.correlation_id,
        )
        return user

    @app.put("/users/{user_id}", response_model=UserOut)
    def update_user(req: UserUpdate, user_id: int = UserId, db: Session = Depends(get_db)):
        user = _get_user(db, user_id)
        if req.email is not None and _email_taken(db, req.email, exclude_id=user_id):
            raise Conflict("email already exists")
        if req.name is not None:
            user.name = req.name
        if req.email is not None:
            user.email = req.email
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            raise Conflict("email already exists")
        db.refresh(user)
        return user

    @app.delete("/users/{user_id}", status_code=204)
    def delete_user(user_id: int = UserId, db: Session = Depends(get_db)):
        user = _get_user(db, user_id)
        db.delete(user)
        db.commit()
        return Response(status_code=204)

    @app.post("/users/{user_id}/notify")
    def notify_user(req: NotifyReq, request: Request, user_id: int = UserId, db: Session = Depends(get_db)):
        _get_user(db, user_id)
        if not (req.subject and req.subject.strip()) or not (req.message and req.message.strip()):
            raise ValidationFailed("subject and message are required")
        status, body = request.app.state.notifier.notify(
            user_id, req.subject, req.message, request.state.correlation_id,
        )
        logger.info("notify_forwarded", extra={"extra": {
            "event": "notify_forwarded", "target_user_id": user_id, "http.status_code": status,
        }})
        return JSONResponse(status_code=status, content=body)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "notifyhub.users.main:app",
        host=os.getenv("SERVICE_HOST", "0.0.0.0"),
        port=int(os.getenv("SERVICE_PORT", "8000")),
        log_level=config.LOG_LEVEL.lower(),
    )
