from datetime import datetime, timezone
from typing import Optional, Any, Dict, Annotated

from pydantic import BaseModel, ConfigDict, Field, StrictInt, AliasChoices, field_validator
from sqlalchemy import Integer, String, Text, DateTime, Index, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

TABLE_NAME = "notifications"
RECIPIENT_INDEX = "idx_notifications_recipientId"


class Base(DeclarativeBase):
    pass


# SQLAlchemy model
class Notification(Base):
    __tablename__ = TABLE_NAME
    __table_args__ = (Index(RECIPIENT_INDEX, "recipientId"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    recipient_id: Mapped[Optional[int]] = mapped_column("recipientId", Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=lambda: datetime.now(timezone.utc).replace(tzinfo=None),
        server_default=func.current_timestamp(),
    )


def _non_blank(value: Optional[str], field: str) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if not value:
        raise ValueError(f"{field} must be non-empty")
    return value


# Pydantic models
class NotificationCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subject: str
    message: str
    recipient_id: Optional[Annotated[StrictInt, Field(gt=0)]] = Field(default=None, alias="recipientId")

    @field_validator("subject", "message")
    @classmethod
    def _required(cls, v: str, info) -> str:
        return _non_blank(v, info.field_name)


class NotificationUpdate(BaseModel):
    subject: Optional[str] = None
    message: Optional[str] = None

    @field_validator("subject", "message")
    @classmethod
    def _optional(cls, v: Optional[str], info) -> Optional[str]:
        return _non_blank(v, info.field_name)


class NotificationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    subject: str
    message: str
    recipient_id: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("recipientId", "recipient_id"),
        serialization_alias="recipientId",
    )
    created_at: datetime


class NotificationCreatedEvent(NotificationOut):
    """Payload of ``notifications.created``: the committed row plus the correlation id."""

    correlation_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("correlationId", "correlation_id"),
        serialization_alias="correlationId",
    )

    @classmethod
    def from_row(cls, row: NotificationOut, correlation_id: Optional[str]) -> "NotificationCreatedEvent":
        return cls(**row.model_dump(), correlation_id=correlation_id)

    def to_message(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
