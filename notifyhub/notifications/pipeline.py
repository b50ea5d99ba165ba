"""
Notification dispatch: validate the recipient, persist, then announce.

The insert is the durability boundary. Once it has committed the
notification exists, whatever happens to the ``notifications.created``
event afterwards; publishing is best-effort and its outcome is returned
alongside the row instead of being raised.
"""
import logging
from dataclasses import dataclass
from typing import Collection, List, Optional

from pydantic import ValidationError

from notifyhub import config
from notifyhub.errors import (
    BrokerUnavailable, NotFound, RecipientNotFound, UpstreamUnavailable, ValidationFailed,
)
from notifyhub.notifications.broker import BrokerClient
from notifyhub.notifications.models import (
    NotificationCreate, NotificationCreatedEvent, NotificationOut, NotificationUpdate,
)
from notifyhub.notifications.recipients import RecipientStatus, RecipientValidator
from notifyhub.notifications.store import NotificationStore
from notifyhub.observability import new_correlation_id
from notifyhub.resilience import BestEffort, record_publish_failure, record_publish_success

logger = logging.getLogger(__name__)


def is_trusted_origin(origin: Optional[str], trusted: Collection[str] = config.TRUSTED_ORIGINS) -> bool:
    return bool(origin) and origin.strip().lower() in trusted


@dataclass(frozen=True)
class CreateNotification:
    subject: str
    message: str
    recipient_id: Optional[int] = None
    # set for requests issued by the registry itself: calling back into it could deadlock
    skip_recipient_validation: bool = False
    correlation_id: Optional[str] = None

    @classmethod
    def from_payload(
        cls, payload: NotificationCreate, origin: Optional[str] = None, correlation_id: Optional[str] = None,
    ) -> "CreateNotification":
        return cls(
            subject=payload.subject,
            message=payload.message,
            recipient_id=payload.recipient_id,
            skip_recipient_validation=is_trusted_origin(origin),
            correlation_id=correlation_id,
        )


@dataclass(frozen=True)
class Dispatched:
    notification: NotificationOut
    event: BestEffort


def _field_errors(exc: ValidationError) -> List[dict]:
    return [
        {"field": ".".join(str(p) for p in err["loc"]) or "body", "message": err["msg"]}
        for err in exc.errors()
    ]


class DispatchPipeline:
    def __init__(
        self,
        store: NotificationStore,
        broker: BrokerClient,
        validator: RecipientValidator,
        routing_key: str = config.ROUTING_KEY_CREATED,
    ):
        self.store = store
        self.broker = broker
        self.validator = validator
        self.routing_key = routing_key

    def create(self, req: CreateNotification) -> Dispatched:
        cid = req.correlation_id or new_correlation_id()
        try:
            payload = NotificationCreate(subject=req.subject, message=req.message, recipientId=req.recipient_id)
        except ValidationError as e:
            raise ValidationFailed(details=_field_errors(e)) from e

        if payload.recipient_id is not None and not req.skip_recipient_validation:
            self._check_recipient(payload.recipient_id, cid)

        row = NotificationOut.model_validate(
            self.store.insert(payload.subject, payload.message, payload.recipient_id)
        )
        logger.info("notification_created", extra={"extra": {
            "event": "notification_created", "notification_id": row.id,
            "recipient_id": row.recipient_id, "recipient_validated": not req.skip_recipient_validation,
        }})
        return Dispatched(notification=row, event=self._announce(row, cid))

    def update(self, notification_id: int, subject: Optional[str] = None, message: Optional[str] = None) -> NotificationOut:
        if subject is None and message is None:
            raise ValidationFailed("Nothing to update")
        try:
            changes = NotificationUpdate(subject=subject, message=message)
        except ValidationError as e:
            raise ValidationFailed(details=_field_errors(e)) from e
        row = self.store.update(notification_id, changes.subject, changes.message)
        if row is None:
            raise NotFound()
        return NotificationOut.model_validate(row)

    def delete(self, notification_id: int) -> None:
        if not self.store.delete(notification_id):
            raise NotFound()
        logger.info("notification_deleted", extra={"extra": {
            "event": "notification_deleted", "notification_id": notification_id,
        }})

    def get(self, notification_id: int) -> NotificationOut:
        row = self.store.get(notification_id)
        if row is None:
            raise NotFound()
        return NotificationOut.model_validate(row)

    def list(self, recipient_id: Optional[int] = None, skip: int = 0, limit: int = 100) -> List[NotificationOut]:
        return [NotificationOut.model_validate(r) for r in self.store.list(recipient_id, skip, limit)]

    def _check_recipient(self, recipient_id: int, cid: str):
        status = self.validator.validate(recipient_id, cid)
        if status is RecipientStatus.NOT_FOUND:
            raise RecipientNotFound(recipient_id)
        if status is RecipientStatus.UNAVAILABLE:
            raise UpstreamUnavailable("user-service unavailable")

    def _announce(self, row: NotificationOut, cid: str) -> BestEffort:
        event = NotificationCreatedEvent.from_row(row, cid)
        try:
            msg_id = self.broker.publish(self.routing_key, event.to_message())
        except BrokerUnavailable as e:
            logger.warning(f"event publish failed (non-fatal): {e}", extra={"extra": {
                "event": "publish_notification_failed", "notification_id": row.id,
                "routing_key": self.routing_key,
            }})
            record_publish_failure(e, cid)
            return BestEffort.failed(e)
        record_publish_success(cid)
        return BestEffort.ok(msg_id)
