import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response
from sqlalchemy.orm import Session

from notifyhub.notifications.database import get_db
from notifyhub.notifications.models import NotificationCreate, NotificationOut, NotificationUpdate
from notifyhub.notifications.pipeline import CreateNotification, DispatchPipeline
from notifyhub.notifications.store import NotificationStore

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/notifications", tags=["Notifications"])

NotificationId = Path(..., gt=0, description="Notification id")


def get_pipeline(request: Request, db: Session = Depends(get_db)) -> DispatchPipeline:
    state = request.app.state
    return DispatchPipeline(NotificationStore(db), state.broker, state.recipient_validator)


@router.get("", response_model=List[NotificationOut])
def list_notifications(
    recipient_id: Optional[int] = Query(None, alias="recipientId", gt=0),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    pipeline: DispatchPipeline = Depends(get_pipeline),
):
    return pipeline.list(recipient_id=recipient_id, skip=skip, limit=limit)


@router.get("/{notification_id}", response_model=NotificationOut)
def get_notification(notification_id: int = NotificationId, pipeline: DispatchPipeline = Depends(get_pipeline)):
    return pipeline.get(notification_id)


@router.post("", response_model=NotificationOut, status_code=201)
def create_notification(
    body: NotificationCreate,
    request: Request,
    x_origin: Optional[str] = Header(None),
    pipeline: DispatchPipeline = Depends(get_pipeline),
):
    req = CreateNotification.from_payload(
        body, origin=x_origin, correlation_id=request.state.correlation_id,
    )
    result = pipeline.create(req)
    return result.notification


@router.put("/{notification_id}", response_model=NotificationOut)
def update_notification(
    body: NotificationUpdate,
    notification_id: int = NotificationId,
    pipeline: DispatchPipeline = Depends(get_pipeline),
):
    return pipeline.update(notification_id, subject=body.subject, message=body.message)


@router.delete("/{notification_id}", status_code=204)
def delete_notification(notification_id: int = NotificationId, pipeline: DispatchPipeline = Depends(get_pipeline)):
    pipeline.delete(notification_id)
    return Response(status_code=204)
