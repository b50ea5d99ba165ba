from typing import List, Optional

from sqlalchemy import select, update, delete, desc, func, literal, String, Text
from sqlalchemy.orm import Session

from notifyhub.notifications.models import Notification


class NotificationStore:
    def __init__(self, db: Session):
        self.db = db

    def insert(self, subject: str, message: str, recipient_id: Optional[int]) -> Notification:
        row = Notification(subject=subject, message=message, recipient_id=recipient_id)
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        return row

    def get(self, notification_id: int) -> Optional[Notification]:
        return self.db.get(Notification, notification_id)

    def list(self, recipient_id: Optional[int] = None, skip: int = 0, limit: int = 100) -> List[Notification]:
        stmt = select(Notification)
        if recipient_id is not None:
            stmt = stmt.where(Notification.recipient_id == recipient_id)
        stmt = stmt.order_by(desc(Notification.id)).offset(skip).limit(limit)
        return list(self.db.scalars(stmt))

    def update(self, notification_id: int, subject: Optional[str], message: Optional[str]) -> Optional[Notification]:
        # absent fields keep their stored value
        stmt = (
            update(Notification)
            .where(Notification.id == notification_id)
            .values(
                subject=func.coalesce(literal(subject, String(255)), Notification.subject),
                message=func.coalesce(literal(message, Text()), Notification.message),
            )
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        self.db.commit()
        if result.rowcount == 0:
            return None
        row = self.get(notification_id)
        if row is not None:
            self.db.refresh(row)
        return row

    def delete(self, notification_id: int) -> bool:
        result = self.db.execute(delete(Notification).where(Notification.id == notification_id))
        self.db.commit()
        return result.rowcount > 0
