from typing import Any, Dict, Optional

import structlog
from sqlalchemy.orm import Session

from servio.models import Notification

logger = structlog.get_logger(__name__)


class NotificationDispatcher:
    """Writes in-app notification rows.

    Delivery is best effort: a failure is logged and never propagates into the
    booking or payment operation that triggered it.
    """

    def __init__(self, db: Session):
        self.db = db

    async def notify(
        self,
        recipient_id: Optional[int],
        title: str,
        message: str,
        notification_type: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Optional[Notification]:
        if not recipient_id:
            return None
        try:
            notification = Notification(
                recipient_id=recipient_id,
                title=title,
                message=message,
                type=notification_type,
                data=data or {},
            )
            self.db.add(notification)
            self.db.commit()
            logger.info("notification_sent", recipient_id=recipient_id, type=notification_type)
            return notification
        except Exception as e:
            self.db.rollback()
            logger.error("notification_failed", recipient_id=recipient_id, type=notification_type, error=str(e))
            return None
