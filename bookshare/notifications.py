import logging
import os
from dataclasses import dataclass
from typing import List, Optional

from dotenv import load_dotenv
from sqlalchemy.orm import Session

from bookshare import models
from bookshare.models import NotificationType

load_dotenv()
logger = logging.getLogger(__name__)

NOTIFICATION_TEMPLATES = {
    NotificationType.BOOK_REQUEST: (
        '{actor} requested to borrow your book "{title}"',
        "/my-books/requests",
    ),
    NotificationType.REQUEST_APPROVED: (
        '{actor} approved your request to borrow "{title}"',
        "/my-requests",
    ),
    NotificationType.REQUEST_REJECTED: (
        '{actor} declined your request to borrow "{title}"',
        "/my-requests",
    ),
    NotificationType.REQUEST_CANCELED: (
        '{actor} canceled their request to borrow "{title}"',
        "/my-books/requests",
    ),
    NotificationType.BOOK_RETURNED: (
        '{actor} returned your book "{title}"',
        "/my-books",
    ),
}


def sms_enabled() -> bool:
    return os.getenv("SMS_NOTIFICATIONS_ENABLED", "false").lower() in ("1", "true")


@dataclass
class SmsMessage:
    to: str
    body: str


class Notifier:
    """Builds notification rows inside the caller's unit of work.

    Rows are only added to the session; they are committed together with the
    lending transition that produced them. SMS jobs collect on ``outbox`` and
    are relayed once the transition has committed.
    """

    def __init__(self, db: Session, send_sms: Optional[bool] = None):
        self.db = db
        self.send_sms = sms_enabled() if send_sms is None else send_sms
        self.outbox: List[SmsMessage] = []

    def notify(
        self,
        notification_type: NotificationType,
        recipient: models.User,
        actor: models.User,
        book: models.Book,
        book_request: Optional[models.BookRequest] = None,
    ) -> models.Notification:
        template, link = NOTIFICATION_TEMPLATES[notification_type]
        message = template.format(actor=actor.full_name, title=book.title)
        notification = models.Notification(
            user_id=recipient.id,
            type=notification_type,
            message=message,
            related_book_id=book.id,
            related_request_id=book_request.id if book_request is not None else None,
            link=link,
        )
        self.db.add(notification)
        if self.send_sms and recipient.phone_number:
            self.outbox.append(SmsMessage(to=recipient.phone_number, body=message))
        logger.info(f"Queued {notification_type.value} notification for user {recipient.id}")
        return notification
