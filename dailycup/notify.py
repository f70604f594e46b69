"""
Outbound notifications: in-app rows for customers and admins, plus email.

Every method here is fire-and-forget. Failures are logged and swallowed so
they never roll back or block the write that triggered them.
"""
import logging
from typing import Any, Optional, Protocol

from .db import SessionLocal
from .errors import best_effort
from .models import AdminNotification, Notification
from .utils import dumps

logger = logging.getLogger(__name__)


class Mailer(Protocol):
    def send(self, to: str, subject: str, body: str) -> None:
        ...


class LoggingMailer:
    """Hands mail to the log; a real relay is configured outside this service."""

    def send(self, to: str, subject: str, body: str) -> None:
        logger.info("Email to=%s subject=%s", to, subject)


class Notifier:
    def __init__(self, session_factory=SessionLocal, mailer: Optional[Mailer] = None):
        self.session_factory = session_factory
        self.mailer = mailer or LoggingMailer()

    def _customer(self, user_id: int, kind: str, title: str, message: str, data: Optional[dict[str, Any]]) -> None:
        with self.session_factory.begin() as db:
            db.add(Notification(user_id=user_id, kind=kind, title=title, message=message,
                                data=dumps(data) if data else None))

    def _admins(self, kind: str, title: str, message: str, order_id: Optional[int]) -> None:
        with self.session_factory.begin() as db:
            db.add(AdminNotification(order_id=order_id, kind=kind, title=title, message=message))

    def customer(self, user_id: Optional[int], kind: str, title: str, message: str,
                 data: Optional[dict[str, Any]] = None) -> None:
        if not user_id:
            return
        best_effort(f"notify:{kind}", self._customer, user_id, kind, title, message, data)

    def admins(self, kind: str, title: str, message: str, order_id: Optional[int] = None) -> None:
        best_effort(f"admin-notify:{kind}", self._admins, kind, title, message, order_id)

    def email(self, to: Optional[str], subject: str, body: str) -> None:
        if not to:
            return
        best_effort("email", self.mailer.send, to, subject, body)


notifier = Notifier()
