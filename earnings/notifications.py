from uuid import UUID, uuid4

from .errors import NotificationNotFound
from .models import Notification, NotificationType
from .storage import LedgerStore, UnitOfWork, utcnow


def notify(
    uow: UnitOfWork,
    user_id: UUID,
    title: str,
    message: str,
    type: NotificationType = NotificationType.INFO,
) -> Notification:
    """Queue a notification as part of the caller's unit of work."""
    return uow.add_notification(Notification(
        id=uuid4(),
        user_id=user_id,
        title=title,
        message=message,
        type=type,
        created_at=utcnow(),
    ))


def format_amount(amount: int) -> str:
    return f"{amount:,}"


class NotificationService:
    def __init__(self, store: LedgerStore):
        self.store = store

    def list_notifications(
        self, user_id: UUID, unread_only: bool = False, limit: int = 20, offset: int = 0
    ) -> list[Notification]:
        with self.store.unit_of_work() as uow:
            return uow.list_notifications(user_id, unread_only=unread_only, limit=limit, offset=offset)

    def mark_read(self, user_id: UUID, notification_id: UUID) -> Notification:
        with self.store.unit_of_work() as uow:
            notification = uow.mark_notification_read(user_id, notification_id)
        if notification is None:
            raise NotificationNotFound(f"Notification {notification_id} not found")
        return notification

    def mark_all_read(self, user_id: UUID) -> int:
        with self.store.unit_of_work() as uow:
            return uow.mark_all_notifications_read(user_id)

    def unread_count(self, user_id: UUID) -> int:
        with self.store.unit_of_work() as uow:
            return uow.count_unread(user_id)
