"""
Outbox Collaborators

Notification sender and command channel that write PENDING rows for an
external delivery worker. Delivery retries belong to that worker.
"""

from sqlalchemy.exc import SQLAlchemyError

from ..billing.base import BoundaryDeliveryError, DeviceCommand, NotificationRequest
from ..billing.boundary import (
    DEVICE_COMMANDS_TOPIC,
    NOTIFICATIONS_TOPIC,
    CommandChannel,
    NotificationSender,
)
from .base import DatabaseManager
from .models import DeviceCommandOutbox, NotificationOutbox


class OutboxNotificationSender(NotificationSender):
    """Queues notifications in the `notifications` table."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def send(self, request: NotificationRequest) -> None:
        try:
            async with self.db.session() as session:
                session.add(NotificationOutbox(
                    client_id=request.client_id,
                    account_id=request.account_id,
                    type=request.type.value,
                    message=request.message,
                    created_at=request.created_at,
                ))
        except SQLAlchemyError as e:
            raise BoundaryDeliveryError(f"Failed to queue notification: {e}", NOTIFICATIONS_TOPIC)


class OutboxCommandChannel(CommandChannel):
    """Queues device commands in the `device_commands` table."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def send(self, command: DeviceCommand) -> None:
        try:
            async with self.db.session() as session:
                session.add(DeviceCommandOutbox(
                    account_id=command.account_id,
                    device_id=command.device_id,
                    type=command.desired_state.command_type,
                    payload=command.to_dict(),
                    created_at=command.issued_at,
                ))
        except SQLAlchemyError as e:
            raise BoundaryDeliveryError(f"Failed to queue device command: {e}", DEVICE_COMMANDS_TOPIC)
