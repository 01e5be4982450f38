"""
Boundary Collaborators

Notification trigger and device command emitter. Both wrap an external
collaborator behind a bounded-timeout call whose failure is logged and never
propagated to the billing pass.
"""

import asyncio
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
import structlog

from .base import (
    Account,
    BoundaryDeliveryError,
    DeviceCommand,
    DeviceState,
    NotificationRequest,
    NotificationType,
)


logger = structlog.get_logger(__name__)


NOTIFICATIONS_TOPIC = "notifications"
DEVICE_COMMANDS_TOPIC = "mikrotik-commands"


# =============================================================================
# Collaborator interfaces
# =============================================================================


class NotificationSender(ABC):
    """Delivers a notification to the subscriber."""

    @abstractmethod
    async def send(self, request: NotificationRequest) -> None:
        """Send notification. Raises BoundaryDeliveryError on failure."""
        pass


class CommandChannel(ABC):
    """Propagates device state changes to network equipment."""

    @abstractmethod
    async def send(self, command: DeviceCommand) -> None:
        """Send command. Raises BoundaryDeliveryError on failure."""
        pass


class NullNotificationSender(NotificationSender):
    """Sender that only logs. Used when no gateway is configured."""

    async def send(self, request: NotificationRequest) -> None:
        logger.info(
            "notification_dropped",
            account_id=request.account_id,
            notification_type=request.type.value,
        )


class NullCommandChannel(CommandChannel):
    """Channel that only logs. Used when no gateway is configured."""

    async def send(self, command: DeviceCommand) -> None:
        logger.info(
            "device_command_dropped",
            account_id=command.account_id,
            command_type=command.desired_state.command_type,
        )


# =============================================================================
# HTTP collaborators
# =============================================================================


class _HttpEnvelopeClient:
    """Posts `{"topic", "payload"}` envelopes to a gateway."""

    def __init__(self, base_url: str, topic: str, timeout: float = 5.0):
        self.base_url = base_url
        self.topic = topic
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Content-Type": "application/json"},
                timeout=httpx.Timeout(self.timeout),
            )
        return self._client

    async def _post(self, payload: Dict[str, Any]) -> None:
        try:
            client = await self._get_client()
            response = await client.post("", json={"topic": self.topic, "payload": payload})
            response.raise_for_status()
        except httpx.TimeoutException:
            raise BoundaryDeliveryError(
                f"Gateway request timed out after {self.timeout}s",
                target=self.topic,
            )
        except httpx.HTTPError as e:
            raise BoundaryDeliveryError(f"Gateway request failed: {e}", target=self.topic)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class HttpNotificationSender(_HttpEnvelopeClient, NotificationSender):
    """Notification sender posting to the notification gateway."""

    def __init__(self, base_url: str, timeout: float = 5.0):
        super().__init__(base_url, NOTIFICATIONS_TOPIC, timeout)

    async def send(self, request: NotificationRequest) -> None:
        await self._post(request.to_dict())


class HttpCommandChannel(_HttpEnvelopeClient, CommandChannel):
    """Command channel posting to the device command gateway."""

    def __init__(self, base_url: str, timeout: float = 5.0):
        super().__init__(base_url, DEVICE_COMMANDS_TOPIC, timeout)

    async def send(self, command: DeviceCommand) -> None:
        await self._post(command.to_dict())


# =============================================================================
# Trigger / Emitter
# =============================================================================


def render_message(
    notification_type: NotificationType,
    account: Account,
    balance: Decimal,
) -> str:
    """Human readable notification text."""
    number = account.account_number or account.id
    if notification_type == NotificationType.LOW_BALANCE:
        return f"Low balance on account {number}: {balance}. Please top up to avoid suspension."
    if notification_type == NotificationType.INSUFFICIENT_FUNDS:
        return f"Account {number} has been blocked. Balance {balance} is below the required minimum."
    return f"Account {number} has been unblocked. Current balance: {balance}."


class NotificationTrigger:
    """Fire-and-forget notification delivery with a timeout."""

    def __init__(self, sender: NotificationSender, timeout: float = 5.0):
        self.sender = sender
        self.timeout = timeout

    async def notify(
        self,
        account: Account,
        notification_type: NotificationType,
        balance: Optional[Decimal] = None,
    ) -> bool:
        """Request delivery. Returns True if the collaborator accepted it."""
        value = account.balance if balance is None else balance
        request = NotificationRequest(
            client_id=account.client_id,
            account_id=account.id,
            type=notification_type,
            message=render_message(notification_type, account, value),
        )

        try:
            await asyncio.wait_for(self.sender.send(request), timeout=self.timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(
                "boundary_delivery_failed",
                target=NOTIFICATIONS_TOPIC,
                account_id=account.id,
                notification_type=notification_type.value,
                error=f"timed out after {self.timeout}s",
            )
        except Exception as e:
            logger.warning(
                "boundary_delivery_failed",
                target=NOTIFICATIONS_TOPIC,
                account_id=account.id,
                notification_type=notification_type.value,
                error=str(e),
            )
        return False


class CommandEmitter:
    """Fire-and-forget device command delivery with a timeout."""

    def __init__(self, channel: CommandChannel, timeout: float = 5.0):
        self.channel = channel
        self.timeout = timeout

    async def emit_command(self, account: Account, desired_state: DeviceState) -> bool:
        """Request a device state change. Returns True if accepted."""
        command = DeviceCommand(
            device_id=account.device_id,
            account_id=account.id,
            mac_address=account.mac_address,
            desired_state=desired_state,
        )

        try:
            await asyncio.wait_for(self.channel.send(command), timeout=self.timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(
                "boundary_delivery_failed",
                target=DEVICE_COMMANDS_TOPIC,
                account_id=account.id,
                command_type=desired_state.command_type,
                error=f"timed out after {self.timeout}s",
            )
        except Exception as e:
            logger.warning(
                "boundary_delivery_failed",
                target=DEVICE_COMMANDS_TOPIC,
                account_id=account.id,
                command_type=desired_state.command_type,
                error=str(e),
            )
        return False
