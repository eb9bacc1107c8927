"""
Delivery channel backends and their error taxonomy.

A ChannelBackend knows how to check and use every DeliveryChannel. The
reliability manager classifies the exceptions it raises:

- PermissionDeniedError, InvalidConfigurationError: permanent, never retried
- ChannelUnavailableError: recorded as unavailable, never retried
- TransientChannelError (or any other exception): retried with backoff
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

from .models import DeliveryChannel
from .payloads import NotificationPayload

logger = logging.getLogger(__name__)


class ChannelError(Exception):
    """Base class for classified channel failures."""

    retryable = True

    def __init__(self, channel: DeliveryChannel, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.channel = channel


class TransientChannelError(ChannelError):
    retryable = True


class PermissionDeniedError(ChannelError):
    retryable = False


class InvalidConfigurationError(ChannelError):
    retryable = False


class ChannelUnavailableError(ChannelError):
    retryable = False


@dataclass(frozen=True)
class OutgoingNotification:
    """What every channel renders in its own way."""
    notification_id: str
    title: str
    body: str
    payload: Optional[NotificationPayload] = None
    critical: bool = False

    def data(self) -> Dict[str, str]:
        data = {"notificationId": self.notification_id}
        if self.payload is not None:
            data.update(self.payload.to_data())
        return data


class ChannelBackend(Protocol):
    async def is_available(self, channel: DeliveryChannel) -> bool:
        ...

    async def send(self, channel: DeliveryChannel, notification: OutgoingNotification) -> None:
        ...


class DeviceSurface(Protocol):
    """On-device alert surface (sound player, vibration motor, banner, badge)."""

    async def capabilities(self) -> Dict[DeliveryChannel, bool]:
        ...

    async def post_notification(self, notification: OutgoingNotification) -> None:
        ...

    async def play_sound(self, critical: bool) -> None:
        ...

    async def vibrate(self) -> None:
        ...

    async def show_banner(self, title: str, body: str) -> None:
        ...

    async def increment_badge(self) -> None:
        ...


class DeviceSurfaceBackend:
    """ChannelBackend that drives a DeviceSurface collaborator directly."""

    def __init__(self, surface: DeviceSurface):
        self.surface = surface

    async def is_available(self, channel: DeliveryChannel) -> bool:
        capabilities = await self.surface.capabilities()
        return capabilities.get(channel, False)

    async def send(self, channel: DeliveryChannel, notification: OutgoingNotification) -> None:
        if channel == DeliveryChannel.SYSTEM_NOTIFICATION:
            await self.surface.post_notification(notification)
        elif channel == DeliveryChannel.LOCAL_SOUND:
            await self.surface.play_sound(notification.critical)
        elif channel == DeliveryChannel.HAPTIC:
            await self.surface.vibrate()
        elif channel == DeliveryChannel.VISUAL_BANNER:
            await self.surface.show_banner(notification.title, notification.body)
        elif channel == DeliveryChannel.BADGE:
            await self.surface.increment_badge()
        else:
            raise InvalidConfigurationError(channel, f"Unsupported channel {channel}")
