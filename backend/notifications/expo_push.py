"""
Expo Push Notifications Client

Sends push notifications via Expo Push API.
https://docs.expo.dev/push-notifications/overview/

Failures are raised as classified channel errors so the reliability
manager can decide whether to retry.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from .channels import (
    ChannelUnavailableError,
    InvalidConfigurationError,
    OutgoingNotification,
    PermissionDeniedError,
    TransientChannelError,
)
from .models import DeliveryChannel

logger = logging.getLogger(__name__)

# Expo Push API endpoint
EXPO_PUSH_API_URL = "https://exp.host/--/api/v2/push/send"

# Expo ticket error codes that retrying cannot fix
PERMANENT_ERRORS = {"InvalidCredentials", "MessageTooBig", "MismatchSenderId"}
RETRYABLE_STATUSES = {429, 500, 502, 503, 504}


class ExpoPushClient:
    """Async client for sending push notifications via Expo."""

    def __init__(
        self,
        access_token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize Expo push client.

        Args:
            access_token: Optional Expo access token (may not be required for basic usage)
            client: Optional preconfigured httpx.AsyncClient (tests pass a MockTransport)
        """
        self.access_token = access_token
        self.client = client or httpx.AsyncClient(timeout=10.0)

    async def send(
        self,
        channel: DeliveryChannel,
        push_token: str,
        message: Dict[str, Any],
    ) -> Dict[str, Any]:
        """
        Send a single push message.

        Returns:
            The Expo push ticket

        Raises:
            InvalidConfigurationError: Bad token or credentials
            PermissionDeniedError: Device unregistered (notifications revoked)
            TransientChannelError: Network failure, rate limit or server error
        """
        if not push_token or not push_token.startswith("ExponentPushToken["):
            raise InvalidConfigurationError(channel, f"Invalid push token format: {push_token[:20]}...")

        payload = dict(message)
        payload["to"] = push_token

        try:
            response = await self.client.post(
                EXPO_PUSH_API_URL,
                json=payload,
                headers=self._get_headers(),
            )
        except httpx.HTTPError as e:
            raise TransientChannelError(channel, f"Expo push transport error: {e}")

        if response.status_code in RETRYABLE_STATUSES:
            raise TransientChannelError(channel, f"Expo push API error: {response.status_code}")
        if response.status_code in (401, 403):
            raise InvalidConfigurationError(channel, f"Expo push rejected credentials: {response.status_code}")
        if response.status_code != 200:
            raise InvalidConfigurationError(
                channel, f"Expo push API error: {response.status_code} {response.text[:200]}"
            )

        ticket = response.json().get("data", {})
        if isinstance(ticket, list):
            ticket = ticket[0] if ticket else {}
        if ticket.get("status") == "error":
            error_code = ticket.get("details", {}).get("error", "")
            error = ticket.get("message", "Unknown error")
            if error_code == "DeviceNotRegistered":
                raise PermissionDeniedError(channel, f"Device not registered: {error}")
            if error_code in PERMANENT_ERRORS:
                raise InvalidConfigurationError(channel, f"{error_code}: {error}")
            raise TransientChannelError(channel, f"Expo push error: {error}")

        logger.info(f"Push sent to {push_token[:30]}... via {channel.value}")
        return ticket

    def _get_headers(self) -> dict:
        """Get HTTP headers for Expo API."""
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class ExpoChannelBackend:
    """
    ChannelBackend that reaches a single device through Expo push.

    Each channel maps onto a push message shape. Haptic feedback cannot be
    triggered from the server and is always reported unavailable.
    """

    SUPPORTED = {
        DeliveryChannel.SYSTEM_NOTIFICATION,
        DeliveryChannel.LOCAL_SOUND,
        DeliveryChannel.VISUAL_BANNER,
        DeliveryChannel.BADGE,
    }

    def __init__(self, client: ExpoPushClient, push_token: Optional[str]):
        self.client = client
        self.push_token = push_token

    async def is_available(self, channel: DeliveryChannel) -> bool:
        return bool(self.push_token) and channel in self.SUPPORTED

    async def send(self, channel: DeliveryChannel, notification: OutgoingNotification) -> None:
        if channel not in self.SUPPORTED:
            raise ChannelUnavailableError(channel, "not deliverable via push")
        await self.client.send(channel, self.push_token or "", self.build_message(channel, notification))

    @staticmethod
    def build_message(channel: DeliveryChannel, notification: OutgoingNotification) -> Dict[str, Any]:
        data = notification.data()
        data["channel"] = channel.value
        if channel == DeliveryChannel.SYSTEM_NOTIFICATION:
            return {
                "title": notification.title,
                "body": notification.body,
                "sound": "default",
                "priority": "high",
                "badge": 1,
                "data": data,
            }
        if channel == DeliveryChannel.LOCAL_SOUND:
            return {
                "title": notification.title,
                "sound": {"critical": True, "name": "default", "volume": 1.0}
                if notification.critical
                else "default",
                "priority": "high",
                "data": data,
            }
        if channel == DeliveryChannel.VISUAL_BANNER:
            # Data-only message; the app renders its own in-app banner
            data.update({"bannerTitle": notification.title, "bannerBody": notification.body})
            return {"data": data, "priority": "high", "_contentAvailable": True}
        return {"badge": 1, "data": data}
