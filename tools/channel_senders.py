"""
Channel Senders Tool
Delivery backends for push, local, web and sound notifications
"""

import logging
from typing import Awaitable, Callable, Dict, List, Optional, Any
from dataclasses import dataclass, field
from datetime import datetime

import httpx

from config import settings, engine_config
from exceptions import DeliveryFailure
from models import DeliveryStatus, NotificationChannel
from services.time_utils import utcnow


logger = logging.getLogger(__name__)


@dataclass
class NotificationRequest:
    """Everything a sender needs to deliver one reminder"""
    user_id: int
    title: str
    body: str
    category: str = "dose_reminder"
    data: Dict[str, Any] = field(default_factory=dict)
    push_endpoints: List[str] = field(default_factory=list)


@dataclass
class DeliveryResult:
    """Result of a successful send"""
    channel: NotificationChannel
    status: DeliveryStatus = DeliveryStatus.DELIVERED
    message_id: Optional[str] = None
    delivered_at: Optional[datetime] = None


class ChannelSender:
    """
    Base class for channel backends.

    send() returns a DeliveryResult or raises DeliveryFailure; retries and
    timeouts are the dispatcher's business.
    """

    channel: NotificationChannel

    async def send(self, request: NotificationRequest) -> DeliveryResult:
        raise NotImplementedError


class PushGatewaySender(ChannelSender):
    """Forwards push notifications to an HTTP push gateway"""

    channel = NotificationChannel.PUSH

    def __init__(
        self,
        gateway_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: float = engine_config.DELIVERY_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.gateway_url = gateway_url if gateway_url is not None else settings.PUSH_GATEWAY_URL
        self.token = token if token is not None else settings.PUSH_GATEWAY_TOKEN
        self.timeout = timeout
        self._transport = transport

    async def send(self, request: NotificationRequest) -> DeliveryResult:
        if not self.gateway_url:
            raise DeliveryFailure("Push gateway not configured", channel=self.channel.value, retryable=False)
        if not request.push_endpoints:
            raise DeliveryFailure("No active push subscription", channel=self.channel.value, retryable=False)

        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        payload = {
            "endpoints": request.push_endpoints,
            "notification": {
                "title": request.title,
                "body": request.body,
                "tag": request.category,
                "data": request.data,
            },
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.gateway_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise DeliveryFailure(f"Push gateway unreachable: {e}", channel=self.channel.value)

        if response.status_code >= 500:
            raise DeliveryFailure(f"Push gateway error {response.status_code}", channel=self.channel.value)
        if response.status_code >= 400:
            # Expired subscriptions and bad payloads will not succeed on retry
            raise DeliveryFailure(
                f"Push rejected with {response.status_code}",
                channel=self.channel.value,
                retryable=False
            )

        message_id = None
        if response.headers.get("content-type", "").startswith("application/json"):
            message_id = response.json().get("id")

        logger.info(f"[PUSH] To user {request.user_id}: {request.title}")
        return DeliveryResult(
            channel=self.channel,
            status=DeliveryStatus.DELIVERED,
            message_id=message_id,
            delivered_at=utcnow()
        )


class CallbackSender(ChannelSender):
    """
    Hands a notification to a client-side channel (local, web, sound).

    Without a callback the hand-off is only logged and reported as sent.
    """

    def __init__(
        self,
        channel: NotificationChannel,
        callback: Optional[Callable[[NotificationRequest], Awaitable[None]]] = None
    ):
        self.channel = channel
        self.callback = callback

    async def send(self, request: NotificationRequest) -> DeliveryResult:
        if self.callback is not None:
            await self.callback(request)
        logger.info(f"[{self.channel.value.upper()}] For user {request.user_id}: {request.title}")
        return DeliveryResult(
            channel=self.channel,
            status=DeliveryStatus.SENT,
            message_id=f"{self.channel.value}_{utcnow().timestamp()}",
            delivered_at=utcnow()
        )


def default_senders() -> Dict[NotificationChannel, ChannelSender]:
    """One sender per channel, configured from settings"""
    return {
        NotificationChannel.PUSH: PushGatewaySender(),
        NotificationChannel.LOCAL: CallbackSender(NotificationChannel.LOCAL),
        NotificationChannel.WEB: CallbackSender(NotificationChannel.WEB),
        NotificationChannel.SOUND: CallbackSender(NotificationChannel.SOUND),
    }
