"""
Tools Package
Delivery channels for the DoseKeeper engine
"""

from .channel_senders import (
    ChannelSender,
    PushGatewaySender,
    CallbackSender,
    NotificationRequest,
    DeliveryResult,
    default_senders
)

__all__ = [
    "ChannelSender",
    "PushGatewaySender",
    "CallbackSender",
    "NotificationRequest",
    "DeliveryResult",
    "default_senders"
]
