"""Outbound delivery clients and inbound webhook parsing."""
from channels.base import (
    ChannelError,
    DeliveryClient,
    IdempotentDelivery,
    LoggingDeliveryClient,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from channels.whatsapp_adapter import WhatsAppCloudClient, parse_webhook

__all__ = [
    "ChannelError", "TransientDeliveryError", "PermanentDeliveryError",
    "DeliveryClient", "IdempotentDelivery", "LoggingDeliveryClient",
    "WhatsAppCloudClient", "parse_webhook",
]
