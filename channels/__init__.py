"""
Delivery sinks — outbound calls made on behalf of the queue workers.
"""
from channels.base import ChannelError, DeliveryResult, DeliverySink, DeliveryTimeoutError
from channels.webhook_sink import HttpWebhookSink
from channels.chatwoot_adapter import ChatwootClient, ChatwootError, ChatwootSink

__all__ = [
    "ChannelError", "DeliveryResult", "DeliverySink", "DeliveryTimeoutError",
    "HttpWebhookSink",
    "ChatwootClient", "ChatwootError", "ChatwootSink",
]
