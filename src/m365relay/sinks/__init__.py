"""Destinations the relay can deliver to."""

from m365relay.sinks.base import EventSink
from m365relay.sinks.webhook import PlainWebhookSink, authorization_header

__all__ = ["EventSink", "PlainWebhookSink", "authorization_header"]
