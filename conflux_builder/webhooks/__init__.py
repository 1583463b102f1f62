"""Inbound GitHub webhooks: signature verification and event adapters."""

from conflux_builder.webhooks.handlers import WebhookPayloadError, WebhookResult, handle_event
from conflux_builder.webhooks.verify import verify_signature

__all__ = ["WebhookPayloadError", "WebhookResult", "handle_event", "verify_signature"]
