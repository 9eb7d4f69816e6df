"""Webhook delivery to the downstream sink."""

from inboxrelay.infrastructure.webhook.dispatcher import DeliveryResult, WebhookDispatcher, payload_diagnostics

__all__ = [
    "DeliveryResult",
    "WebhookDispatcher",
    "payload_diagnostics",
]
