"""
Outbound message sinks.

The notifier hands every message to a sink with ``send(recipient, kind,
payload)``; payloads hold only JSON-ready values. Rendering and transport
(email, WhatsApp) happen outside this service: the redis sink enqueues a JSON
envelope for an external worker, the logging sink just records the message.
"""

import json
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Any

from smartqueue.infrastructure.observability.logging import get_logger
from smartqueue.models.domain import MessageKind
from smartqueue.services.redis_client import FastRedisClient

logger = get_logger(__name__)


class MessageDeliveryError(Exception):
    """The sink could not accept a message."""


class MessageSink(ABC):
    @abstractmethod
    async def send(self, recipient: str, kind: MessageKind, payload: dict[str, Any]) -> None: ...


class LoggingMessageSink(MessageSink):
    """Writes each message to the structured log."""

    async def send(self, recipient: str, kind: MessageKind, payload: dict[str, Any]) -> None:
        logger.info("Queue message", recipient=recipient, kind=kind.value, **payload)


class RedisMessageSink(MessageSink):
    """LPUSHes a JSON envelope onto a Redis list consumed by the delivery worker."""

    def __init__(self, client: FastRedisClient, key: str = "queue:notifications"):
        self.client = client
        self.key = key

    async def send(self, recipient: str, kind: MessageKind, payload: dict[str, Any]) -> None:
        envelope = {
            "recipient": recipient,
            "kind": kind.value,
            "payload": payload,
            "queued_at": datetime.now(UTC).isoformat(),
        }
        body = json.dumps(envelope)
        if not await self.client.push_to_list(self.key, body):
            raise MessageDeliveryError(f"Could not enqueue {kind.value} message on {self.key}")