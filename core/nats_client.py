"""
NATS JetStream Client for Python Microservices
Provides event-driven communication between billing services

This module wraps nats-py (nats.connect + JetStream context) behind the
Event / NATSEventBus interface the services publish and subscribe with.
"""

import asyncio
import json
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Optional, TYPE_CHECKING

import nats
from nats.aio.client import Client as NATS
from nats.js import JetStreamContext

if TYPE_CHECKING:
    from core.config import InfraConfig


class DecimalEncoder(json.JSONEncoder):
    """Custom JSON encoder that handles Decimal and datetime types"""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


logger = logging.getLogger(__name__)


class EventType(Enum):
    """Event types published and consumed by the billing lifecycle"""

    # Subscription lifecycle events
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_RENEWED = "subscription.renewed"
    SUBSCRIPTION_PAUSED = "subscription.paused"
    SUBSCRIPTION_RESUMED = "subscription.resumed"
    SUBSCRIPTION_SUSPENDED = "subscription.suspended"
    SUBSCRIPTION_CANCELED = "subscription.cancelled"
    SUBSCRIPTION_EXPIRED = "subscription.expired"
    SUBSCRIPTION_PLAN_CHANGED = "subscription.plan_changed"
    SUBSCRIPTION_PLAN_CHANGE_SCHEDULED = "subscription.plan_change_scheduled"

    # Dunning events
    SUBSCRIPTION_PAYMENT_FAILED = "subscription.payment.failed"
    SUBSCRIPTION_PAYMENT_RECOVERED = "subscription.payment.recovered"

    # Payment events (consumed)
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_SUCCEEDED = "payment.succeeded"


class ServiceSource(Enum):
    """Service sources"""

    SUBSCRIPTION_SERVICE = "subscription_service"
    PAYMENT_SERVICE = "payment_service"
    INVOICE_SERVICE = "invoice_service"
    ENTITLEMENT_SERVICE = "entitlement_service"
    NOTIFICATION_SERVICE = "notification_service"


class Event:
    """Event model"""

    def __init__(
        self,
        event_type: EventType,
        source: ServiceSource,
        data: Dict[str, Any],
        subject: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ):
        self.id = str(uuid.uuid4())
        self.type = event_type.value
        self.source = source.value
        self.data = data
        self.subject = subject
        self.timestamp = datetime.utcnow().isoformat()
        self.metadata = metadata or {}
        self.version = "1.0.0"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "source": self.source,
            "subject": self.subject,
            "timestamp": self.timestamp,
            "data": self.data,
            "metadata": self.metadata,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        event = cls.__new__(cls)
        event.id = data.get("id")
        event.type = data.get("type")
        event.source = data.get("source")
        event.subject = data.get("subject")
        event.timestamp = data.get("timestamp")
        event.data = data.get("data", {})
        event.metadata = data.get("metadata", {})
        event.version = data.get("version", "1.0.0")
        return event


class NATSEventBus:
    """
    NATS JetStream event bus built on nats-py.

    Streams are named after the first token of the event type
    (subscription.* -> subscription-stream, payment.* -> payment-stream).
    """

    def __init__(
        self,
        service_name: str,
        config: Optional["InfraConfig"] = None,
    ):
        """
        Initialize NATS Event Bus.

        Args:
            service_name: Name of the service (used for durable consumer names)
            config: Optional InfraConfig; defaults to global settings
        """
        if config is None:
            from core.config import get_settings
            config = get_settings().infrastructure

        self.service_name = service_name
        self.servers = config.nats_server_url

        self._nc: Optional[NATS] = None
        self._js: Optional[JetStreamContext] = None
        self._subscriptions: Dict[str, Any] = {}  # pattern -> nats subscription
        self._known_streams: set = set()
        self._is_connected = False

        logger.info(f"NATS EventBus initialized: {self.servers}")

    async def connect(self):
        """Connect to NATS and open a JetStream context"""
        try:
            self._nc = await nats.connect(servers=[self.servers], name=self.service_name)
            self._js = self._nc.jetstream()
            self._is_connected = True
            logger.info(f"Connected to NATS as {self.service_name}")
        except Exception as e:
            logger.error(f"Failed to connect to NATS: {e}")
            raise

    def _get_stream_name_for_event(self, event_type: str) -> str:
        """Map an event type or subject pattern to its stream name"""
        prefix = event_type.split('.')[0]
        return f"{prefix}-stream"

    async def _ensure_stream(self, event_type: str) -> str:
        stream_name = self._get_stream_name_for_event(event_type)
        if stream_name in self._known_streams:
            return stream_name

        prefix = event_type.split('.')[0]
        try:
            await self._js.add_stream(name=stream_name, subjects=[f"{prefix}.>"])
        except Exception as e:
            # Stream already exists with a compatible config
            logger.debug(f"Stream creation note: {e}")
        self._known_streams.add(stream_name)
        return stream_name

    async def publish_event(self, event: Event) -> bool:
        """
        Publish an event to NATS JetStream.

        The event type is used as the subject; the stream is derived from its
        first token and created on first use.
        """
        if not self._is_connected or not self._js:
            logger.error("Not connected to NATS")
            return False

        try:
            stream_name = await self._ensure_stream(event.type)
            data = json.dumps(event.to_dict(), cls=DecimalEncoder).encode()

            ack = await self._js.publish(
                event.type,
                data,
                headers={
                    "event_id": event.id,
                    "event_type": event.type,
                    "source": event.source,
                },
            )
            logger.info(f"Published event {event.type} [{event.id}] to stream {stream_name}, seq={ack.seq}")
            return True

        except Exception as e:
            logger.error(f"Error publishing event {event.id}: {e}")
            return False

    async def subscribe_to_events(
        self, pattern: str, handler: Callable, durable: Optional[str] = None
    ) -> Optional[str]:
        """
        Subscribe to events with a pattern using a durable JetStream consumer.

        Args:
            pattern: Subject pattern to subscribe to (e.g., "payment.failed")
            handler: Async callback receiving an Event
            durable: Optional durable name for the consumer
        """
        if not self._is_connected or not self._js:
            logger.error("Not connected to NATS")
            return None

        durable_name = durable or f"{self.service_name}-{pattern.replace('.', '-').replace('*', 'all').replace('>', 'all')}"

        async def _on_message(msg):
            try:
                data = json.loads(msg.data.decode())
                if 'type' in data and 'source' in data and 'data' in data:
                    event = Event.from_dict(data)
                else:
                    # Raw payload published without an envelope
                    event = Event.__new__(Event)
                    event.id = str(uuid.uuid4())
                    event.type = msg.subject
                    event.source = "unknown"
                    event.subject = msg.subject
                    event.timestamp = data.get('timestamp', datetime.utcnow().isoformat())
                    event.data = data
                    event.metadata = {}
                    event.version = '1.0.0'

                await handler(event)
                await msg.ack()
            except Exception as e:
                logger.error(f"Error processing message on {msg.subject}: {e}", exc_info=True)
                await msg.nak()

        try:
            await self._ensure_stream(pattern)
            sub = await self._js.subscribe(
                pattern,
                cb=_on_message,
                durable=durable_name,
                manual_ack=True,
            )
            self._subscriptions[pattern] = sub
            logger.info(f"Subscribed to {pattern} (JetStream consumer {durable_name})")
            return durable_name

        except Exception as e:
            logger.error(f"Error subscribing to events: {e}")
            return None

    async def unsubscribe(self, pattern: str) -> bool:
        """Unsubscribe from a pattern"""
        sub = self._subscriptions.pop(pattern, None)
        if sub is None:
            return False
        await sub.unsubscribe()
        logger.info(f"Unsubscribed from {pattern}")
        return True

    async def close(self):
        """Drain subscriptions and close the NATS connection"""
        for pattern in list(self._subscriptions.keys()):
            try:
                await self.unsubscribe(pattern)
            except Exception as e:
                logger.warning(f"Failed to unsubscribe from {pattern}: {e}")

        if self._nc:
            await self._nc.drain()
            self._nc = None
            self._js = None

        self._is_connected = False
        logger.info("Disconnected from NATS")

    @property
    def is_connected(self) -> bool:
        """Check if connected to NATS"""
        return self._is_connected


# Singleton instance
_event_bus: Optional[NATSEventBus] = None
_event_bus_lock = asyncio.Lock()


async def get_event_bus(
    service_name: str,
    config: Optional["InfraConfig"] = None,
) -> NATSEventBus:
    """
    Get or create event bus instance.

    Args:
        service_name: Name of the service using the event bus
        config: Optional InfraConfig instance

    Returns:
        Connected NATSEventBus instance
    """
    global _event_bus

    async with _event_bus_lock:
        if _event_bus is None:
            bus = NATSEventBus(service_name=service_name, config=config)
            await bus.connect()
            _event_bus = bus

    return _event_bus


__all__ = [
    "DecimalEncoder",
    "EventType",
    "ServiceSource",
    "Event",
    "NATSEventBus",
    "get_event_bus",
]
