"""Inbound agent events: transport, listener registry and channel handlers."""

from warden.events.handlers import CHANNELS, AgentEventHandlers
from warden.events.registry import ListenerRegistry
from warden.events.stream import EventStream
from warden.events.transport import Event, EventTransport, LocalEventBus

__all__ = [
    "CHANNELS",
    "AgentEventHandlers",
    "Event",
    "EventStream",
    "EventTransport",
    "ListenerRegistry",
    "LocalEventBus",
]
