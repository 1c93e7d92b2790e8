"""MQTT package for the bell controller.

- client.py: broker connection lifecycle and receive loop
- topics.py: topic layout of both device generations
- publisher.py: outbound commands and correlated requests
- dispatcher.py: single-consumer ordered handling of inbound messages
"""

from .client import MQTTClient
from .dispatcher import InboundMessage, MessageDispatcher
from .publisher import Publisher
from .topics import DeviceTopics, MessageClass, ParsedTopic

__all__ = [
    "DeviceTopics",
    "InboundMessage",
    "MQTTClient",
    "MessageClass",
    "MessageDispatcher",
    "ParsedTopic",
    "Publisher",
]
