"""
Protocol module for Boodskap device communication.

Defines identities, message types, topic derivation, payload encoding
and inbound command handling.
"""

from boodskap.protocol.messages import (
    MSG_ACK,
    MSG_PING,
    Credentials,
    Identity,
    Message,
    PendingAck,
    QoS,
)
from boodskap.protocol.codec import JSONCodec
from boodskap.protocol.topics import TopicKind, TopicRouter
from boodskap.protocol.handler import Command, CommandProcessor

__all__ = [
    "MSG_ACK",
    "MSG_PING",
    "Credentials",
    "Identity",
    "Message",
    "PendingAck",
    "QoS",
    "JSONCodec",
    "TopicKind",
    "TopicRouter",
    "Command",
    "CommandProcessor",
]
