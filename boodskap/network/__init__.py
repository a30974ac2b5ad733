"""
Network module for Boodskap device communication.

Provides the transport session contract, a paho-mqtt session and an
in-process loopback session.
"""

from boodskap.network.transport import (
    Session,
    SessionOptions,
    SessionState,
    LoopbackSession,
)
from boodskap.network.broker import MessageBroker
from boodskap.network.mqtt import MQTTSession, parse_broker_url

__all__ = [
    "Session",
    "SessionOptions",
    "SessionState",
    "LoopbackSession",
    "MessageBroker",
    "MQTTSession",
    "parse_broker_url",
]
