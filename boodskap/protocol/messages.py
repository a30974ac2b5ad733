"""
Protocol data types for device <-> platform communication.

Defines device identity, derived credentials, outbound messages and the
pending acknowledgments queued for the heartbeat pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict


# Reserved message identifiers
MSG_PING = 1
MSG_ACK = 2

# Acknowledgment field names
P_CORRELATION_ID = "correlationId"
P_ACK = "acked"

CLIENT_ID_PREFIX = "DEV_"


class QoS(IntEnum):
    """MQTT Quality of Service levels."""
    AT_MOST_ONCE = 0   # Fire and forget
    AT_LEAST_ONCE = 1  # Acknowledged delivery
    EXACTLY_ONCE = 2   # Assured delivery


@dataclass(frozen=True)
class Identity:
    """
    Device identity registered on the platform.

    Every topic the device publishes to or subscribes on is derived
    from these four values, so they never change while connected.
    """
    domain_key: str
    device_id: str
    device_model: str
    firmware_version: str


@dataclass(frozen=True)
class Credentials:
    """MQTT credentials presented during the connect handshake."""
    client_id: str
    user_name: str
    password: str = field(repr=False)

    @classmethod
    def from_identity(cls, identity: Identity, api_key: str) -> Credentials:
        """Derive credentials for a device from its identity and API key."""
        return cls(
            client_id=f"{CLIENT_ID_PREFIX}{identity.device_id}",
            user_name=f"{CLIENT_ID_PREFIX}{identity.domain_key}",
            password=api_key,
        )


@dataclass
class Message:
    """
    A structured message addressed by its platform message id.

    Fields keep insertion order so the encoded JSON object matches
    the order the application built it in.
    """
    message_id: int
    fields: Dict[str, Any] = field(default_factory=dict)
    qos: QoS = QoS.AT_MOST_ONCE
    retained: bool = False

    @property
    def is_ping(self) -> bool:
        return self.message_id == MSG_PING

    @classmethod
    def ping(cls) -> Message:
        """Create a heartbeat message."""
        return cls(message_id=MSG_PING)

    @classmethod
    def ack(cls, correlation_id: int, acked: bool) -> Message:
        """Create an acknowledgment message for an inbound command."""
        return PendingAck(correlation_id, acked).to_message()


@dataclass(frozen=True)
class PendingAck:
    """An acknowledgment waiting in the pipeline queue."""
    correlation_id: int
    acked: bool

    def to_fields(self) -> Dict[str, Any]:
        return {
            P_CORRELATION_ID: self.correlation_id,
            P_ACK: 1 if self.acked else 0,
        }

    def to_message(self) -> Message:
        return Message(message_id=MSG_ACK, fields=self.to_fields())
