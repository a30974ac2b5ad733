"""
Transport session abstractions.

A session is the device's single connection to the platform broker.
The device client only needs connect, subscribe, publish and
disconnect from it, plus an inbound message callback.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

from paho.mqtt.client import topic_matches_sub

from boodskap.errors import ConnectError, PublishError
from boodskap.network.broker import MessageBroker
from boodskap.protocol.messages import Credentials, QoS


logger = logging.getLogger(__name__)


KEEP_ALIVE_SECONDS = 30
CONNECT_TIMEOUT_SECONDS = 10.0

# MQTT CONNACK return code for bad credentials
CONNACK_NOT_AUTHORIZED = 5


class SessionState(str, Enum):
    """Session connection state."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


@dataclass(frozen=True)
class SessionOptions:
    """Options for establishing a session."""
    url: str
    credentials: Credentials
    keep_alive: int = KEEP_ALIVE_SECONDS
    clean_session: bool = True
    auto_reconnect: bool = True
    connect_timeout: float = CONNECT_TIMEOUT_SECONDS


# Callback type for inbound messages
InboundCallback = Callable[[str, bytes], None]


class Session(ABC):
    """
    Abstract transport session.

    Implementations:
    - MQTTSession: paho-mqtt connection to a real broker
    - LoopbackSession: in-process session on a MessageBroker

    Publishes are serialized on a per-session lock, so the heartbeat
    worker and foreground sends never interleave on the wire even when
    the underlying client is not safe for concurrent publish.
    """

    def __init__(self) -> None:
        self._state = SessionState.DISCONNECTED
        self._publish_lock = threading.Lock()
        self._subscriptions: Dict[str, InboundCallback] = {}

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        """Whether the session has an active connection."""
        return self._state == SessionState.CONNECTED

    def publish(
        self,
        topic: str,
        payload: bytes,
        qos: int = QoS.AT_MOST_ONCE,
        retained: bool = False,
    ) -> None:
        """
        Publish a payload.

        Raises:
            PublishError: If the session is not connected or the
                transport rejected the publish
        """
        if qos not in (0, 1, 2):
            raise PublishError(f"Invalid QoS: {qos}", topic)
        with self._publish_lock:
            if self._state != SessionState.CONNECTED:
                raise PublishError("Session not connected", topic)
            self._publish(topic, payload, int(qos), retained)

    @abstractmethod
    def connect(self, options: SessionOptions) -> None:
        """
        Connect and complete the handshake.

        Raises:
            ConnectError: On credential or handshake failure
        """

    @abstractmethod
    def subscribe(
        self,
        topic: str,
        on_message: InboundCallback,
        qos: int = QoS.AT_LEAST_ONCE,
    ) -> None:
        """Subscribe to a topic, delivering (topic, payload) to on_message."""

    @abstractmethod
    def _publish(self, topic: str, payload: bytes, qos: int, retained: bool) -> None:
        """Transport-specific publish; called with the publish lock held."""

    @abstractmethod
    def disconnect(self, timeout: float) -> bool:
        """
        Disconnect gracefully.

        Returns:
            True if the session confirmed the disconnect within timeout

        Raises:
            DisconnectError: If the disconnect request itself failed
        """

    @abstractmethod
    def force_disconnect(self) -> None:
        """Drop the connection without a clean handshake."""

    @abstractmethod
    def close(self) -> None:
        """Release the session handle."""


class LoopbackSession(Session):
    """
    Session on an in-process MessageBroker.

    Messages are delivered synchronously through the broker without any
    network I/O. Useful for tests and offline demos.
    """

    def __init__(self, broker: Optional[MessageBroker] = None):
        super().__init__()
        self._broker = broker or MessageBroker()
        self._options: Optional[SessionOptions] = None

    @property
    def broker(self) -> MessageBroker:
        return self._broker

    @property
    def options(self) -> Optional[SessionOptions]:
        return self._options

    @property
    def _subscriber_id(self) -> str:
        return self._options.credentials.client_id if self._options else "loopback"

    def connect(self, options: SessionOptions) -> None:
        if self._state == SessionState.CLOSED:
            raise ConnectError("Session handle already closed")

        self._state = SessionState.CONNECTING
        credentials = options.credentials
        if not self._broker.authenticate(credentials.user_name, credentials.password):
            self._state = SessionState.DISCONNECTED
            raise ConnectError(
                f"Not authorized: {credentials.user_name}",
                reason_code=CONNACK_NOT_AUTHORIZED,
            )

        self._options = options
        self._state = SessionState.CONNECTED
        logger.debug(f"Loopback session connected: {credentials.client_id}")

    def subscribe(
        self,
        topic: str,
        on_message: InboundCallback,
        qos: int = QoS.AT_LEAST_ONCE,
    ) -> None:
        self._subscriptions[topic] = on_message
        self._broker.subscribe(self._subscriber_id, topic, self._deliver)

    def _deliver(self, topic: str, payload: bytes) -> None:
        if self._state != SessionState.CONNECTED:
            return
        for pattern, callback in list(self._subscriptions.items()):
            if topic_matches_sub(pattern, topic):
                callback(topic, payload)

    def _publish(self, topic: str, payload: bytes, qos: int, retained: bool) -> None:
        if not self._broker.accepting:
            raise PublishError("Broker refused publish", topic)
        self._broker.publish(topic, payload, retain=retained)

    def simulate_connection_loss(self) -> None:
        """Drop the connection as if the network failed."""
        if self._state != SessionState.CONNECTED:
            return
        self._broker.unsubscribe(self._subscriber_id)
        self._state = SessionState.DISCONNECTED
        logger.warning("Loopback session lost connection")

        if self._options and self._options.auto_reconnect:
            self.connect(self._options)
            if self._options.clean_session:
                for topic in list(self._subscriptions):
                    self._broker.subscribe(self._subscriber_id, topic, self._deliver)
            logger.info("Loopback session reconnected")

    def disconnect(self, timeout: float) -> bool:
        self._broker.unsubscribe(self._subscriber_id)
        if self._state != SessionState.CLOSED:
            self._state = SessionState.DISCONNECTED
        return True

    def force_disconnect(self) -> None:
        self.disconnect(0)

    def close(self) -> None:
        self._subscriptions.clear()
        self._state = SessionState.CLOSED
