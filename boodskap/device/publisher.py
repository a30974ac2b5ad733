"""
Device publishers for the Boodskap platform.

A publisher owns the device's transport session, keeps it alive with
the heartbeat pipeline and exposes the message, picture and video
send operations.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from boodskap.device.heartbeat import DEFAULT_QUEUE_SIZE, POLL_INTERVAL, HeartbeatPipeline
from boodskap.errors import ConnectError, PublishError
from boodskap.network.mqtt import PUBLISH_TIMEOUT_SECONDS, MQTTSession
from boodskap.network.transport import KEEP_ALIVE_SECONDS, Session, SessionOptions
from boodskap.protocol.codec import JSONCodec
from boodskap.protocol.messages import Credentials, Identity, Message, QoS
from boodskap.protocol.topics import TopicRouter


logger = logging.getLogger(__name__)


DISCONNECT_TIMEOUT_SECONDS = 3.0


# Receives (topic, raw payload) for every inbound command
MessageHandler = Callable[[str, bytes], None]
SessionFactory = Callable[[], Session]


class ConnectionState(str, Enum):
    """Publisher connection lifecycle state."""
    CLOSED = "closed"
    OPENING = "opening"
    OPEN = "open"
    CLOSING = "closing"


class Publisher(ABC):
    """
    Capability interface of a device publisher.

    Identity and topic derivation are shared through a composed
    TopicRouter; each transport implements the operations itself.
    """

    def __init__(self, identity: Identity):
        self._identity = identity
        self._router = TopicRouter(identity)

    @property
    def identity(self) -> Identity:
        return self._identity

    @property
    def router(self) -> TopicRouter:
        return self._router

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether the publisher has an active connection."""

    @abstractmethod
    def open(self, reconnect: bool = True) -> None:
        """Open the connection."""

    @abstractmethod
    def close(self) -> None:
        """Close the connection."""

    @abstractmethod
    def send_message(
        self,
        message_id: int,
        fields: Optional[Mapping[str, Any]],
        qos: int = QoS.AT_MOST_ONCE,
        retained: bool = False,
    ) -> None:
        """Send a structured message."""

    @abstractmethod
    def send_picture(
        self,
        camera_id: str,
        live: bool,
        format: str,
        data: bytes,
        qos: int = QoS.AT_MOST_ONCE,
        retained: bool = False,
    ) -> None:
        """Send an image captured from a camera."""

    @abstractmethod
    def send_video(
        self,
        camera_id: str,
        live: bool,
        format: str,
        data: bytes,
        qos: int = QoS.AT_MOST_ONCE,
        retained: bool = False,
    ) -> None:
        """Send a video captured from a camera."""

    @abstractmethod
    def acknowledge(self, correlation_id: int, acked: bool) -> bool:
        """Acknowledge an inbound command."""

    def publish(self, message_id: int, fields: Optional[Mapping[str, Any]]) -> None:
        """Send a structured message with QoS 0, not retained."""
        self.send_message(message_id, fields, QoS.AT_MOST_ONCE, False)

    def __enter__(self) -> "Publisher":
        self.open()
        return self

    def __exit__(self, *args) -> None:
        self.close()


class MQTTPublisher(Publisher):
    """
    MQTT publisher for a Boodskap device.

    Lifecycle:
        closed -> opening -> open -> closing -> closed

    On open the session connects, subscribes to the device command
    topic and the heartbeat pipeline starts. On close the pipeline is
    stopped before the session is torn down, so no ping or ack is ever
    published through a session being disconnected.

    Example:
        identity = Identity("DOMAIN", "MyCamera", "RaspCAM", "1.0.0")
        publisher = MQTTPublisher(
            url="tcp://mqtt.boodskap.io",
            heartbeat_ms=30000,
            identity=identity,
            api_key="API_KEY",
            message_handler=on_command,
        )

        publisher.open()
        publisher.publish(100, {"temperature": 22.5})
        publisher.send_picture("0", live=True, format="jpg", data=jpeg_bytes)
        publisher.acknowledge(42, True)
        publisher.close()
    """

    def __init__(
        self,
        url: str,
        heartbeat_ms: int,
        identity: Identity,
        api_key: str,
        message_handler: Optional[MessageHandler] = None,
        session_factory: Optional[SessionFactory] = None,
        ack_queue_size: int = DEFAULT_QUEUE_SIZE,
        codec: Optional[JSONCodec] = None,
    ):
        """
        Initialize MQTT publisher.

        Args:
            url: Broker URL, e.g. "tcp://mqtt.boodskap.io"
            heartbeat_ms: Maximum silence before a ping is sent
            identity: Device identity
            api_key: Domain API key, used as the MQTT password
            message_handler: Receives (topic, payload) of inbound commands
            session_factory: Creates transport sessions (default MQTTSession)
            ack_queue_size: Pending ack capacity (0 = unbounded)
            codec: Payload codec for structured messages
        """
        super().__init__(identity)
        self.url = url
        self.credentials = Credentials.from_identity(identity, api_key)
        self._message_handler = message_handler
        self._session_factory = session_factory or MQTTSession
        self._codec = codec or JSONCodec()

        self._pipeline = HeartbeatPipeline(
            publish=self._send_pipeline_message,
            heartbeat_ms=heartbeat_ms,
            max_queue_size=ack_queue_size,
        )

        self._state = ConnectionState.CLOSED
        self._session: Optional[Session] = None

        # Guards open/close transitions
        self._lifecycle_lock = threading.Lock()
        # Guards the session handle for the duration of each publish
        self._session_lock = threading.RLock()

        self._stats_lock = threading.Lock()
        self._stats = {
            "messages_sent": 0,
            "pictures_sent": 0,
            "videos_sent": 0,
            "publish_errors": 0,
            "commands_received": 0,
        }

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def heartbeat_ms(self) -> int:
        return self._pipeline.heartbeat_ms

    @property
    def pipeline(self) -> HeartbeatPipeline:
        return self._pipeline

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def stats(self) -> Dict[str, int]:
        with self._stats_lock:
            stats = self._stats.copy()
        # Pipeline sends go through _publish_raw, already counted here
        for key, value in self._pipeline.stats.items():
            stats.setdefault(key, value)
        return stats

    @property
    def is_connected(self) -> bool:
        session = self._session
        return session is not None and session.is_connected

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        """Replace the inbound command handler."""
        self._message_handler = handler

    def _count(self, key: str) -> None:
        with self._stats_lock:
            self._stats[key] += 1

    # Lifecycle

    def open(self, reconnect: bool = True) -> None:
        """
        Open the connection to the platform.

        Args:
            reconnect: Reconnect automatically after connection loss

        Raises:
            ConnectError: If credentials were refused or the handshake
                failed; the publisher stays closed
        """
        with self._lifecycle_lock:
            if self._state == ConnectionState.OPEN:
                logger.warning("Publisher already open")
                return

            self._state = ConnectionState.OPENING
            options = SessionOptions(
                url=self.url,
                credentials=self.credentials,
                keep_alive=KEEP_ALIVE_SECONDS,
                clean_session=True,
                auto_reconnect=reconnect,
            )

            session: Optional[Session] = None
            try:
                session = self._session_factory()
                session.connect(options)
                session.subscribe(self._router.device_command_topic(), self._on_message)
            except Exception as e:
                logger.error(f"Failed to open connection for {self.credentials.client_id}: {e}")
                if session is not None:
                    self._teardown(session)
                self._state = ConnectionState.CLOSED
                if isinstance(e, ConnectError):
                    raise
                raise ConnectError(f"Failed to open connection: {e}") from e

            with self._session_lock:
                self._session = session
            self._pipeline.start()
            self._state = ConnectionState.OPEN

            logger.info(
                f"Opened {self.credentials.client_id} on {self.url} "
                f"(heartbeat={self.heartbeat_ms}ms, reconnect={reconnect})"
            )

    def close(self) -> None:
        """
        Close the connection.

        Stops the heartbeat pipeline first, then disconnects the
        session. Disconnect failures are logged, never raised. Calling
        close() on a closed publisher does nothing.
        """
        with self._lifecycle_lock:
            if self._state == ConnectionState.CLOSED:
                return

            self._state = ConnectionState.CLOSING
            self._pipeline.stop(timeout=POLL_INTERVAL + PUBLISH_TIMEOUT_SECONDS)

            with self._session_lock:
                session, self._session = self._session, None

            if session is not None:
                self._teardown(session)

            self._state = ConnectionState.CLOSED
            logger.info(f"Closed {self.credentials.client_id}")

    def _teardown(self, session: Session) -> None:
        """Disconnect gracefully, force if needed, then release the handle."""
        try:
            clean = session.disconnect(DISCONNECT_TIMEOUT_SECONDS)
        except Exception as e:
            logger.warning(f"Graceful disconnect failed: {e}")
            clean = False

        if not clean or session.is_connected:
            try:
                session.force_disconnect()
            except Exception as e:
                logger.warning(f"Forced disconnect failed: {e}")

        try:
            session.close()
        except Exception as e:
            logger.warning(f"Session close failed: {e}")

    # Sending

    def _publish_raw(self, topic: str, payload: bytes, qos: int, retained: bool) -> None:
        with self._session_lock:
            if self._session is None:
                raise PublishError("Publisher not connected", topic)
            try:
                self._session.publish(topic, payload, qos, retained)
            except PublishError:
                self._count("publish_errors")
                raise

    def _publish_fields(
        self,
        message_id: int,
        fields: Optional[Mapping[str, Any]],
        qos: int,
        retained: bool,
    ) -> None:
        topic = self._router.message_topic(message_id)
        self._publish_raw(topic, self._codec.encode_fields(fields), qos, retained)

    def send_message(
        self,
        message_id: int,
        fields: Optional[Mapping[str, Any]],
        qos: int = QoS.AT_MOST_ONCE,
        retained: bool = False,
    ) -> None:
        """
        Send a structured message.

        Args:
            message_id: Message ID defined on the platform
            fields: Message fields, encoded as a JSON object
            qos: 0 at most once, 1 at least once, 2 exactly once
            retained: Persist on the broker

        Raises:
            PublishError: If the transport rejected the publish
        """
        self._publish_fields(message_id, fields, qos, retained)
        self._count("messages_sent")
        logger.debug(f"Sent message id:{message_id} {dict(fields or {})}")

    def send_picture(
        self,
        camera_id: str,
        live: bool,
        format: str,
        data: bytes,
        qos: int = QoS.AT_MOST_ONCE,
        retained: bool = False,
    ) -> None:
        """
        Send an image captured from a camera or uploaded from storage.

        Args:
            camera_id: Camera identifier; "/" is replaced with "_"
            live: True to broadcast live, False to store for later
            format: Image format, e.g. png, jpg, bmp
            data: Raw image bytes
            qos: MQTT QoS
            retained: Persist on the broker

        Raises:
            PublishError: If the transport rejected the publish
        """
        topic = self._router.snapshot_topic(camera_id, live, format)
        logger.info(f"Sending image size: {len(data)}, topic: {topic}")
        self._publish_raw(topic, bytes(data), qos, retained)
        self._count("pictures_sent")

    def send_video(
        self,
        camera_id: str,
        live: bool,
        format: str,
        data: bytes,
        qos: int = QoS.AT_MOST_ONCE,
        retained: bool = False,
    ) -> None:
        """
        Send a video captured from a camera or uploaded from storage.

        Args:
            camera_id: Camera identifier; "/" is replaced with "_"
            live: True to broadcast live, False to store for later
            format: Video format, e.g. h264, mp4
            data: Raw video bytes
            qos: MQTT QoS
            retained: Persist on the broker

        Raises:
            PublishError: If the transport rejected the publish
        """
        topic = self._router.stream_topic(camera_id, live, format)
        logger.info(f"Sending video size: {len(data)}, topic: {topic}")
        self._publish_raw(topic, bytes(data), qos, retained)
        self._count("videos_sent")

    def acknowledge(self, correlation_id: int, acked: bool) -> bool:
        """
        Queue an acknowledgment for an inbound command.

        Never blocks; the heartbeat pipeline delivers it best-effort.

        Returns:
            False if the ack queue was full and the ack was dropped
        """
        return self._pipeline.acknowledge(correlation_id, acked)

    def _send_pipeline_message(self, message: Message) -> None:
        if message.is_ping:
            logger.debug("Sending ping")
        else:
            logger.info(f"Sending ack {message.fields}")
        self._publish_fields(message.message_id, message.fields, message.qos, message.retained)

    # Inbound

    def _on_message(self, topic: str, payload: bytes) -> None:
        """Hand an inbound command to the application, untouched."""
        self._count("commands_received")

        handler = self._message_handler
        if handler is None:
            logger.debug(f"No message handler, dropping command on {topic}")
            return

        try:
            handler(topic, payload)
        except Exception as e:
            logger.error(f"Message handler error: {e}", exc_info=True)
