"""
MQTT session for Boodskap devices.

Provides real MQTT connectivity using paho-mqtt.
Supports plain TCP, TLS and websocket broker URLs.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Optional, Tuple
from urllib.parse import urlsplit

import paho.mqtt.client as mqtt

from boodskap.errors import ConnectError, DisconnectError, PublishError
from boodskap.network.transport import (
    InboundCallback,
    Session,
    SessionOptions,
    SessionState,
)
from boodskap.protocol.messages import QoS


logger = logging.getLogger(__name__)


# Time to wait for QoS 1/2 delivery confirmation
PUBLISH_TIMEOUT_SECONDS = 3.0

_SCHEMES = {
    # scheme: (transport, tls, default port)
    "tcp": ("tcp", False, 1883),
    "mqtt": ("tcp", False, 1883),
    "ssl": ("tcp", True, 8883),
    "tls": ("tcp", True, 8883),
    "mqtts": ("tcp", True, 8883),
    "ws": ("websockets", False, 80),
    "wss": ("websockets", True, 443),
}


def parse_broker_url(url: str) -> Tuple[str, int, str, bool, str]:
    """
    Split a broker URL into connection parameters.

    Args:
        url: Broker URL, e.g. "tcp://mqtt.boodskap.io" or "ssl://host:8883"

    Returns:
        (host, port, transport, use_tls, websocket path)

    Raises:
        ConnectError: On an unsupported scheme, missing host or bad port
    """
    parts = urlsplit(url if "://" in url else f"tcp://{url}")
    scheme = parts.scheme.lower()
    if scheme not in _SCHEMES:
        raise ConnectError(f"Unsupported broker URL scheme: {parts.scheme}")
    if not parts.hostname:
        raise ConnectError(f"Broker URL has no host: {url}")

    try:
        port = parts.port
    except ValueError as e:
        raise ConnectError(f"Invalid broker port in {url}: {e}") from e

    transport, use_tls, default_port = _SCHEMES[scheme]
    return parts.hostname, port or default_port, transport, use_tls, parts.path or "/mqtt"


def _is_failure(reason_code: Any) -> bool:
    if hasattr(reason_code, "is_failure"):
        return bool(reason_code.is_failure)
    return reason_code != 0


def _code_value(reason_code: Any) -> Optional[int]:
    value = getattr(reason_code, "value", reason_code)
    return value if isinstance(value, int) else None


class MQTTSession(Session):
    """
    paho-mqtt backed session.

    The paho network loop runs on its own thread (loop_start); inbound
    messages are delivered on that thread. Subscriptions are recorded
    and replayed after an automatic reconnect, since clean sessions
    drop them on the broker side.

    Example:
        session = MQTTSession()
        session.connect(SessionOptions(url="tcp://mqtt.boodskap.io", credentials=creds))
        session.subscribe("/DOMAIN/device/cam1/cmds", on_message)
        session.publish("/DOMAIN/device/cam1/msgs/100/RaspCAM/1.0.0", b"{}")
        session.disconnect(3.0)
        session.close()
    """

    def __init__(self) -> None:
        super().__init__()
        self._client: Optional[mqtt.Client] = None
        self._connected = threading.Event()
        self._disconnected = threading.Event()
        self._connect_rc: Any = None
        self._lock = threading.RLock()

        # Statistics
        self._stats = {
            "messages_sent": 0,
            "messages_received": 0,
            "reconnections": 0,
        }

    @property
    def stats(self) -> dict:
        return self._stats.copy()

    @property
    def is_connected(self) -> bool:
        return (
            self._state == SessionState.CONNECTED
            and self._client is not None
            and self._client.is_connected()
        )

    def connect(self, options: SessionOptions) -> None:
        if self._state == SessionState.CLOSED:
            raise ConnectError("Session handle already closed")

        host, port, transport, use_tls, ws_path = parse_broker_url(options.url)
        credentials = options.credentials

        self._client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=credentials.client_id,
            clean_session=options.clean_session,
            transport=transport,
            reconnect_on_failure=options.auto_reconnect,
        )
        self._client.username_pw_set(credentials.user_name, credentials.password)
        if use_tls:
            self._client.tls_set()
        if transport == "websockets":
            self._client.ws_set_options(path=ws_path)

        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

        self._connected.clear()
        self._disconnected.clear()
        self._connect_rc = None
        self._state = SessionState.CONNECTING

        logger.info(f"Connecting to MQTT broker: {host}:{port} as {credentials.client_id}")

        try:
            self._client.connect(host, port, options.keep_alive)
        except (OSError, ValueError) as e:
            self._state = SessionState.DISCONNECTED
            raise ConnectError(f"Failed to connect to MQTT broker: {e}") from e

        # Start network loop in background thread
        self._client.loop_start()

        if not self._connected.wait(options.connect_timeout):
            self._abort_connect()
            raise ConnectError(f"Connection timeout after {options.connect_timeout}s")

        if _is_failure(self._connect_rc):
            rc = self._connect_rc
            self._abort_connect()
            raise ConnectError(f"Connection refused: {rc}", reason_code=_code_value(rc))

    def _abort_connect(self) -> None:
        client = self._client
        self._state = SessionState.DISCONNECTED
        if client is not None:
            client.loop_stop()
            try:
                client.disconnect()
            except Exception as e:
                logger.debug(f"Disconnect after failed connect: {e}")

    def subscribe(
        self,
        topic: str,
        on_message: InboundCallback,
        qos: int = QoS.AT_LEAST_ONCE,
    ) -> None:
        if self._client is None:
            raise ConnectError("Cannot subscribe: session not connected")

        with self._lock:
            self._subscriptions[topic] = on_message

        result, mid = self._client.subscribe(topic, int(qos))
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise ConnectError(f"Failed to subscribe to {topic}: {mqtt.error_string(result)}")
        logger.debug(f"Subscribed to: {topic}")

    def _publish(self, topic: str, payload: bytes, qos: int, retained: bool) -> None:
        try:
            info = self._client.publish(topic, payload, qos=qos, retain=retained)
        except ValueError as e:
            raise PublishError(f"Invalid publish to {topic}: {e}", topic) from e

        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise PublishError(
                f"Failed to publish to {topic}: {mqtt.error_string(info.rc)}",
                topic,
            )

        if qos > 0:
            try:
                info.wait_for_publish(timeout=PUBLISH_TIMEOUT_SECONDS)
            except (RuntimeError, ValueError) as e:
                raise PublishError(f"Publish to {topic} not delivered: {e}", topic) from e
            if not info.is_published():
                raise PublishError(f"Publish to {topic} timed out", topic)

        self._stats["messages_sent"] += 1

    def disconnect(self, timeout: float) -> bool:
        if self._client is None:
            return True

        rc = self._client.disconnect()
        if rc not in (mqtt.MQTT_ERR_SUCCESS, mqtt.MQTT_ERR_NO_CONN):
            raise DisconnectError(f"Disconnect failed: {mqtt.error_string(rc)}")

        clean = rc == mqtt.MQTT_ERR_NO_CONN or self._disconnected.wait(timeout)
        self._client.loop_stop()
        if clean:
            self._state = SessionState.DISCONNECTED
        return clean

    def force_disconnect(self) -> None:
        if self._client is None:
            return

        logger.warning("Forcing MQTT disconnect")
        self._client.loop_stop()
        sock = self._client.socket()
        if sock is not None:
            try:
                sock.close()
            except OSError as e:
                logger.debug(f"Socket close failed: {e}")
        self._state = SessionState.DISCONNECTED

    def close(self) -> None:
        if self._client is not None:
            self._client.on_connect = None
            self._client.on_disconnect = None
            self._client.on_message = None
            self._client = None
        with self._lock:
            self._subscriptions.clear()
        self._state = SessionState.CLOSED

    # MQTT callbacks

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        """Handle connection event."""
        self._connect_rc = reason_code

        if _is_failure(reason_code):
            logger.error(f"Connection failed with code: {reason_code}")
        else:
            reconnect = self._state == SessionState.DISCONNECTED
            self._state = SessionState.CONNECTED
            self._disconnected.clear()

            if reconnect:
                self._stats["reconnections"] += 1
                logger.info("Reconnected to MQTT broker")
            else:
                logger.info("Connected to MQTT broker")

            # Resubscribe to topics
            with self._lock:
                for topic in self._subscriptions:
                    client.subscribe(topic, int(QoS.AT_LEAST_ONCE))

        self._connected.set()

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        """Handle disconnection event."""
        if self._state == SessionState.CONNECTED and _is_failure(reason_code):
            logger.warning(f"Unexpected disconnect ({reason_code})")
        if self._state != SessionState.CLOSED:
            self._state = SessionState.DISCONNECTED
        self._disconnected.set()

    def _on_message(self, client, userdata, msg):
        """Handle incoming message."""
        self._stats["messages_received"] += 1

        with self._lock:
            callbacks = [
                callback for pattern, callback in self._subscriptions.items()
                if mqtt.topic_matches_sub(pattern, msg.topic)
            ]

        for callback in callbacks:
            try:
                callback(msg.topic, msg.payload)
            except Exception as e:
                logger.error(f"Callback error: {e}")
