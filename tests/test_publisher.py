"""
Unit tests for MQTTPublisher over a loopback session.
"""

import json
import time
from unittest.mock import Mock

import pytest

from boodskap.device.heartbeat import POLL_INTERVAL
from boodskap.device.publisher import ConnectionState, MQTTPublisher
from boodskap.errors import ConnectError, DisconnectError, PublishError
from boodskap.network.broker import MessageBroker
from boodskap.network.transport import LoopbackSession, SessionState
from boodskap.protocol.handler import CommandProcessor


PING_TOPIC = "/DOMAIN/device/cam1/msgs/1/RaspCAM/1.0.0"
ACK_TOPIC = "/DOMAIN/device/cam1/msgs/2/RaspCAM/1.0.0"
CMD_TOPIC = "/DOMAIN/device/cam1/cmds"


def make_publisher(identity, broker, heartbeat_ms=60000, handler=None, api_key="key"):
    return MQTTPublisher(
        url="tcp://localhost",
        heartbeat_ms=heartbeat_ms,
        identity=identity,
        api_key=api_key,
        message_handler=handler,
        session_factory=lambda: LoopbackSession(broker),
    )


def make_mock_publisher(identity, session):
    return MQTTPublisher(
        url="tcp://localhost",
        heartbeat_ms=60000,
        identity=identity,
        api_key="key",
        session_factory=lambda: session,
    )


@pytest.fixture
def outbound(broker, recorder):
    """Records everything the device publishes."""
    broker.subscribe("observer", "/DOMAIN/device/cam1/msgs/#", recorder)
    broker.subscribe("observer", "/DOMAIN/device/cam1/snap/#", recorder)
    broker.subscribe("observer", "/DOMAIN/device/cam1/stream/#", recorder)
    return recorder


class TestLifecycle:
    """Tests for open/close."""

    def test_initial_state(self, identity, broker):
        """Test a new publisher is closed."""
        publisher = make_publisher(identity, broker)
        assert publisher.state == ConnectionState.CLOSED
        assert publisher.is_connected is False
        assert publisher.credentials.client_id == "DEV_cam1"
        assert publisher.credentials.user_name == "DEV_DOMAIN"

    def test_open_close(self, identity, broker):
        """Test open and close."""
        publisher = make_publisher(identity, broker)

        publisher.open()
        assert publisher.is_connected is True
        assert publisher.state == ConnectionState.OPEN
        assert publisher.pipeline.is_running is True

        publisher.close()
        assert publisher.is_connected is False
        assert publisher.state == ConnectionState.CLOSED
        assert publisher.pipeline.is_running is False

    def test_close_is_idempotent(self, identity, broker):
        """Test close() on a closed publisher is a no-op."""
        publisher = make_publisher(identity, broker)
        publisher.close()

        publisher.open()
        publisher.close()
        publisher.close()

        assert publisher.state == ConnectionState.CLOSED

    def test_session_options(self, identity, broker):
        """Test the options handed to the session."""
        publisher = make_publisher(identity, broker)
        publisher.open(reconnect=False)
        try:
            options = publisher.session.options
            assert options.keep_alive == 30
            assert options.clean_session is True
            assert options.auto_reconnect is False
            assert options.credentials.client_id == "DEV_cam1"
            assert options.credentials.user_name == "DEV_DOMAIN"
            assert options.credentials.password == "key"
        finally:
            publisher.close()

    def test_open_refused(self, identity):
        """Test refused credentials leave the publisher closed."""
        broker = MessageBroker(users={"DEV_DOMAIN": "right"})
        publisher = make_publisher(identity, broker, api_key="wrong")

        with pytest.raises(ConnectError):
            publisher.open()

        assert publisher.state == ConnectionState.CLOSED
        assert publisher.is_connected is False
        assert publisher.pipeline.is_running is False
        assert publisher.session is None

    def test_open_invalid_url(self, identity):
        """Test a malformed broker URL fails the open and leaves the publisher closed."""
        publisher = MQTTPublisher(
            url="tcp://mqtt.example.com:99999",
            heartbeat_ms=60000,
            identity=identity,
            api_key="key",
        )

        with pytest.raises(ConnectError):
            publisher.open()

        assert publisher.state == ConnectionState.CLOSED
        assert publisher.pipeline.is_running is False
        assert publisher.session is None

    def test_open_unexpected_error_tears_down(self, identity, broker):
        """Test a non-connect failure after connecting releases the session."""
        sessions = []

        class RejectingSession(LoopbackSession):
            def subscribe(self, topic, on_message, qos=1):
                raise ValueError("bad topic filter")

        def factory():
            sessions.append(RejectingSession(broker))
            return sessions[-1]

        publisher = MQTTPublisher(
            url="tcp://localhost",
            heartbeat_ms=60000,
            identity=identity,
            api_key="key",
            session_factory=factory,
        )

        with pytest.raises(ConnectError) as exc_info:
            publisher.open()

        assert isinstance(exc_info.value.__cause__, ValueError)
        assert publisher.state == ConnectionState.CLOSED
        assert publisher.pipeline.is_running is False
        assert sessions[0].is_connected is False
        assert sessions[0].state == SessionState.CLOSED

    def test_session_factory_error(self, identity):
        """Test a failing session factory surfaces as ConnectError."""
        publisher = MQTTPublisher(
            url="tcp://localhost",
            heartbeat_ms=60000,
            identity=identity,
            api_key="key",
            session_factory=Mock(side_effect=RuntimeError("no transport")),
        )

        with pytest.raises(ConnectError):
            publisher.open()
        assert publisher.state == ConnectionState.CLOSED

    def test_open_retry_after_failure(self, identity):
        """Test open() can be retried after a failure."""
        users = {"DEV_DOMAIN": "old"}
        broker = MessageBroker(users=users)
        publisher = make_publisher(identity, broker, api_key="key")

        with pytest.raises(ConnectError):
            publisher.open()

        users["DEV_DOMAIN"] = "key"
        publisher.open()
        try:
            assert publisher.is_connected is True
        finally:
            publisher.close()

    def test_open_twice(self, identity, broker):
        """Test a second open() keeps the existing session."""
        publisher = make_publisher(identity, broker)
        publisher.open()
        session = publisher.session
        try:
            publisher.open()
            assert publisher.session is session
        finally:
            publisher.close()

    def test_context_manager(self, identity, broker):
        """Test with-statement support."""
        with make_publisher(identity, broker) as publisher:
            assert publisher.is_connected is True
        assert publisher.is_connected is False

    def test_reconnect_after_loss(self, identity, broker):
        """Test the session reconnects when reconnect is on."""
        publisher = make_publisher(identity, broker)
        publisher.open(reconnect=True)
        try:
            publisher.session.simulate_connection_loss()
            assert publisher.is_connected is True
        finally:
            publisher.close()

    def test_no_reconnect_after_loss(self, identity, broker):
        """Test the session stays down when reconnect is off."""
        publisher = make_publisher(identity, broker)
        publisher.open(reconnect=False)
        try:
            publisher.session.simulate_connection_loss()
            assert publisher.is_connected is False
        finally:
            publisher.close()

    def test_disconnect_error_not_propagated(self, identity):
        """Test a failed disconnect forces the connection closed."""
        session = Mock()
        session.disconnect.side_effect = DisconnectError("socket gone")
        session.is_connected = True
        publisher = make_mock_publisher(identity, session)
        publisher.open()

        publisher.close()

        session.force_disconnect.assert_called_once()
        session.close.assert_called_once()
        assert publisher.state == ConnectionState.CLOSED

    def test_clean_disconnect_skips_force(self, identity):
        """Test a clean disconnect does not force."""
        session = Mock()
        session.disconnect.return_value = True
        session.is_connected = False
        publisher = make_mock_publisher(identity, session)
        publisher.open()

        publisher.close()

        session.disconnect.assert_called_once_with(3.0)
        session.force_disconnect.assert_not_called()
        session.close.assert_called_once()


class TestSending:
    """Tests for explicit sends."""

    def test_send_message(self, identity, broker, outbound):
        """Test structured message topic and payload."""
        publisher = make_publisher(identity, broker)
        publisher.open()
        try:
            publisher.send_message(100, {"temperature": 22.5, "unit": "C"}, qos=1)
        finally:
            publisher.close()

        sent = [(t, p) for _, t, p in outbound.items if t != PING_TOPIC]
        assert sent == [
            ("/DOMAIN/device/cam1/msgs/100/RaspCAM/1.0.0", b'{"temperature":22.5,"unit":"C"}'),
        ]

    def test_publish_shorthand(self, identity, broker, outbound):
        """Test publish() sends a QoS 0 message."""
        publisher = make_publisher(identity, broker)
        publisher.open()
        try:
            publisher.publish(7, {"on": True})
        finally:
            publisher.close()

        assert "/DOMAIN/device/cam1/msgs/7/RaspCAM/1.0.0" in outbound.topics()
        assert publisher.stats["messages_sent"] == 1

    def test_send_picture(self, identity, broker, outbound):
        """Test picture topic and raw payload."""
        publisher = make_publisher(identity, broker)
        publisher.open()
        try:
            publisher.send_picture("usb/0", True, "jpg", b"\xff\xd8jpeg")
        finally:
            publisher.close()

        media = [(t, p) for _, t, p in outbound.items if "/snap/" in t]
        assert media == [("/DOMAIN/device/cam1/snap/live/usb_0/jpg", b"\xff\xd8jpeg")]
        assert publisher.stats["pictures_sent"] == 1

    def test_send_video(self, identity, broker, outbound):
        """Test video topic and raw payload."""
        publisher = make_publisher(identity, broker)
        publisher.open()
        try:
            publisher.send_video("0", False, "mp4", b"\x00\x00mp4")
        finally:
            publisher.close()

        media = [(t, p) for _, t, p in outbound.items if "/stream/" in t]
        assert media == [("/DOMAIN/device/cam1/stream/offline/0/mp4", b"\x00\x00mp4")]

    def test_stats_count_application_sends(self, identity, broker, outbound):
        """Test messages_sent counts application messages, not pings or acks."""
        publisher = make_publisher(identity, broker)
        publisher.open()
        try:
            assert outbound.wait_for(lambda items: len(items) == 1, timeout=1.0)
            publisher.acknowledge(1, True)
            assert outbound.wait_for(
                lambda items: any(t == ACK_TOPIC for _, t, _ in items), timeout=2.0
            )
            publisher.send_message(100, {"a": 1})
        finally:
            publisher.close()

        stats = publisher.stats
        assert stats["messages_sent"] == 1
        assert stats["pings_sent"] >= 1
        assert stats["acks_sent"] == 1

    def test_send_when_closed(self, identity, broker):
        """Test sending on a closed publisher fails."""
        publisher = make_publisher(identity, broker)

        with pytest.raises(PublishError):
            publisher.send_message(100, {})
        with pytest.raises(PublishError):
            publisher.send_picture("0", True, "jpg", b"x")

    def test_publish_error_propagates(self, identity, broker):
        """Test transport failures reach the caller."""
        publisher = make_publisher(identity, broker)
        publisher.open()
        try:
            broker.accepting = False
            with pytest.raises(PublishError):
                publisher.send_message(100, {"a": 1})
            with pytest.raises(PublishError):
                publisher.send_video("0", True, "mp4", b"x")
            assert publisher.stats["publish_errors"] >= 2
            assert publisher.pipeline.is_running is True
        finally:
            publisher.close()


class TestHeartbeat:
    """Tests for the pipeline running inside an open publisher."""

    def test_periodic_pings(self, identity, broker, outbound):
        """Test pings reach the broker at the heartbeat interval."""
        publisher = make_publisher(identity, broker, heartbeat_ms=1000)
        publisher.open()
        time.sleep(3.5)
        publisher.close()

        pings = [(ts, p) for ts, t, p in outbound.items if t == PING_TOPIC]
        assert len(pings) >= 3
        assert all(p == b"{}" for _, p in pings)
        assert ACK_TOPIC not in outbound.topics()

        for (a, _), (b, _) in zip(pings, pings[1:]):
            assert b - a >= 0.99

    def test_acknowledge(self, identity, broker, outbound):
        """Test an ack reaches the broker."""
        publisher = make_publisher(identity, broker)
        publisher.open()
        try:
            assert outbound.wait_for(lambda items: len(items) == 1, timeout=1.0)
            assert publisher.acknowledge(42, True) is True

            assert outbound.wait_for(
                lambda items: any(t == ACK_TOPIC for _, t, _ in items), timeout=2.0
            )
        finally:
            publisher.close()

        acks = [p for _, t, p in outbound.items if t == ACK_TOPIC]
        assert [json.loads(p) for p in acks] == [{"correlationId": 42, "acked": 1}]
        assert outbound.topics() == [PING_TOPIC, ACK_TOPIC]

    def test_pipeline_survives_publish_failure(self, identity, broker, outbound):
        """Test the worker keeps running while the broker refuses."""
        publisher = make_publisher(identity, broker, heartbeat_ms=1000)
        broker.accepting = False
        publisher.open()
        try:
            time.sleep(0.3)
            assert publisher.pipeline.is_running is True
            assert publisher.stats["publish_errors"] >= 1

            broker.accepting = True
            assert outbound.wait_for(
                lambda items: any(t == PING_TOPIC for _, t, _ in items),
                timeout=POLL_INTERVAL + 1.0,
            )
        finally:
            publisher.close()

    def test_close_mid_wait(self, identity, broker, outbound):
        """Test close() returns promptly and stops all publishing."""
        publisher = make_publisher(identity, broker, heartbeat_ms=60000)
        publisher.open()
        assert outbound.wait_for(lambda items: len(items) == 1, timeout=1.0)

        start = time.monotonic()
        publisher.close()
        assert time.monotonic() - start < POLL_INTERVAL

        count = len(outbound.items)
        publisher.acknowledge(1, True)
        time.sleep(0.3)
        assert len(outbound.items) == count

    def test_worker_stops_before_disconnect(self, identity):
        """Test close() stops the worker before disconnecting, with no publish after."""
        session = Mock()
        session.is_connected = False
        publisher = make_mock_publisher(identity, session)
        seen = {}

        def disconnect(timeout):
            seen["running"] = publisher.pipeline.is_running
            seen["publishes"] = session.publish.call_count
            return True

        session.disconnect.side_effect = disconnect

        def wait_for_publishes(count):
            deadline = time.monotonic() + 2.0
            while session.publish.call_count < count and time.monotonic() < deadline:
                time.sleep(0.01)

        publisher.open()
        wait_for_publishes(1)
        publisher.acknowledge(3, True)
        wait_for_publishes(2)
        publisher.close()

        assert seen["running"] is False
        assert seen["publishes"] == session.publish.call_count == 2

        names = [name for name, _, _ in session.mock_calls]
        assert "publish" not in names[names.index("disconnect"):]


class TestInbound:
    """Tests for inbound command delivery."""

    def test_raw_delivery(self, identity, broker, recorder):
        """Test inbound commands reach the handler untouched."""
        publisher = make_publisher(identity, broker, handler=recorder)
        publisher.open()
        try:
            broker.publish(CMD_TOPIC, b"\x01raw")
        finally:
            publisher.close()

        assert [(t, p) for _, t, p in recorder.items] == [(CMD_TOPIC, b"\x01raw")]
        assert publisher.stats["commands_received"] == 1

    def test_other_devices_ignored(self, identity, broker, recorder):
        """Test commands for other devices are not delivered."""
        publisher = make_publisher(identity, broker, handler=recorder)
        publisher.open()
        try:
            broker.publish("/DOMAIN/device/other/cmds", b"x")
        finally:
            publisher.close()

        assert recorder.items == []

    def test_handler_error_contained(self, identity, broker):
        """Test handler exceptions do not break the session."""
        handler = Mock(side_effect=RuntimeError("boom"))
        publisher = make_publisher(identity, broker, handler=handler)
        publisher.open()
        try:
            broker.publish(CMD_TOPIC, b"x")
            assert publisher.is_connected is True
        finally:
            publisher.close()

        handler.assert_called_once_with(CMD_TOPIC, b"x")

    def test_command_processor_acks(self, identity, broker, outbound):
        """Test a processed command is acknowledged end to end."""
        processor = CommandProcessor()
        processor.on_command("reboot")(lambda cmd: True)

        publisher = make_publisher(identity, broker, handler=processor)
        processor.bind(publisher.acknowledge)
        publisher.open()
        try:
            broker.publish(CMD_TOPIC, b'{"correlationId": 9001, "command": "reboot"}')
            assert outbound.wait_for(
                lambda items: any(t == ACK_TOPIC for _, t, _ in items), timeout=2.0
            )
        finally:
            publisher.close()

        acks = [json.loads(p) for _, t, p in outbound.items if t == ACK_TOPIC]
        assert acks == [{"correlationId": 9001, "acked": 1}]
