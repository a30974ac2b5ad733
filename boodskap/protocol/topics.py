"""
Topic derivation for a device on the Boodskap platform.

Topic Structure:
    /{domain}/device/{device}/cmds                                  - Commands to device
    /{domain}/device/{device}/msgs/{message_id}/{model}/{firmware}  - Structured messages
    /{domain}/device/{device}/snap/{live|offline}/{camera}/{format} - Pictures
    /{domain}/device/{device}/stream/{live|offline}/{camera}/{format} - Video
"""

from __future__ import annotations

from enum import Enum
from typing import List, Optional

from boodskap.protocol.messages import Identity


LIVE = "live"
OFFLINE = "offline"


class TopicKind(str, Enum):
    """Classification of a topic belonging to this device."""
    COMMAND = "command"
    MESSAGE = "message"
    SNAPSHOT = "snapshot"
    STREAM = "stream"
    UNKNOWN = "unknown"


_KIND_SEGMENTS = {
    "cmds": TopicKind.COMMAND,
    "msgs": TopicKind.MESSAGE,
    "snap": TopicKind.SNAPSHOT,
    "stream": TopicKind.STREAM,
}


def sanitize_segment(value: str) -> str:
    """Make a value safe to embed as a single topic level."""
    return value.replace("/", "_")


class TopicRouter:
    """
    Maps message kinds to topic strings for one device identity.

    Holds no state besides the (immutable) identity, so the same
    inputs always produce the same topic.

    Example:
        router = TopicRouter(Identity("DOMAIN", "cam1", "RaspCAM", "1.0.0"))
        router.device_command_topic()   # "/DOMAIN/device/cam1/cmds"
        router.message_topic(100)       # "/DOMAIN/device/cam1/msgs/100/RaspCAM/1.0.0"
    """

    def __init__(self, identity: Identity):
        self._identity = identity
        self._base = f"/{identity.domain_key}/device/{identity.device_id}"

    @property
    def identity(self) -> Identity:
        return self._identity

    def device_command_topic(self) -> str:
        """The single topic the device subscribes to for commands."""
        return f"{self._base}/cmds"

    def message_topic(self, message_id: int) -> str:
        """Topic for an outbound structured message."""
        return (
            f"{self._base}/msgs/{int(message_id)}/"
            f"{self._identity.device_model}/{self._identity.firmware_version}"
        )

    def snapshot_topic(self, camera_id: str, live: bool, format: str) -> str:
        """Topic for a picture captured by a camera."""
        return self._media_topic("snap", camera_id, live, format)

    def stream_topic(self, camera_id: str, live: bool, format: str) -> str:
        """Topic for a video captured by a camera."""
        return self._media_topic("stream", camera_id, live, format)

    def _media_topic(self, kind: str, camera_id: str, live: bool, format: str) -> str:
        mode = LIVE if live else OFFLINE
        return f"{self._base}/{kind}/{mode}/{sanitize_segment(str(camera_id))}/{format}"

    # Inbound classification

    def _device_levels(self, topic: str) -> Optional[List[str]]:
        """Topic levels after the device prefix, or None if not ours."""
        prefix = self._base + "/"
        if not topic.startswith(prefix):
            return None
        return topic[len(prefix):].split("/")

    def classify(self, topic: str) -> TopicKind:
        """
        Classify a topic belonging to this device.

        Args:
            topic: Full topic string

        Returns:
            The topic kind, UNKNOWN for foreign or malformed topics
        """
        levels = self._device_levels(topic)
        if not levels:
            return TopicKind.UNKNOWN

        kind = _KIND_SEGMENTS.get(levels[0], TopicKind.UNKNOWN)

        if kind == TopicKind.COMMAND:
            return kind if len(levels) == 1 else TopicKind.UNKNOWN
        if kind == TopicKind.MESSAGE:
            return kind if len(levels) == 4 and levels[1].lstrip("-").isdigit() else TopicKind.UNKNOWN
        if kind in (TopicKind.SNAPSHOT, TopicKind.STREAM):
            if len(levels) == 4 and levels[1] in (LIVE, OFFLINE):
                return kind
            return TopicKind.UNKNOWN
        return kind

    def is_command(self, topic: str) -> bool:
        """Whether a topic is this device's command topic."""
        return self.classify(topic) == TopicKind.COMMAND

    def parse_message_id(self, topic: str) -> Optional[int]:
        """Extract the message id from a message topic."""
        if self.classify(topic) != TopicKind.MESSAGE:
            return None
        return int(self._device_levels(topic)[1])
