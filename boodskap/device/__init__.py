"""
Device-side publishers and the heartbeat/ack pipeline.
"""

from boodskap.device.heartbeat import HeartbeatPipeline
from boodskap.device.publisher import (
    ConnectionState,
    MQTTPublisher,
    Publisher,
)

__all__ = [
    "HeartbeatPipeline",
    "ConnectionState",
    "MQTTPublisher",
    "Publisher",
]
