"""
Boodskap device client.

Device-side MQTT protocol layer for the Boodskap IoT platform:
topic derivation, connection lifecycle and the heartbeat/ack pipeline.
"""

__version__ = "0.1.0"

from boodskap.config import Config, load_config
from boodskap.device.publisher import MQTTPublisher
from boodskap.protocol.messages import Identity

__all__ = [
    "__version__",
    "Config",
    "load_config",
    "MQTTPublisher",
    "Identity",
]
