"""
Configuration management for Boodskap devices.

Loads YAML configuration files and provides typed access to settings.
"""

from pathlib import Path
from typing import Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from boodskap.errors import ConfigError
from boodskap.protocol.messages import Identity


class DeviceConfig(BaseModel):
    """Device identity and platform credentials."""
    domain_key: str = Field(default="", description="Domain key from the Boodskap dashboard")
    api_key: str = Field(default="", description="API key from the Boodskap dashboard")
    device_id: str = Field(default="device", description="Device id, e.g. MyCamera")
    device_model: str = Field(default="generic", description="Device model, e.g. RaspCAM")
    firmware_version: str = Field(default="1.0.0", description="Firmware version")


class MQTTConfig(BaseModel):
    """Configuration for the MQTT connection."""
    url: str = Field(default="tcp://mqtt.boodskap.io", description="Broker URL")
    heartbeat_ms: int = Field(default=30000, gt=0, description="Heartbeat interval in milliseconds")
    auto_reconnect: bool = Field(default=True, description="Reconnect after connection loss")
    ack_queue_size: int = Field(default=1000, ge=0, description="Pending ack capacity (0 = unbounded)")
    default_qos: int = Field(default=0, ge=0, le=2, description="QoS for CLI sends")


class LoggingConfig(BaseModel):
    """Configuration for logging."""
    level: str = Field(default="INFO", description="Log level")
    format: str = Field(
        default="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        description="Log format"
    )


class Config(BaseModel):
    """Root configuration for a Boodskap device."""
    device: DeviceConfig = Field(default_factory=DeviceConfig)
    mqtt: MQTTConfig = Field(default_factory=MQTTConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def identity(self) -> Identity:
        """Build the device identity from the device section."""
        return Identity(
            domain_key=self.device.domain_key,
            device_id=self.device.device_id,
            device_model=self.device.device_model,
            firmware_version=self.device.firmware_version,
        )


def load_config(config_path: Optional[Union[str, Path]] = None) -> Config:
    """
    Load configuration from a YAML file.

    Args:
        config_path: Path to the YAML config file. If None, uses default config.

    Returns:
        Config object with loaded settings.

    Raises:
        ConfigError: If the file is not valid YAML or fails validation.
    """
    if config_path is None:
        # Use default config shipped with the repository
        config_path = Path(__file__).parent.parent / "configs" / "default.yaml"

    config_path = Path(config_path)

    if not config_path.exists():
        # Return default config if file doesn't exist
        return Config()

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
        return Config(**data)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
    except (ValidationError, TypeError) as e:
        raise ConfigError(f"Invalid configuration in {config_path}: {e}") from e


def save_config(config: Config, config_path: Union[str, Path]) -> None:
    """
    Save configuration to a YAML file.

    Args:
        config: Config object to save.
        config_path: Path to save the YAML file.
    """
    config_path = Path(config_path)
    config_path.parent.mkdir(parents=True, exist_ok=True)

    with open(config_path, "w") as f:
        yaml.dump(config.model_dump(), f, default_flow_style=False, sort_keys=False)
