"""
Exception hierarchy for the device client.

Connection, publish and teardown failures each have their own type so
callers can tell a failed handshake from a rejected publish.
"""

from __future__ import annotations

from typing import Optional


class BoodskapError(Exception):
    """Base exception for all device client errors."""


class ConnectError(BoodskapError):
    """Credential negotiation or connect handshake failed."""

    def __init__(self, message: str, reason_code: Optional[int] = None):
        super().__init__(message)
        self.reason_code = reason_code


class PublishError(BoodskapError):
    """The transport rejected a publish."""

    def __init__(self, message: str, topic: Optional[str] = None):
        super().__init__(message)
        self.topic = topic


class DisconnectError(BoodskapError):
    """Graceful or forced disconnect failed."""


class ConfigError(BoodskapError):
    """Configuration file could not be loaded or validated."""
