"""
Payload codec for structured messages.

Field mappings travel as compact UTF-8 JSON objects. Binary media is
sent as raw bytes and never passes through here.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Mapping, Optional

from boodskap.protocol.messages import Message


logger = logging.getLogger(__name__)


class JSONCodec:
    """
    JSON payload codec.

    Encodes a message's fields as a JSON object with no whitespace
    between tokens, preserving field order.
    """

    def __init__(self, ensure_ascii: bool = False):
        """
        Initialize JSON codec.

        Args:
            ensure_ascii: If True, escape non-ASCII characters
        """
        self._ensure_ascii = ensure_ascii

    def encode_fields(self, fields: Optional[Mapping[str, Any]]) -> bytes:
        """
        Encode a field mapping to JSON bytes.

        Args:
            fields: Message fields (None encodes as an empty object)

        Returns:
            UTF-8 encoded JSON bytes
        """
        json_str = json.dumps(
            dict(fields or {}),
            separators=(",", ":"),
            ensure_ascii=self._ensure_ascii,
            default=self._json_default,
        )
        return json_str.encode("utf-8")

    def encode(self, message: Message) -> bytes:
        """Encode a message's fields to JSON bytes."""
        return self.encode_fields(message.fields)

    def decode_fields(self, data: bytes) -> Dict[str, Any]:
        """
        Decode JSON bytes to a field mapping.

        Raises:
            ValueError: If the payload is not a JSON object
        """
        decoded = json.loads(data.decode("utf-8"))
        if not isinstance(decoded, dict):
            raise ValueError(f"Expected JSON object, got {type(decoded).__name__}")
        return decoded

    @staticmethod
    def _json_default(obj: Any) -> Any:
        """Default JSON serializer for non-standard types."""
        if isinstance(obj, (bytes, bytearray)):
            return obj.decode("utf-8", errors="replace")
        if hasattr(obj, "isoformat"):
            return obj.isoformat()
        if hasattr(obj, "__dict__"):
            return obj.__dict__
        return str(obj)
