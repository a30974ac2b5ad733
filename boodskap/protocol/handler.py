"""
Command processing for inbound platform commands.

Decodes command payloads, routes them to registered handlers and
acknowledges the outcome through the heartbeat pipeline.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from boodskap.protocol.codec import JSONCodec
from boodskap.protocol.messages import P_CORRELATION_ID


logger = logging.getLogger(__name__)


P_COMMAND = "command"


@dataclass
class Command:
    """A decoded inbound command."""
    topic: str
    name: str
    correlation_id: Optional[int] = None
    arguments: Dict[str, Any] = field(default_factory=dict)


# Type aliases
CommandHandler = Callable[[Command], bool]
AckCallback = Callable[[int, bool], Any]


class CommandProcessor:
    """
    Message processor for the device command topic.

    An instance is callable with ``(topic, payload)`` and can be handed
    straight to a publisher as its message handler. Each command with a
    correlation id is acknowledged exactly once: ``acked=1`` if its
    handler returned a truthy value, ``acked=0`` if it returned a falsy
    value, raised, or no handler was registered.

    Example:
        processor = CommandProcessor()

        @processor.on_command("reboot")
        def handle_reboot(cmd: Command) -> bool:
            schedule_reboot(cmd.arguments.get("delay", 0))
            return True

        publisher = MQTTPublisher(..., message_handler=processor)
        processor.bind(publisher.acknowledge)
    """

    def __init__(
        self,
        acknowledge: Optional[AckCallback] = None,
        codec: Optional[JSONCodec] = None,
    ):
        self._acknowledge = acknowledge
        self._codec = codec or JSONCodec()
        self._command_handlers: Dict[str, CommandHandler] = {}
        self._default_handler: Optional[CommandHandler] = None

        self._stats = {
            "commands_received": 0,
            "commands_accepted": 0,
            "commands_rejected": 0,
            "decode_errors": 0,
        }

    @property
    def stats(self) -> Dict[str, int]:
        return self._stats.copy()

    def bind(self, acknowledge: AckCallback) -> None:
        """Set the callable used to acknowledge processed commands."""
        self._acknowledge = acknowledge

    def on_command(self, command_name: str) -> Callable:
        """
        Decorator to register a command handler.

        Use "*" to register a handler for commands with no specific one.
        """
        def decorator(func: CommandHandler) -> CommandHandler:
            if command_name == "*":
                self._default_handler = func
            else:
                self._command_handlers[command_name] = func
            logger.debug(f"Registered command handler: {command_name}")
            return func
        return decorator

    def decode(self, topic: str, payload: bytes) -> Command:
        """Decode a raw command payload."""
        fields = self._codec.decode_fields(payload)
        correlation_id = fields.pop(P_CORRELATION_ID, None)
        name = str(fields.pop(P_COMMAND, ""))
        return Command(
            topic=topic,
            name=name,
            correlation_id=int(correlation_id) if correlation_id is not None else None,
            arguments=fields,
        )

    def __call__(self, topic: str, payload: bytes) -> None:
        self.process(topic, payload)

    def process(self, topic: str, payload: bytes) -> Optional[bool]:
        """
        Process a raw inbound command.

        Returns:
            The acknowledgment outcome, or None if the payload could
            not be decoded
        """
        self._stats["commands_received"] += 1

        try:
            command = self.decode(topic, payload)
        except (ValueError, TypeError) as e:
            self._stats["decode_errors"] += 1
            logger.warning(f"Undecodable command on {topic}: {e}")
            return None

        handler = self._command_handlers.get(command.name, self._default_handler)
        if handler is None:
            logger.warning(f"No handler for command: {command.name!r}")
            accepted = False
        else:
            try:
                accepted = bool(handler(command))
            except Exception as e:
                logger.error(f"Command handler error ({command.name!r}): {e}", exc_info=True)
                accepted = False

        self._stats["commands_accepted" if accepted else "commands_rejected"] += 1

        if command.correlation_id is not None:
            if self._acknowledge is None:
                logger.warning(f"No acknowledge target bound, dropping ack {command.correlation_id}")
            else:
                self._acknowledge(command.correlation_id, accepted)

        return accepted
