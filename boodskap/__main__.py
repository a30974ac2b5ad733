"""
Boodskap device CLI - connect a device and send messages.

Usage:
    python -m boodskap --config configs/device.yaml --duration 60
    python -m boodskap --message-id 100 --fields '{"temperature": 22.5}'
    python -m boodskap --picture snap.jpg --camera-id 0 --live
    python -m boodskap --loopback --duration 5
"""

import argparse
import json
import logging
import sys
import time
from pathlib import Path


def setup_logging(level: str = "INFO", fmt: str = None) -> None:
    """Configure logging for the application."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=fmt or "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )


def build_publisher(config, loopback: bool, message_handler=None):
    """Create a publisher from configuration."""
    from boodskap.device.publisher import MQTTPublisher
    from boodskap.network.broker import MessageBroker
    from boodskap.network.transport import LoopbackSession

    session_factory = None
    if loopback:
        broker = MessageBroker()
        session_factory = lambda: LoopbackSession(broker)

    return MQTTPublisher(
        url=config.mqtt.url,
        heartbeat_ms=config.mqtt.heartbeat_ms,
        identity=config.identity(),
        api_key=config.device.api_key,
        message_handler=message_handler,
        session_factory=session_factory,
        ack_queue_size=config.mqtt.ack_queue_size,
    )


def run(args: argparse.Namespace) -> int:
    """Open a device connection, perform the requested sends and wait."""
    from boodskap.config import load_config
    from boodskap.errors import BoodskapError
    from boodskap.protocol.handler import Command, CommandProcessor

    try:
        config = load_config(args.config)
    except BoodskapError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    setup_logging(args.log_level or config.logging.level, config.logging.format)
    logger = logging.getLogger(__name__)

    fields = None
    if args.message_id is not None:
        try:
            fields = json.loads(args.fields)
        except json.JSONDecodeError as e:
            logger.error(f"--fields is not valid JSON: {e}")
            return 2
        if not isinstance(fields, dict):
            logger.error("--fields must be a JSON object")
            return 2

    processor = CommandProcessor()

    @processor.on_command("*")
    def log_command(cmd: Command) -> bool:
        logger.info(f"Command received: {cmd.name!r} {cmd.arguments}")
        return True

    publisher = build_publisher(config, args.loopback, message_handler=processor)
    processor.bind(publisher.acknowledge)
    qos = config.mqtt.default_qos

    try:
        publisher.open(reconnect=config.mqtt.auto_reconnect)
    except BoodskapError as e:
        logger.error(f"Connection failed: {e}")
        return 1

    try:
        if args.message_id is not None:
            publisher.send_message(args.message_id, fields, qos=qos)

        if args.picture:
            data = Path(args.picture).read_bytes()
            fmt = args.format or Path(args.picture).suffix.lstrip(".") or "jpg"
            publisher.send_picture(args.camera_id, args.live, fmt, data, qos=qos)

        if args.video:
            data = Path(args.video).read_bytes()
            fmt = args.format or Path(args.video).suffix.lstrip(".") or "mp4"
            publisher.send_video(args.camera_id, args.live, fmt, data, qos=qos)

        logger.info(f"Connected, keeping heartbeat for {args.duration}s...")
        time.sleep(args.duration)

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except (BoodskapError, OSError) as e:
        logger.error(f"Send failed: {e}")
        return 1
    finally:
        publisher.close()
        logger.info(f"Publisher stats: {publisher.stats}")

    return 0


def main(argv=None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="boodskap",
        description="Boodskap device client - MQTT messaging with heartbeat",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python -m boodskap --config device.yaml --duration 60
    python -m boodskap --message-id 100 --fields '{"temperature": 22.5}'
    python -m boodskap --picture snap.jpg --camera-id 0 --live
    python -m boodskap --loopback --duration 5    No broker needed
        """,
    )

    parser.add_argument(
        "--config", "-c",
        type=str,
        help="Path to YAML configuration file",
    )
    parser.add_argument(
        "--duration", "-d",
        type=float,
        default=10.0,
        help="Seconds to stay connected (default: 10)",
    )
    parser.add_argument(
        "--loopback",
        action="store_true",
        help="Use an in-process broker instead of the network",
    )
    parser.add_argument(
        "--message-id", "-m",
        type=int,
        help="Send one structured message with this message id",
    )
    parser.add_argument(
        "--fields", "-f",
        type=str,
        default="{}",
        help="Message fields as a JSON object",
    )
    parser.add_argument(
        "--picture",
        type=str,
        help="Image file to send",
    )
    parser.add_argument(
        "--video",
        type=str,
        help="Video file to send",
    )
    parser.add_argument(
        "--camera-id",
        type=str,
        default="0",
        help="Camera id for --picture/--video (default: 0)",
    )
    parser.add_argument(
        "--format",
        type=str,
        help="Media format (default: file extension)",
    )
    parser.add_argument(
        "--live",
        action="store_true",
        help="Send media as live instead of offline",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: from config)",
    )

    args = parser.parse_args(argv)
    return run(args)


if __name__ == "__main__":
    sys.exit(main())
