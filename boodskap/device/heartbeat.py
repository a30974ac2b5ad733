"""
Heartbeat and acknowledgment pipeline.

A single background worker owns every ping and ack the device sends,
so they reach the wire strictly in order while callers only enqueue.
"""

from __future__ import annotations

import logging
import threading
import time
from queue import Queue, Empty, Full
from typing import Callable, Dict, Optional

from boodskap.errors import BoodskapError
from boodskap.protocol.messages import Message, PendingAck


logger = logging.getLogger(__name__)


# Upper bound on a single wait for the ack queue, in seconds
POLL_INTERVAL = 2.0

DEFAULT_QUEUE_SIZE = 1000

# Posted by stop() to wake a worker blocked on the queue
_WAKE = object()


PublishCallback = Callable[[Message], None]


class HeartbeatPipeline:
    """
    Background worker interleaving heartbeats with pending acks.

    Loop:
    1. Wait on the ack queue for at most POLL_INTERVAL, or less if the
       next heartbeat falls due sooner.
    2. An ack arrived: publish it at once.
    3. The wait timed out: publish a ping if nothing was sent for the
       heartbeat interval.

    Acks always win over pings. Publish failures are logged and the
    worker keeps running; a failed ack is not retried. The ack queue is
    bounded and drops the newest ack when full.

    Example:
        pipeline = HeartbeatPipeline(publish=send, heartbeat_ms=30000)
        pipeline.start()
        pipeline.acknowledge(42, True)
        pipeline.stop()
    """

    def __init__(
        self,
        publish: PublishCallback,
        heartbeat_ms: int,
        max_queue_size: int = DEFAULT_QUEUE_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the pipeline.

        Args:
            publish: Sends one message; may raise on transport failure
            heartbeat_ms: Maximum silence before a ping is sent
            max_queue_size: Ack queue capacity (0 = unbounded)
            clock: Monotonic time source in seconds
        """
        if heartbeat_ms <= 0:
            raise ValueError(f"heartbeat_ms must be positive, got {heartbeat_ms}")

        self._publish = publish
        self._heartbeat = heartbeat_ms / 1000.0
        self._clock = clock
        self._acks: Queue = Queue(maxsize=max_queue_size)

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self._stats_lock = threading.Lock()
        self._stats = {
            "pings_sent": 0,
            "acks_sent": 0,
            "acks_dropped": 0,
            "publish_errors": 0,
        }

    @property
    def heartbeat_ms(self) -> int:
        return int(self._heartbeat * 1000)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def stats(self) -> Dict[str, int]:
        with self._stats_lock:
            return self._stats.copy()

    def pending_count(self) -> int:
        """Number of acks waiting to be sent."""
        return self._acks.qsize()

    def _count(self, key: str) -> None:
        with self._stats_lock:
            self._stats[key] += 1

    def acknowledge(self, correlation_id: int, acked: bool) -> bool:
        """
        Queue an acknowledgment without blocking.

        Safe to call from any thread, including the transport's
        inbound message callback.

        Returns:
            False if the queue was full and the ack was dropped
        """
        try:
            self._acks.put_nowait(PendingAck(int(correlation_id), bool(acked)))
            return True
        except Full:
            self._count("acks_dropped")
            logger.warning(f"Ack queue full, dropping ack for {correlation_id}")
            return False

    def start(self) -> None:
        """Start the worker thread."""
        thread = self._thread
        if thread is not None and thread.is_alive():
            if not self._stop_event.is_set():
                logger.warning("Heartbeat pipeline already running")
                return
            # A stopped worker may still be finishing its last publish
            logger.debug("Waiting for previous heartbeat worker to exit")
            thread.join()

        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            args=(self._stop_event,),
            name="boodskap-heartbeat",
            daemon=True,
        )
        self._thread.start()
        logger.debug(f"Heartbeat pipeline started (heartbeat={self.heartbeat_ms}ms)")

    def stop(self, timeout: Optional[float] = None) -> bool:
        """
        Request cancellation and wait for the worker to exit.

        Args:
            timeout: Seconds to wait (None = until the worker exits)

        Returns:
            True if the worker is no longer running
        """
        thread = self._thread
        if thread is None:
            return True

        self._stop_event.set()
        try:
            self._acks.put_nowait(_WAKE)
        except Full:
            pass  # worker wakes on its own within POLL_INTERVAL

        if thread is not threading.current_thread():
            thread.join(timeout)

        if thread.is_alive():
            logger.error("Heartbeat worker did not stop in time")
            return False

        self._thread = None
        logger.debug("Heartbeat pipeline stopped")
        return True

    def _run(self, stop_event: threading.Event) -> None:
        last_sent: Optional[float] = None
        last_failure: Optional[float] = None

        while not stop_event.is_set():
            timeout = self._wait_timeout(last_sent, last_failure)
            try:
                if timeout > 0:
                    item = self._acks.get(timeout=timeout)
                else:
                    item = self._acks.get_nowait()
            except Empty:
                item = None

            if item is _WAKE:
                continue

            # An ack already taken off the queue is sent even when stopping
            if item is not None:
                if self._send(item.to_message()):
                    self._count("acks_sent")
                    last_sent = self._clock()
                continue

            if stop_event.is_set():
                break

            now = self._clock()
            if last_sent is not None and now - last_sent < self._heartbeat:
                continue
            if last_failure is not None and now - last_failure < POLL_INTERVAL:
                continue

            if self._send(Message.ping()):
                self._count("pings_sent")
                last_sent = self._clock()
                last_failure = None
            else:
                last_failure = self._clock()

    def _wait_timeout(self, last_sent: Optional[float], last_failure: Optional[float]) -> float:
        """Seconds until the next ping is due, capped at POLL_INTERVAL."""
        now = self._clock()
        due = 0.0 if last_sent is None else last_sent + self._heartbeat - now
        if last_failure is not None:
            due = max(due, last_failure + POLL_INTERVAL - now)
        return min(max(due, 0.0), POLL_INTERVAL)

    def _send(self, message: Message) -> bool:
        try:
            self._publish(message)
            return True
        except BoodskapError as e:
            self._count("publish_errors")
            kind = "ping" if message.is_ping else f"ack {message.fields}"
            logger.error(f"Failed to send {kind}: {e}")
        except Exception as e:
            self._count("publish_errors")
            logger.error(f"Unexpected error in heartbeat pipeline: {e}", exc_info=True)
        return False
