"""
In-process message broker for loopback sessions.

Routes raw payloads between in-process clients with MQTT topic
filters, so a device client can run end to end without a network.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from paho.mqtt.client import topic_matches_sub


logger = logging.getLogger(__name__)


# Receives (topic, payload)
TopicCallback = Callable[[str, bytes], None]


@dataclass(frozen=True)
class TopicSubscription:
    """One client's interest in a topic filter."""
    subscriber_id: str
    topic_filter: str
    callback: TopicCallback


class MessageBroker:
    """
    Minimal MQTT-like broker living in the current process.

    Supports:
    - "+" and "#" topic filters, matched the way paho matches them
    - retained payloads, replayed to new matching subscriptions
    - an optional user/password table checked on connect
    - an ``accepting`` switch that makes sessions refuse publishes

    Delivery is synchronous on the publishing thread; a failing
    callback is logged and does not affect other subscribers.

    Example:
        broker = MessageBroker(users={"DEV_DOMAIN": "API_KEY"})

        # Observe everything a device publishes
        broker.subscribe("observer", "/DOMAIN/device/+/msgs/#", callback)

        # Deliver a command to a device
        broker.publish("/DOMAIN/device/cam1/cmds", b'{"correlationId": 7}')
    """

    def __init__(
        self,
        enable_retained: bool = True,
        users: Optional[Dict[str, str]] = None,
    ):
        """
        Args:
            enable_retained: Keep the last retained payload per topic
            users: user_name -> password map; None accepts any credentials
        """
        self._enable_retained = enable_retained
        self._users = users
        self._subscriptions: List[TopicSubscription] = []
        self._retained: Dict[str, bytes] = {}
        self._lock = threading.RLock()

        # Sessions refuse publishes while False
        self.accepting = True

        self._stats = {
            "messages_published": 0,
            "messages_delivered": 0,
        }

    @property
    def stats(self) -> Dict[str, int]:
        with self._lock:
            stats = self._stats.copy()
            stats["subscriptions"] = len(self._subscriptions)
            stats["retained"] = len(self._retained)
        return stats

    def authenticate(self, user_name: Optional[str], password: Optional[str]) -> bool:
        """Check connect credentials against the configured users."""
        if self._users is None:
            return True
        return user_name in self._users and self._users[user_name] == password

    def subscribe(self, subscriber_id: str, topic_filter: str, callback: TopicCallback) -> None:
        """Register a callback for every topic matching topic_filter."""
        subscription = TopicSubscription(subscriber_id, topic_filter, callback)
        with self._lock:
            self._subscriptions.append(subscription)
            retained = [
                (topic, payload) for topic, payload in self._retained.items()
                if topic_matches_sub(topic_filter, topic)
            ]
        logger.debug(f"Subscribed {subscriber_id} to {topic_filter}")

        for topic, payload in retained:
            self._deliver(subscription, topic, payload)

    def unsubscribe(self, subscriber_id: str, topic_filter: Optional[str] = None) -> int:
        """
        Drop a subscriber's subscriptions.

        Args:
            subscriber_id: Subscriber to remove
            topic_filter: Only this filter (None = all of them)

        Returns:
            Number of subscriptions removed
        """
        with self._lock:
            kept = [
                s for s in self._subscriptions
                if s.subscriber_id != subscriber_id
                or (topic_filter is not None and s.topic_filter != topic_filter)
            ]
            removed = len(self._subscriptions) - len(kept)
            self._subscriptions = kept
        return removed

    def publish(self, topic: str, payload: bytes, retain: bool = False) -> int:
        """
        Publish a payload to every matching subscription.

        Returns:
            Number of subscriptions the payload was delivered to
        """
        with self._lock:
            self._stats["messages_published"] += 1
            if retain and self._enable_retained:
                self._retained[topic] = payload
            targets = [s for s in self._subscriptions if topic_matches_sub(s.topic_filter, topic)]

        delivered = sum(1 for s in targets if self._deliver(s, topic, payload))

        with self._lock:
            self._stats["messages_delivered"] += delivered
        return delivered

    def _deliver(self, subscription: TopicSubscription, topic: str, payload: bytes) -> bool:
        try:
            subscription.callback(topic, payload)
            return True
        except Exception as e:
            logger.error(f"Delivery error to {subscription.subscriber_id}: {e}")
            return False
