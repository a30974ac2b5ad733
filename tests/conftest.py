"""
Shared fixtures for device client tests.
"""

import threading
import time

import pytest

from boodskap.network.broker import MessageBroker
from boodskap.protocol.messages import Identity


class Recorder:
    """Thread-safe (timestamp, topic, payload) recorder."""

    def __init__(self):
        self._lock = threading.Lock()
        self._items = []

    def __call__(self, topic, payload):
        with self._lock:
            self._items.append((time.monotonic(), topic, payload))

    @property
    def items(self):
        with self._lock:
            return list(self._items)

    def topics(self):
        return [topic for _, topic, _ in self.items]

    def wait_for(self, predicate, timeout=3.0):
        """Poll until predicate(items) is true or timeout expires."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate(self.items):
                return True
            time.sleep(0.01)
        return predicate(self.items)


@pytest.fixture
def identity():
    return Identity(
        domain_key="DOMAIN",
        device_id="cam1",
        device_model="RaspCAM",
        firmware_version="1.0.0",
    )


@pytest.fixture
def broker():
    return MessageBroker()


@pytest.fixture
def recorder():
    return Recorder()
