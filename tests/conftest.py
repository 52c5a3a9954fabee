"""Shared fixtures for UART SMS Gateway tests."""
import queue
import threading
import time
from unittest.mock import Mock

import pytest
import serial

from sms_gateway.handlers import MessageRouter
from sms_gateway.status_cache import StatusCache
from sms_gateway.storage import MessageStore, PropertyStore, ScheduledTaskStore


def wait_for(predicate, timeout=3.0, interval=0.01):
    """Poll predicate until it is truthy or the timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


class FakeSerialPort:
    """
    In-memory stand-in for serial.Serial.

    Bytes queued with feed() are returned by read(); everything written is
    kept in .written. disconnect() simulates the device going away (EOF).
    """

    def __init__(self, port=None, reply=b"", **kwargs):
        self.port = port
        self.kwargs = kwargs
        self.reply = reply
        self.is_open = True
        self.written = []
        self.close_count = 0
        self.fail_writes = False
        self._incoming = queue.Queue()
        self._eof = False
        self._lock = threading.Lock()

    @property
    def in_waiting(self):
        return 0

    def feed(self, data: bytes):
        self._incoming.put(data)

    def disconnect(self):
        self._eof = True
        self.is_open = False

    def read(self, size=1):
        if self._eof:
            return b""
        if not self.is_open:
            raise serial.SerialException("Attempting to use a port that is not open")
        if self.reply:
            data, self.reply = self.reply, b""
            return data
        try:
            return self._incoming.get(timeout=0.02)
        except queue.Empty:
            return b""

    def write(self, data):
        if not self.is_open or self.fail_writes:
            raise serial.SerialException("write failed")
        with self._lock:
            self.written.append(data)
        return len(data)

    def close(self):
        self.close_count += 1
        self.is_open = False

    def written_text(self):
        with self._lock:
            return [d.decode("utf-8") for d in self.written]


@pytest.fixture
def message_store(tmp_path):
    return MessageStore(str(tmp_path))


@pytest.fixture
def task_store(tmp_path):
    return ScheduledTaskStore(str(tmp_path))


@pytest.fixture
def property_store(tmp_path):
    return PropertyStore(str(tmp_path))


@pytest.fixture
def status_cache():
    return StatusCache()


@pytest.fixture
def notifier():
    return Mock()


@pytest.fixture
def router(status_cache, message_store, notifier):
    return MessageRouter(status_cache, message_store, notifier)
