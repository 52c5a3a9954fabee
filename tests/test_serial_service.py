"""
Tests for the serial link manager.

These tests verify:
- Connect / disconnect life cycle of the supervisor with fake ports
- Reader loop decoding and routing, status refresh polling
- Command sender behaviour with and without a connection
- Status overlay and the stale-send sweep
"""
import json
import threading
from unittest.mock import Mock

import pytest

from conftest import FakeSerialPort, wait_for
from sms_gateway.const import STATE_CONNECTED, STATE_STOPPED
from sms_gateway.errors import AutoDetectError, NoPortsError, NotConnectedError, WriteError
from sms_gateway.handlers import MessageRouter
from sms_gateway.models import StatusData, TextMessage, now_ms
from sms_gateway.serial_service import Connection, SerialService


class RecordingBackoff:
    """Backoff stand-in that records calls into a shared event list."""

    def __init__(self, events, delay=0.01):
        self.events = events
        self.delay = delay

    def duration(self):
        self.events.append("backoff")
        return self.delay

    def reset(self):
        self.events.append("reset")


class PortOpener:
    """open_port stand-in returning a fresh FakeSerialPort per call."""

    def __init__(self, events):
        self.events = events
        self.opened = []

    def __call__(self, port_name, timeout=None):
        self.events.append("open")
        port = FakeSerialPort(port=port_name, timeout=timeout)
        self.opened.append(port)
        return port


def decode_written(port):
    """Parse every command written to a fake port."""
    commands = []
    for text in port.written_text():
        assert text.startswith("CMD_START:") and text.endswith(":CMD_END\r\n")
        commands.append(json.loads(text[len("CMD_START:"):-len(":CMD_END\r\n")]))
    return commands


@pytest.fixture
def events():
    return []


@pytest.fixture
def opener(events):
    return PortOpener(events)


@pytest.fixture
def service(router, message_store, status_cache, events, opener):
    svc = SerialService(
        router,
        message_store,
        status_cache=status_cache,
        serial_port="/dev/ttyFAKE",
        refresh_interval=0.05,
        backoff=RecordingBackoff(events),
        list_ports=lambda: ["/dev/ttyFAKE"],
        open_port=opener,
    )
    yield svc
    svc.stop(timeout=2)


@pytest.fixture
def connected(service, opener):
    """Supervisor running with one open fake port."""
    service.start()
    assert wait_for(lambda: service.connected)
    return opener.opened[0]


class TestSupervisor:
    """Test the connection life cycle."""

    def test_connect_publishes_state(self, service, connected, events):
        assert service.state == STATE_CONNECTED
        assert service.connection_info() == ("/dev/ttyFAKE", True)
        assert events[:2] == ["open", "reset"]

    def test_status_polled_immediately(self, connected):
        assert wait_for(lambda: {"action": "get_status"} in decode_written(connected))

    def test_status_polled_periodically(self, connected):
        assert wait_for(lambda: decode_written(connected).count({"action": "get_status"}) >= 3)

    def test_lost_connection_backs_off_then_reconnects(self, service, connected, opener, events, status_cache):
        """On EOF the port is closed once, state and cache are cleared, then backoff precedes reconnect."""
        status_cache.set(StatusData(version="1"), ttl=300)

        connected.disconnect()

        assert wait_for(lambda: len(opener.opened) >= 2 and service.connected)
        assert connected.close_count == 1
        assert events[:5] == ["open", "reset", "backoff", "open", "reset"]

    def test_cache_evicted_on_disconnect(self, service, connected, status_cache, opener):
        status_cache.set(StatusData(version="1"), ttl=300)
        service.backoff.delay = 5

        connected.disconnect()

        assert wait_for(lambda: not service.connected)
        assert wait_for(lambda: status_cache.get() == (None, False))

    def test_failed_attempt_backs_off(self, router, message_store, events):
        calls = []

        def list_ports():
            calls.append(1)
            raise NoPortsError("No serial ports found")

        svc = SerialService(router, message_store, backoff=RecordingBackoff(events),
                            list_ports=list_ports)
        svc.start()
        try:
            assert wait_for(lambda: len(calls) >= 3)
        finally:
            svc.stop(timeout=2)
        assert "backoff" in events
        assert "reset" not in events

    def test_stop(self, service, connected):
        service.stop(timeout=2)
        assert wait_for(lambda: service.state == STATE_STOPPED)
        assert not service.connected
        assert connected.close_count == 1

    def test_reader_crash_becomes_disconnect(self, service, connected):
        """An unexpected exception in the reader ends the connection instead of the process."""
        service.process_line = Mock(side_effect=RuntimeError("bug"))
        service.backoff.delay = 5

        connected.feed(b"anything\n")

        assert wait_for(lambda: not service.connected)
        assert connected.close_count == 1


class TestRunOnce:
    """Test a single connection attempt."""

    def test_auto_detect_used_without_configured_port(self, router, message_store, events, opener):
        detect = Mock(return_value="/dev/ttyUSB3")
        svc = SerialService(router, message_store, backoff=RecordingBackoff(events),
                            list_ports=lambda: ["/dev/ttyUSB0", "/dev/ttyUSB3"],
                            auto_detect=detect, open_port=opener)

        worker = threading.Thread(target=svc.run_once)
        worker.start()
        assert wait_for(lambda: svc.connected)
        svc.stop()
        worker.join(2)

        detect.assert_called_once_with(["/dev/ttyUSB0", "/dev/ttyUSB3"])
        assert opener.opened[0].port == "/dev/ttyUSB3"
        assert not worker.is_alive()

    def test_auto_detect_failure_propagates(self, router, message_store):
        svc = SerialService(router, message_store, list_ports=lambda: ["/dev/ttyUSB0"],
                            auto_detect=Mock(side_effect=AutoDetectError("none")))
        with pytest.raises(AutoDetectError):
            svc.run_once()
        assert not svc.connected

    def test_read_timeout_passed_to_open(self, router, message_store, events, opener):
        svc = SerialService(router, message_store, serial_port="/dev/ttyFAKE",
                            backoff=RecordingBackoff(events), list_ports=lambda: ["/dev/ttyFAKE"],
                            open_port=opener)
        worker = threading.Thread(target=svc.run_once)
        worker.start()
        assert wait_for(lambda: svc.connected)
        svc.stop()
        worker.join(2)
        assert opener.opened[0].kwargs["timeout"] == 1.0


class TestReader:
    """Test the receive path."""

    def test_fragmented_frame_routed_once(self, connected, message_store, notifier):
        connected.feed(b'SMS_START:{"type":"incoming_sms","from":"10086",')
        connected.feed(b'"content":"hi","timestamp":1700000000}:SMS_END\r\n')

        assert wait_for(lambda: message_store.list()[1] == 1)
        assert message_store.list()[0][0].from_ == "10086"
        notifier.notify.assert_called_once()

    def test_noise_and_bad_frames_do_not_disconnect(self, service, connected, message_store):
        connected.feed(b"+CSQ: 20,99\r\n")
        connected.feed(b"SMS_START:{broken:SMS_END\r\n")
        connected.feed(b'SMS_START:{"no_type":1}:SMS_END\r\n')
        connected.feed(b'SMS_START:{"type":"incoming_sms","from":"1","content":"after"}:SMS_END\r\n')

        assert wait_for(lambda: message_store.list()[1] == 1)
        assert service.connected

    def test_process_line_routes_frames_only(self, router, message_store):
        fake_router = Mock()
        svc = SerialService(fake_router, message_store, status_cache=Mock())

        svc.process_line("")
        svc.process_line("plain text")
        svc.process_line("SMS_START:{bad}:SMS_END")
        svc.process_line('SMS_START:{"x":1}:SMS_END')
        fake_router.route.assert_not_called()

        svc.process_line('  SMS_START:{"type":"heartbeat"}:SMS_END\r')
        assert fake_router.route.call_args[0][0].type == "heartbeat"


class TestCommandSender:
    """Test outbound commands."""

    def test_not_connected(self, service):
        with pytest.raises(NotConnectedError):
            service.send_command({"action": "get_status"})

    def test_send_sms_persists_then_writes(self, service, connected, message_store):
        """send_sms stores an outgoing 'sending' record whose id is the request_id on the wire."""
        msg_id = service.send_sms("10086", "hello")

        record = message_store.get(msg_id)
        assert record.type == "outgoing"
        assert record.status == "sending"
        assert record.to == "10086"
        assert record.content == "hello"
        assert {"action": "send_sms", "to": "10086", "content": "hello", "request_id": msg_id} \
            in decode_written(connected)

    def test_send_sms_with_caller_id(self, service, connected, message_store):
        assert service.send_sms("10086", "hello", msg_id="task-run-1") == "task-run-1"
        assert message_store.get("task-run-1").status == "sending"
        assert "task-run-1" in [c.get("request_id") for c in decode_written(connected)]

    def test_send_result_confirms(self, service, connected, message_store):
        msg_id = service.send_sms("10086", "hello")
        connected.feed(f'SMS_START:{{"type":"sms_send_result","success":true,"request_id":"{msg_id}"}}'
                       f':SMS_END\r\n'.encode())
        assert wait_for(lambda: message_store.get(msg_id).status == "sent")

    def test_send_sms_without_connection_records_failure(self, service, message_store):
        with pytest.raises(NotConnectedError):
            service.send_sms("10086", "hello")

        items, total = message_store.list()
        assert total == 1
        assert items[0].status == "failed"
        assert items[0].type == "outgoing"

    def test_write_failure(self, service, connected, message_store):
        connected.fail_writes = True
        with pytest.raises(WriteError):
            service.send_sms("10086", "hello")
        assert message_store.list()[0][0].status == "failed"

    def test_control_commands(self, service, connected):
        service.reset_stack()
        service.reboot_mcu()
        service.set_cellular(False)

        written = decode_written(connected)
        assert {"action": "reset_stack"} in written
        assert {"action": "reboot_mcu"} in written
        assert {"action": "set_cellular", "enabled": False} in written

    def test_concurrent_writes_are_not_interleaved(self, service, connected):
        threads = [threading.Thread(target=service.send_sms, args=(f"1000{i}", "x" * 200)) for i in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        sends = [c for c in decode_written(connected) if c["action"] == "send_sms"]
        assert len(sends) == 10


class TestStatus:
    """Test status reads."""

    def test_empty_cache_returns_connection_fields(self, service):
        status = service.get_status()
        assert status == StatusData(port_name="", connected=False)

    def test_overlay_on_cached_copy(self, service, connected, status_cache):
        cached = StatusData(version="1.0.3")
        status_cache.set(cached, ttl=300)

        status = service.get_status()

        assert status.version == "1.0.3"
        assert status.port_name == "/dev/ttyFAKE"
        assert status.connected is True
        assert cached.port_name == ""
        assert cached.connected is False


class TestExpirePendingSends:
    """Test the sweep of unconfirmed outgoing messages."""

    def test_stale_sending_marked_failed(self, status_cache, message_store):
        listener = Mock()
        router = MessageRouter(status_cache, message_store, send_result_callback=listener)
        svc = SerialService(router, message_store, send_confirm_timeout=600)
        old = now_ms() - 601 * 1000
        message_store.save(TextMessage(id="old", type="outgoing", status="sending", created_at=old))
        message_store.save(TextMessage(id="new", type="outgoing", status="sending"))

        assert svc.expire_pending_sends() == ["old"]
        assert message_store.get("old").status == "failed"
        assert message_store.get("new").status == "sending"
        listener.assert_called_once_with("old", "failed")

    def test_disabled_with_zero_timeout(self, router, message_store):
        svc = SerialService(router, message_store, send_confirm_timeout=0)
        message_store.save(TextMessage(id="old", type="outgoing", status="sending", created_at=1))
        assert svc.expire_pending_sends() == []
        assert message_store.get("old").status == "sending"


class TestConnection:
    """Test the per-connection handle wrapper."""

    def test_close_once(self):
        port = FakeSerialPort()
        conn = Connection("/dev/ttyFAKE", port)
        conn.close()
        conn.close()
        assert port.close_count == 1
