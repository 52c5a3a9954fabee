"""
Tests for serial port discovery.

These tests verify:
- Port enumeration and its two failure kinds
- Opening with 115200 8N1
- Probe-based auto-detection that always closes probed ports
"""
from types import SimpleNamespace

import pytest
import serial

from conftest import FakeSerialPort
from sms_gateway import ports
from sms_gateway.errors import AutoDetectError, NoPortsError, PortListError, PortOpenError

FRAMED_REPLY = b'SMS_START:{"type":"status_response"}:SMS_END\r\n'


class PortFactory:
    """serial_factory that hands out FakeSerialPorts with per-port replies."""

    def __init__(self, replies=None, unopenable=()):
        self.replies = replies or {}
        self.unopenable = set(unopenable)
        self.opened = {}

    def __call__(self, port=None, **kwargs):
        if port in self.unopenable:
            raise serial.SerialException(f"could not open port {port}")
        fake = FakeSerialPort(port=port, reply=self.replies.get(port, b""), **kwargs)
        self.opened.setdefault(port, []).append(fake)
        return fake


def no_sleep(_):
    pass


class TestListPorts:
    """Test serial port enumeration."""

    def test_sorted_device_names(self, monkeypatch):
        found = [SimpleNamespace(device="/dev/ttyUSB1"), SimpleNamespace(device="/dev/ttyACM0")]
        monkeypatch.setattr(ports.serial_list_ports, "comports", lambda: found)
        assert ports.list_ports() == ["/dev/ttyACM0", "/dev/ttyUSB1"]

    def test_no_ports(self, monkeypatch):
        monkeypatch.setattr(ports.serial_list_ports, "comports", lambda: [])
        with pytest.raises(NoPortsError):
            ports.list_ports()

    def test_os_failure(self, monkeypatch):
        def broken():
            raise OSError("permission denied")
        monkeypatch.setattr(ports.serial_list_ports, "comports", broken)
        with pytest.raises(PortListError):
            ports.list_ports()


class TestOpenPort:
    """Test opening a port with fixed line settings."""

    def test_line_settings(self):
        factory = PortFactory()
        port = ports.open_port("/dev/ttyUSB0", timeout=1.0, serial_factory=factory)

        assert port.port == "/dev/ttyUSB0"
        assert port.kwargs == {
            "baudrate": 115200,
            "bytesize": serial.EIGHTBITS,
            "stopbits": serial.STOPBITS_ONE,
            "parity": serial.PARITY_NONE,
            "timeout": 1.0,
        }

    def test_open_failure(self):
        factory = PortFactory(unopenable={"/dev/ttyUSB0"})
        with pytest.raises(PortOpenError):
            ports.open_port("/dev/ttyUSB0", serial_factory=factory)


class TestAutoDetect:
    """Test probing candidate ports for the gateway firmware."""

    def test_first_answering_port_wins(self):
        factory = PortFactory(replies={"/dev/ttyUSB1": FRAMED_REPLY, "/dev/ttyUSB2": FRAMED_REPLY})
        candidates = ["/dev/ttyUSB0", "/dev/ttyUSB1", "/dev/ttyUSB2"]

        assert ports.auto_detect(candidates, serial_factory=factory, sleep=no_sleep) == "/dev/ttyUSB1"
        assert "/dev/ttyUSB2" not in factory.opened

    def test_probe_sends_get_status_and_closes(self):
        factory = PortFactory(replies={"/dev/ttyUSB0": FRAMED_REPLY})
        ports.auto_detect(["/dev/ttyUSB0"], serial_factory=factory, sleep=no_sleep)

        probe = factory.opened["/dev/ttyUSB0"][0]
        assert probe.written == [b'CMD_START:{"action":"get_status"}:CMD_END\r\n']
        assert probe.kwargs["timeout"] == 1.0
        assert probe.close_count == 1

    def test_every_probed_port_is_closed(self):
        factory = PortFactory(replies={"/dev/ttyUSB0": b"AT OK\r\n"})
        with pytest.raises(AutoDetectError):
            ports.auto_detect(["/dev/ttyUSB0", "/dev/ttyUSB1"], serial_factory=factory, sleep=no_sleep)

        for opened in factory.opened.values():
            assert all(p.close_count == 1 for p in opened)

    def test_unopenable_port_is_skipped(self):
        factory = PortFactory(replies={"/dev/ttyUSB1": FRAMED_REPLY}, unopenable={"/dev/ttyUSB0"})
        assert ports.auto_detect(["/dev/ttyUSB0", "/dev/ttyUSB1"], serial_factory=factory,
                                 sleep=no_sleep) == "/dev/ttyUSB1"

    def test_write_failure_still_closes(self):
        class FailingPort(FakeSerialPort):
            def write(self, data):
                raise serial.SerialException("write failed")

        made = []

        def factory(port=None, **kwargs):
            made.append(FailingPort(port=port, **kwargs))
            return made[-1]

        assert ports.probe_port("/dev/ttyUSB0", serial_factory=factory, sleep=no_sleep) is False
        assert made[0].close_count == 1

    def test_waits_for_settle_delay(self):
        factory = PortFactory(replies={"/dev/ttyUSB0": FRAMED_REPLY})
        slept = []
        ports.auto_detect(["/dev/ttyUSB0"], serial_factory=factory, sleep=slept.append)
        assert slept == [0.5]

    def test_no_candidates(self):
        with pytest.raises(AutoDetectError):
            ports.auto_detect([], serial_factory=PortFactory(), sleep=no_sleep)
