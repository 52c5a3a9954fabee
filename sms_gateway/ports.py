"""
UART SMS Gateway - Serial port discovery
Lists serial ports, probes them for the gateway firmware and opens the
selected port with the fixed 115200 8N1 line settings

Licensed under Apache License 2.0
"""

import logging
import time
from typing import Callable, List, Optional, Sequence

import serial
from serial.tools import list_ports as serial_list_ports

from .const import ACTION_GET_STATUS, BAUD_RATE, PROBE_READ_SIZE, PROBE_READ_TIMEOUT, PROBE_SETTLE_DELAY
from .errors import AutoDetectError, NoPortsError, PortListError, PortOpenError
from .frame import encode_command, is_framed_response

logger = logging.getLogger(__name__)


def list_ports() -> List[str]:
    """List serial device names, sorted"""
    try:
        ports = sorted(p.device for p in serial_list_ports.comports())
    except Exception as e:
        raise PortListError(f"Failed to list serial ports: {e}") from e

    if not ports:
        raise NoPortsError("No serial ports found")
    return ports


def open_port(port_name: str, timeout: Optional[float] = None,
              serial_factory: Callable[..., serial.Serial] = serial.Serial) -> serial.Serial:
    """Open a serial port at 115200 baud, 8 data bits, 1 stop bit, no parity"""
    try:
        return serial_factory(
            port=port_name,
            baudrate=BAUD_RATE,
            bytesize=serial.EIGHTBITS,
            stopbits=serial.STOPBITS_ONE,
            parity=serial.PARITY_NONE,
            timeout=timeout,
        )
    except (serial.SerialException, OSError, ValueError) as e:
        raise PortOpenError(f"Failed to open {port_name}: {e}") from e


def probe_port(port_name: str, serial_factory: Callable[..., serial.Serial] = serial.Serial,
               settle_delay: float = PROBE_SETTLE_DELAY, sleep: Callable[[float], None] = time.sleep) -> bool:
    """Send a get_status probe and check for a framed reply. Always closes the port."""
    try:
        port = open_port(port_name, timeout=PROBE_READ_TIMEOUT, serial_factory=serial_factory)
    except PortOpenError as e:
        logger.debug(f"Probe: cannot open {port_name}: {e}")
        return False

    try:
        port.write(encode_command({"action": ACTION_GET_STATUS}))
        sleep(settle_delay)
        response = port.read(PROBE_READ_SIZE)
    except (serial.SerialException, OSError) as e:
        logger.debug(f"Probe: I/O error on {port_name}: {e}")
        return False
    finally:
        try:
            port.close()
        except (serial.SerialException, OSError) as e:
            logger.debug(f"Probe: error closing {port_name}: {e}")

    if not response:
        return False
    return is_framed_response(response.decode("utf-8", errors="ignore"))


def auto_detect(candidates: Sequence[str], serial_factory: Callable[..., serial.Serial] = serial.Serial,
                settle_delay: float = PROBE_SETTLE_DELAY, sleep: Callable[[float], None] = time.sleep) -> str:
    """Return the first candidate port that answers the probe"""
    for port_name in candidates:
        logger.debug(f"🔍 Probing serial port {port_name}")
        if probe_port(port_name, serial_factory=serial_factory, settle_delay=settle_delay, sleep=sleep):
            logger.debug(f"✅ Gateway firmware answered on {port_name}")
            return port_name

    raise AutoDetectError(f"No serial port answered the probe (tried: {', '.join(candidates) or 'none'})")
