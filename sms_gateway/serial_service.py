"""
UART SMS Gateway - Serial link manager
Owns the serial connection: discovery, reader and status refresh threads,
reconnect with backoff, and the command sender used by the HTTP API and
the scheduler

Licensed under Apache License 2.0
"""

import dataclasses
import logging
import threading
import uuid
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import serial

from . import ports
from .backoff import Backoff
from .const import (
    ACTION_GET_STATUS,
    ACTION_REBOOT_MCU,
    ACTION_RESET_STACK,
    ACTION_SEND_SMS,
    ACTION_SET_CELLULAR,
    MESSAGE_STATUS_FAILED,
    MESSAGE_STATUS_SENDING,
    MESSAGE_TYPE_OUTGOING,
    READ_TIMEOUT,
    SEND_CONFIRM_TIMEOUT,
    STATE_CONNECTED,
    STATE_CONNECTING,
    STATE_DISCONNECTED,
    STATE_IDLE,
    STATE_STOPPED,
    STATUS_REFRESH_INTERVAL,
)
from .errors import (
    FrameError,
    LinkLostError,
    MissingTypeError,
    NotConnectedError,
    NotFramedError,
    SerialLinkError,
    StoreError,
    WriteError,
)
from .frame import LineBuffer, decode_frame, encode_command
from .models import StatusData, TextMessage, now_ms
from .status_cache import StatusCache

logger = logging.getLogger(__name__)


class Connection:
    """One open serial handle plus the cancellation event its two threads share"""

    def __init__(self, port_name: str, port):
        self.port_name = port_name
        self.port = port
        self.cancelled = threading.Event()
        self._closed = False
        self._close_lock = threading.Lock()

    def cancel(self):
        self.cancelled.set()

    def close(self):
        """Close the handle; later calls are no-ops"""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        try:
            self.port.close()
        except (serial.SerialException, OSError) as e:
            logger.debug(f"Error closing {self.port_name}: {e}")


class SerialService:
    """Serial link manager.

    The supervisor thread (start / run_forever) connects, runs a reader and a
    refresh thread per connection, and reconnects with exponential backoff
    whenever the link drops. Application calls (send_sms, reset_stack, ...)
    write through send_command and never wait for a connection.
    """

    def __init__(self, router, message_store, status_cache: Optional[StatusCache] = None,
                 serial_port: str = "", refresh_interval: float = STATUS_REFRESH_INTERVAL,
                 send_confirm_timeout: float = SEND_CONFIRM_TIMEOUT, backoff: Optional[Backoff] = None,
                 list_ports: Callable[[], List[str]] = ports.list_ports,
                 auto_detect: Callable[[Sequence[str]], str] = ports.auto_detect,
                 open_port: Callable[..., Any] = ports.open_port):
        self.router = router
        self.message_store = message_store
        self.status_cache = status_cache if status_cache is not None else router.status_cache
        self.serial_port = serial_port
        self.refresh_interval = refresh_interval
        self.send_confirm_timeout = send_confirm_timeout
        self.backoff = backoff or Backoff()

        self._list_ports = list_ports
        self._auto_detect = auto_detect
        self._open_port = open_port

        self.state = STATE_IDLE
        self._conn: Optional[Connection] = None
        self._port_name = ""
        self._connected = False
        self._conn_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # Connection state

    def _set_state(self, state: str):
        if state != self.state:
            logger.debug(f"Serial link state: {self.state} -> {state}")
        self.state = state

    def connection_info(self) -> Tuple[str, bool]:
        with self._conn_lock:
            return self._port_name, self._connected

    @property
    def connected(self) -> bool:
        return self.connection_info()[1]

    # Supervisor

    def start(self):
        """Start the supervisor on a daemon thread"""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run_forever, name="serial-supervisor", daemon=True)
        self._thread.start()
        logger.info("🔌 Serial link supervisor started")

    def stop(self, timeout: float = 5.0):
        """Stop reconnecting, drop the current connection and wait for the supervisor"""
        self._stop_event.set()
        with self._conn_lock:
            conn = self._conn
        if conn is not None:
            conn.cancel()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        logger.info("🔌 Serial link supervisor stopped")

    def run_forever(self):
        """Connect, serve until the link drops, sleep the backoff delay, repeat"""
        while not self._stop_event.is_set():
            try:
                self.run_once()
                logger.warning("⚠️ Serial connection closed")
            except SerialLinkError as e:
                logger.warning(f"⚠️ Serial connection failed: {e}")
            except Exception as e:
                logger.error(f"❌ Unexpected error in serial supervisor: {e}", exc_info=True)

            self._set_state(STATE_DISCONNECTED)
            if self._stop_event.is_set():
                break

            delay = self.backoff.duration()
            logger.info(f"⏳ Reconnecting serial port in {delay:.1f}s")
            if self._stop_event.wait(delay):
                break

        self._set_state(STATE_STOPPED)

    def run_once(self):
        """One connection attempt; returns after the connection ends.

        Raises a SerialLinkError when no connection could be established.
        """
        self._set_state(STATE_CONNECTING)

        available = self._list_ports()
        logger.debug(f"Serial ports found: {', '.join(available)}")

        if self.serial_port:
            port_name = self.serial_port
            logger.info(f"🔌 Using configured serial port {port_name}")
        else:
            logger.info("🔍 Auto-detecting serial port...")
            port_name = self._auto_detect(available)
            logger.info(f"🔍 Auto-detected serial port {port_name}")

        port = self._open_port(port_name, timeout=READ_TIMEOUT)
        conn = Connection(port_name, port)

        with self._conn_lock:
            self._conn = conn
            self._port_name = port_name
            self._connected = True
        self.backoff.reset()
        self._set_state(STATE_CONNECTED)
        logger.info(f"✅ Serial port {port_name} connected")

        # stop() may have run before the connection was published
        if self._stop_event.is_set():
            conn.cancel()

        reader = threading.Thread(target=self._guard, args=(conn, "reader", self._reader_loop),
                                  name=f"serial-reader-{port_name}", daemon=True)
        refresher = threading.Thread(target=self._guard, args=(conn, "refresh", self._refresh_loop),
                                     name=f"serial-refresh-{port_name}", daemon=True)
        reader.start()
        refresher.start()

        conn.cancelled.wait()

        conn.close()
        with self._conn_lock:
            self._conn = None
            self._connected = False
        self._set_state(STATE_DISCONNECTED)
        self.status_cache.delete()

        reader.join()
        refresher.join()

    def _guard(self, conn: Connection, name: str, loop: Callable[[Connection], None]):
        """Run a per-connection loop; any exit from it ends the connection"""
        try:
            loop(conn)
        except LinkLostError as e:
            if not conn.cancelled.is_set():
                logger.warning(f"⚠️ Serial link lost on {conn.port_name}: {e}")
        except Exception as e:
            logger.error(f"❌ Serial {name} loop crashed: {e}", exc_info=True)
        finally:
            conn.cancel()

    def _reader_loop(self, conn: Connection):
        buffer = LineBuffer()
        while not conn.cancelled.is_set():
            try:
                data = conn.port.read(conn.port.in_waiting or 1)
            except (serial.SerialException, OSError) as e:
                if conn.cancelled.is_set():
                    return
                raise LinkLostError(f"Read error: {e}") from e

            if not data:
                if not conn.port.is_open:
                    raise LinkLostError("Serial port closed (EOF)")
                continue

            for line in buffer.feed(data):
                self.process_line(line)

    def _refresh_loop(self, conn: Connection):
        while True:
            self.request_status()
            self.expire_pending_sends()
            if conn.cancelled.wait(self.refresh_interval):
                return

    def process_line(self, line: str):
        """Decode one received line and hand it to the router"""
        line = line.strip()
        if not line:
            return
        logger.debug(f"Serial RX: {line}")

        try:
            msg = decode_frame(line)
        except NotFramedError:
            return
        except MissingTypeError:
            logger.warning(f"⚠️ Device message without type: {line}")
            return
        except FrameError as e:
            logger.error(f"❌ Failed to decode device message: {e}")
            return

        self.router.route(msg)

    # Status

    def get_status(self) -> StatusData:
        """Last cached device status with the live connection fields overlaid"""
        port_name, connected = self.connection_info()
        cached, found = self.status_cache.get()
        if found:
            return dataclasses.replace(cached, port_name=port_name, connected=connected)
        return StatusData(port_name=port_name, connected=connected)

    def request_status(self):
        """Ask the device for a status_response; errors are logged only"""
        try:
            self.send_command({"action": ACTION_GET_STATUS})
            logger.debug("Status refresh requested")
        except (SerialLinkError, FrameError) as e:
            logger.error(f"❌ Status request failed: {e}")

    def expire_pending_sends(self) -> List[str]:
        """Fail outgoing messages whose device confirmation never arrived"""
        try:
            expired = self.message_store.fail_stale_sending(self.send_confirm_timeout)
        except StoreError as e:
            logger.error(f"❌ Failed to expire pending sends: {e}")
            return []

        for msg_id in expired:
            logger.warning(f"⚠️ SMS {msg_id} not confirmed within {self.send_confirm_timeout}s, marked failed")
            self.router.report_send_result(msg_id, MESSAGE_STATUS_FAILED)
        return expired

    # Commands

    def send_command(self, cmd: Dict[str, Any]):
        """Encode and write one command. Raises NotConnectedError without an open port."""
        data = encode_command(cmd)

        with self._conn_lock:
            conn = self._conn
        if conn is None or conn.cancelled.is_set():
            raise NotConnectedError("Serial port not connected")

        with self._write_lock:
            try:
                conn.port.write(data)
            except (serial.SerialException, OSError) as e:
                raise WriteError(f"Failed to write to {conn.port_name}: {e}") from e
        logger.debug(f"Serial TX: {data.decode('utf-8', errors='replace').strip()}")

    def send_sms(self, to: str, content: str, msg_id: Optional[str] = None) -> str:
        """Persist an outgoing record, send it and return its id (the request_id).

        Callers that must know the id before the device can answer pass their own.
        """
        msg_id = msg_id or str(uuid.uuid4())
        now = now_ms()
        record = TextMessage(
            id=msg_id,
            to=to,
            content=content,
            type=MESSAGE_TYPE_OUTGOING,
            status=MESSAGE_STATUS_SENDING,
            timestamp=now,
            created_at=now,
        )
        self.message_store.save(record)

        try:
            self.send_command({"action": ACTION_SEND_SMS, "to": to, "content": content, "request_id": msg_id})
        except (SerialLinkError, FrameError) as e:
            logger.error(f"❌ Failed to send SMS to {to}: {e}")
            try:
                self.message_store.update_status(msg_id, MESSAGE_STATUS_FAILED)
            except StoreError as store_err:
                logger.error(f"❌ Failed to mark SMS {msg_id} as failed: {store_err}")
            raise

        logger.info(f"📤 SMS to {to} handed to device (request_id={msg_id})")
        return msg_id

    def reset_stack(self):
        self.send_command({"action": ACTION_RESET_STACK})
        logger.info("🔄 Protocol stack reset requested")

    def reboot_mcu(self):
        self.send_command({"action": ACTION_REBOOT_MCU})
        logger.info("🔄 Device reboot requested")

    def set_cellular(self, enabled: bool):
        self.send_command({"action": ACTION_SET_CELLULAR, "enabled": bool(enabled)})
        logger.info(f"📶 Cellular {'enabled' if enabled else 'disabled'}")
