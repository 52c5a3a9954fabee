"""
UART SMS Gateway - Device message router
Dispatches decoded downstream frames to per-type handlers

Licensed under Apache License 2.0
"""

import logging
import uuid
from typing import Any, Callable, Dict, Optional

from .const import (
    EVENT_CALL,
    EVENT_SMS,
    MESSAGE_STATUS_FAILED,
    MESSAGE_STATUS_RECEIVED,
    MESSAGE_STATUS_SENT,
    MESSAGE_TYPE_INCOMING,
    STATUS_CACHE_TTL,
    TYPE_CELLULAR_CONTROL_RESPONSE,
    TYPE_CMD_RESPONSE,
    TYPE_COMMAND_RESPONSE,
    TYPE_ERROR,
    TYPE_HEARTBEAT,
    TYPE_INCOMING_CALL,
    TYPE_INCOMING_SMS,
    TYPE_PHONE_NUMBER_RESPONSE,
    TYPE_SIM_EVENT,
    TYPE_SMS_SEND_RESULT,
    TYPE_STATUS_RESPONSE,
    TYPE_SYSTEM_READY,
    TYPE_WARNING,
)
from .frame import DeviceMessage
from .models import NotificationEvent, StatusData, TextMessage, now_ms
from .network_codes import operator_from_imsi

logger = logging.getLogger(__name__)


class MessageRouter:
    """Routes DeviceMessages by their 'type' field.

    Collaborators are injected: a StatusCache, a MessageStore (save / get /
    update_status) and a notifier exposing notify(event). The optional
    send_result_callback(msg_id, status) is told about every send outcome.
    """

    def __init__(self, status_cache, message_store, notifier=None, status_ttl: float = STATUS_CACHE_TTL,
                 send_result_callback: Optional[Callable[[str, str], None]] = None):
        self.status_cache = status_cache
        self.message_store = message_store
        self.notifier = notifier
        self.status_ttl = status_ttl
        self.send_result_callback = send_result_callback

        self._handlers: Dict[str, Callable[[DeviceMessage], None]] = {
            TYPE_STATUS_RESPONSE: self.handle_status_response,
            TYPE_SYSTEM_READY: self.handle_system_ready,
            TYPE_HEARTBEAT: self.handle_heartbeat,
            TYPE_CELLULAR_CONTROL_RESPONSE: self.handle_cellular_control_response,
            TYPE_PHONE_NUMBER_RESPONSE: self.handle_phone_number_response,
            TYPE_COMMAND_RESPONSE: self.handle_command_response,
            TYPE_CMD_RESPONSE: self.handle_command_response,
            TYPE_SIM_EVENT: self.handle_sim_event,
            TYPE_WARNING: self.handle_warning,
            TYPE_ERROR: self.handle_error,
            TYPE_INCOMING_SMS: self.handle_incoming_sms,
            TYPE_INCOMING_CALL: self.handle_incoming_call,
            TYPE_SMS_SEND_RESULT: self.handle_sms_send_result,
        }

    @property
    def known_types(self):
        return sorted(self._handlers)

    def route(self, msg: DeviceMessage):
        """Run the handler for msg.type; handler errors are logged, never raised"""
        handler = self._handlers.get(msg.type)
        if handler is None:
            logger.debug(f"Unhandled device message type: {msg.type}")
            return

        try:
            handler(msg)
        except Exception as e:
            logger.error(f"❌ Error handling {msg.type} message: {e}", exc_info=True)

    # Status

    def handle_status_response(self, msg: DeviceMessage):
        status = StatusData.from_payload(msg.fields)
        operator = operator_from_imsi(status.mobile.imsi)
        if operator:
            status.mobile.operator = operator
        self.status_cache.set(status, self.status_ttl)
        logger.debug(f"📶 Device status cached (signal={status.mobile.signal_level}, "
                     f"operator={status.mobile.operator or 'unknown'})")

    # Log-only types

    def handle_system_ready(self, msg: DeviceMessage):
        logger.info(f"✅ Device ready: {msg.fields.get('message', '')}")

    def handle_heartbeat(self, msg: DeviceMessage):
        fields = msg.fields
        logger.debug(f"💓 Device heartbeat: timestamp={fields.get('timestamp')}, "
                     f"memory_usage={fields.get('memory_usage')}, buffer_size={fields.get('buffer_size')}")

    def handle_cellular_control_response(self, msg: DeviceMessage):
        logger.debug(f"Cellular control response: {msg.fields}")

    def handle_phone_number_response(self, msg: DeviceMessage):
        logger.debug(f"Phone number response: {msg.fields}")

    def handle_command_response(self, msg: DeviceMessage):
        action = msg.fields.get('action')
        if action:
            logger.info(f"📟 Command response: action={action}, result={msg.fields.get('result')}")

    def handle_sim_event(self, msg: DeviceMessage):
        logger.info(f"📇 SIM event: {msg.fields.get('status', '')}")

    def handle_warning(self, msg: DeviceMessage):
        logger.warning(f"⚠️ Device warning: {msg.fields.get('msg', '')}")

    def handle_error(self, msg: DeviceMessage):
        logger.error(f"❌ Device error: {msg.fields.get('msg', '')}")

    # Incoming traffic

    def handle_incoming_sms(self, msg: DeviceMessage):
        self._record_incoming(msg, EVENT_SMS, _as_text(msg.fields.get('content')))

    def handle_incoming_call(self, msg: DeviceMessage):
        self._record_incoming(msg, EVENT_CALL, "")

    def _record_incoming(self, msg: DeviceMessage, event_type: str, content: str):
        sender = _as_text(msg.fields.get('from') or msg.fields.get('number'))
        timestamp = _as_seconds(msg.fields.get('timestamp'))
        timestamp_ms = timestamp * 1000 if timestamp else now_ms()

        record = TextMessage(
            id=str(uuid.uuid4()),
            from_=sender,
            content=content,
            type=MESSAGE_TYPE_INCOMING,
            status=MESSAGE_STATUS_RECEIVED,
            timestamp=timestamp_ms,
        )
        try:
            self.message_store.save(record)
            logger.info(f"📨 {'SMS' if event_type == EVENT_SMS else 'Call'} from {sender} recorded")
        except Exception as e:
            logger.error(f"❌ Failed to save incoming {event_type} from {sender}: {e}")

        if self.notifier is not None:
            event = NotificationEvent(type=event_type, from_=sender, content=content,
                                      timestamp=timestamp or timestamp_ms // 1000)
            self.notifier.notify(event)

    # Outgoing confirmation

    def handle_sms_send_result(self, msg: DeviceMessage):
        request_id = msg.fields.get('request_id')
        if request_id is None or request_id == "":
            logger.warning("⚠️ sms_send_result without request_id, ignoring")
            return

        msg_id = str(request_id)
        if self.message_store.get(msg_id) is None:
            logger.warning(f"⚠️ sms_send_result for unknown message {msg_id}, ignoring")
            return

        status = MESSAGE_STATUS_SENT if msg.fields.get('success') is True else MESSAGE_STATUS_FAILED
        self.message_store.update_status(msg_id, status)
        if status == MESSAGE_STATUS_SENT:
            logger.info(f"✅ SMS {msg_id} sent")
        else:
            logger.warning(f"⚠️ SMS {msg_id} failed: {msg.fields.get('error', 'unknown error')}")

        self.report_send_result(msg_id, status)

    def report_send_result(self, msg_id: str, status: str):
        """Forward a final send outcome to the result listener, if any"""
        if self.send_result_callback is None:
            return
        try:
            self.send_result_callback(msg_id, status)
        except Exception as e:
            logger.error(f"❌ Send result listener failed for {msg_id}: {e}")


def _as_text(value: Any) -> str:
    return "" if value is None else str(value)


def _as_seconds(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0
