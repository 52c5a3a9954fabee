"""
UART SMS Gateway - Alert delivery
Formats incoming SMS / call events and delivers them to the configured
notification channels (DingTalk, WeCom, Feishu, custom webhook, Telegram,
email and MQTT)

Licensed under Apache License 2.0
"""

import base64
import hashlib
import hmac
import json
import logging
import smtplib
import threading
import time
from datetime import datetime
from email.mime.text import MIMEText
from typing import Any, Dict, List, Optional

import paho.mqtt.publish as mqtt_publish
from paho.mqtt import MQTTException
import requests

from .const import (
    CHANNEL_DINGTALK,
    CHANNEL_EMAIL,
    CHANNEL_FEISHU,
    CHANNEL_MQTT,
    CHANNEL_TELEGRAM,
    CHANNEL_WEBHOOK,
    CHANNEL_WECOM,
    EVENT_CALL,
    NOTIFY_TIMEOUT,
    PROPERTY_NOTIFICATION_CHANNELS,
)
from .errors import NotifyError
from .models import NotificationEvent

logger = logging.getLogger(__name__)

DINGTALK_URL = "https://oapi.dingtalk.com/robot/send?access_token={key}"
WECOM_URL = "https://qyapi.weixin.qq.com/cgi-bin/webhook/send?key={key}"
FEISHU_URL = "https://open.feishu.cn/open-apis/bot/v2/hook/{key}"
TELEGRAM_URL = "https://api.telegram.org/bot{token}/sendMessage"

TEST_MESSAGE = "This is a test notification from the SMS gateway"


def format_event(event: NotificationEvent) -> str:
    """Human readable alert text for an event"""
    when = datetime.fromtimestamp(event.timestamp).strftime('%Y-%m-%d %H:%M:%S') if event.timestamp else ""
    if event.type == EVENT_CALL:
        lines = ["📞 Incoming call", f"From: {event.from_}"]
    else:
        lines = ["📩 New SMS", f"From: {event.from_}", f"Content: {event.content}"]
    if when:
        lines.append(f"Time: {when}")
    return "\n".join(lines)


def dingtalk_sign(timestamp_ms: int, secret: str) -> str:
    string_to_sign = f"{timestamp_ms}\n{secret}"
    digest = hmac.new(secret.encode('utf-8'), string_to_sign.encode('utf-8'), hashlib.sha256).digest()
    return base64.b64encode(digest).decode('utf-8')


def _json_escape(value: Any) -> str:
    """JSON-escape a value for insertion inside a quoted template string"""
    return json.dumps("" if value is None else str(value), ensure_ascii=False)[1:-1]


def render_template(template: str, values: Dict[str, Any]) -> str:
    """Replace {{name}} placeholders with JSON-escaped values; unknown tags stay"""
    result = template
    for name, value in values.items():
        result = result.replace("{{" + name + "}}", _json_escape(value))
    return result


class Notifier:
    """Delivers alerts to every enabled channel in the notification_channels property"""

    def __init__(self, property_store, timeout: float = NOTIFY_TIMEOUT, session: Optional[requests.Session] = None):
        self.property_store = property_store
        self.timeout = timeout
        self.session = session or requests.Session()

        self._senders = {
            CHANNEL_DINGTALK: self._send_dingtalk,
            CHANNEL_WECOM: self._send_wecom,
            CHANNEL_FEISHU: self._send_feishu,
            CHANNEL_WEBHOOK: self._send_webhook,
            CHANNEL_TELEGRAM: self._send_telegram,
            CHANNEL_EMAIL: self._send_email,
            CHANNEL_MQTT: self._send_mqtt,
        }

    def channels(self) -> List[Dict[str, Any]]:
        channels = self.property_store.get(PROPERTY_NOTIFICATION_CHANNELS, [])
        if not isinstance(channels, list):
            logger.warning(f"⚠️ {PROPERTY_NOTIFICATION_CHANNELS} is not a list, ignoring")
            return []
        return [c for c in channels if isinstance(c, dict)]

    def notify(self, event: NotificationEvent) -> Optional[threading.Thread]:
        """Deliver an event on a background thread"""
        if not any(c.get('enabled') for c in self.channels()):
            logger.debug(f"No notification channel enabled, skipping {event.type} alert")
            return None

        thread = threading.Thread(target=self.deliver, args=(event,), name="notifier", daemon=True)
        thread.start()
        return thread

    def deliver(self, event: NotificationEvent) -> int:
        """Send an event to every enabled channel. Returns the number of successful deliveries."""
        message = format_event(event)
        delivered = 0
        for channel in self.channels():
            if not channel.get('enabled'):
                continue
            channel_type = channel.get('type', '')
            try:
                self.send(channel_type, channel.get('config') or {}, message, event)
                delivered += 1
                logger.info(f"🔔 {event.type} alert sent via {channel_type}")
            except NotifyError as e:
                logger.error(f"❌ Notification failed: {e}")
            except Exception as e:
                logger.error(f"❌ Unexpected error notifying via {channel_type}: {e}", exc_info=True)
        return delivered

    def send_test(self, channel_type: str):
        """Send a fixed test message through one configured channel; raises NotifyError"""
        for channel in self.channels():
            if channel.get('type') != channel_type:
                continue
            if not channel.get('enabled'):
                raise NotifyError(channel_type, "channel is disabled")
            event = NotificationEvent(type="test", from_="", content=TEST_MESSAGE, timestamp=int(time.time()))
            self.send(channel_type, channel.get('config') or {}, TEST_MESSAGE, event)
            return
        raise NotifyError(channel_type, "channel is not configured")

    def send(self, channel_type: str, config: Dict[str, Any], message: str, event: NotificationEvent):
        sender = self._senders.get(channel_type)
        if sender is None:
            raise NotifyError(channel_type, "unsupported channel type")
        sender(config, message, event)

    # HTTP helpers

    def _post_json(self, channel: str, url: str, body: Dict[str, Any], params: Optional[Dict[str, Any]] = None):
        try:
            response = self.session.post(url, json=body, params=params, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise NotifyError(channel, f"network error: {e}") from e
        if not 200 <= response.status_code < 300:
            raise NotifyError(channel, f"HTTP {response.status_code} - {response.text}")
        return response

    @staticmethod
    def _require(channel: str, config: Dict[str, Any], key: str) -> str:
        value = config.get(key)
        if not value:
            raise NotifyError(channel, f"missing {key}")
        return str(value)

    # Channels

    def _send_dingtalk(self, config, message, event):
        key = self._require(CHANNEL_DINGTALK, config, 'secretKey')
        params = None
        sign_secret = config.get('signSecret')
        if sign_secret:
            timestamp_ms = int(time.time() * 1000)
            params = {'timestamp': timestamp_ms, 'sign': dingtalk_sign(timestamp_ms, sign_secret)}
        body = {'msgtype': 'text', 'text': {'content': message}}
        response = self._post_json(CHANNEL_DINGTALK, DINGTALK_URL.format(key=key), body, params=params)
        self._check_errcode(CHANNEL_DINGTALK, response)

    def _send_wecom(self, config, message, event):
        key = self._require(CHANNEL_WECOM, config, 'secretKey')
        body = {'msgtype': 'text', 'text': {'content': message}}
        response = self._post_json(CHANNEL_WECOM, WECOM_URL.format(key=key), body)
        self._check_errcode(CHANNEL_WECOM, response)

    def _send_feishu(self, config, message, event):
        key = self._require(CHANNEL_FEISHU, config, 'secretKey')
        body = {'msg_type': 'text', 'content': {'text': message}}
        self._post_json(CHANNEL_FEISHU, FEISHU_URL.format(key=key), body)

    @staticmethod
    def _check_errcode(channel: str, response):
        try:
            result = response.json()
        except ValueError as e:
            raise NotifyError(channel, f"invalid response: {response.text}") from e
        if isinstance(result, dict) and result.get('errcode', 0) != 0:
            raise NotifyError(channel, result.get('errmsg', 'unknown error'))

    def _send_webhook(self, config, message, event):
        url = self._require(CHANNEL_WEBHOOK, config, 'url')
        method = (config.get('method') or 'POST').upper()
        headers = {k: v for k, v in (config.get('headers') or {}).items() if isinstance(v, str)}
        template = config.get('bodyTemplate') or 'json'

        kwargs: Dict[str, Any] = {}
        if template == 'json':
            kwargs['json'] = {'msg_type': 'text', 'text': {'content': message}}
        elif template == 'form':
            kwargs['data'] = {'message': message}
        elif template == 'custom':
            custom_body = config.get('customBody')
            if not custom_body:
                raise NotifyError(CHANNEL_WEBHOOK, "customBody is required for the custom template")
            body = render_template(custom_body, {
                'message': message,
                'from': event.from_,
                'content': event.content,
                'type': event.type,
                'timestamp': event.timestamp,
            })
            logger.debug(f"Custom webhook body: {body}")
            kwargs['data'] = body.encode('utf-8')
            headers.setdefault('Content-Type', 'text/plain')
        else:
            raise NotifyError(CHANNEL_WEBHOOK, f"unsupported bodyTemplate: {template}")

        try:
            response = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            raise NotifyError(CHANNEL_WEBHOOK, f"network error: {e}") from e
        if not 200 <= response.status_code < 300:
            raise NotifyError(CHANNEL_WEBHOOK, f"HTTP {response.status_code} - {response.text}")

    def _send_telegram(self, config, message, event):
        token = self._require(CHANNEL_TELEGRAM, config, 'botToken')
        chat_id = self._require(CHANNEL_TELEGRAM, config, 'chatId')
        base_url = (config.get('apiUrl') or '').rstrip('/')
        url = TELEGRAM_URL.format(token=token)
        if base_url:
            url = f"{base_url}/bot{token}/sendMessage"
        response = self._post_json(CHANNEL_TELEGRAM, url, {'chat_id': chat_id, 'text': message})
        try:
            ok = response.json().get('ok', False)
        except (ValueError, AttributeError):
            ok = False
        if not ok:
            raise NotifyError(CHANNEL_TELEGRAM, f"API rejected message: {response.text}")

    def _send_email(self, config, message, event):
        host = self._require(CHANNEL_EMAIL, config, 'host')
        sender = self._require(CHANNEL_EMAIL, config, 'from')
        recipients = config.get('to') or []
        if isinstance(recipients, str):
            recipients = [r.strip() for r in recipients.split(',') if r.strip()]
        if not recipients:
            raise NotifyError(CHANNEL_EMAIL, "missing to")

        use_ssl = bool(config.get('useSsl'))
        port = int(config.get('port') or (465 if use_ssl else 25))

        mime = MIMEText(message, 'plain', 'utf-8')
        mime['Subject'] = config.get('subject') or message.splitlines()[0]
        mime['From'] = sender
        mime['To'] = ', '.join(recipients)

        smtp_class = smtplib.SMTP_SSL if use_ssl else smtplib.SMTP
        try:
            with smtp_class(host, port, timeout=self.timeout) as smtp:
                if not use_ssl and config.get('useStarttls'):
                    smtp.starttls()
                if config.get('username'):
                    smtp.login(config['username'], config.get('password', ''))
                smtp.sendmail(sender, recipients, mime.as_string())
        except (smtplib.SMTPException, OSError) as e:
            raise NotifyError(CHANNEL_EMAIL, str(e)) from e

    def _send_mqtt(self, config, message, event):
        host = self._require(CHANNEL_MQTT, config, 'host')
        topic = config.get('topic') or 'sms_gateway/events'
        auth = None
        if config.get('username'):
            auth = {'username': config['username'], 'password': config.get('password', '')}

        payload = json.dumps(dict(event.to_dict(), message=message), ensure_ascii=False)
        try:
            mqtt_publish.single(
                topic,
                payload=payload,
                qos=int(config.get('qos', 1)),
                retain=False,
                hostname=host,
                port=int(config.get('port') or 1883),
                auth=auth,
                client_id=config.get('clientId', ''),
            )
        except (MQTTException, OSError, ValueError) as e:
            raise NotifyError(CHANNEL_MQTT, str(e)) from e
