"""Constants for the UART SMS Gateway."""

# Wire envelope (upstream: gateway -> device, downstream: device -> gateway)
CMD_START = "CMD_START:"
CMD_END = ":CMD_END"
SMS_START = "SMS_START:"
SMS_END = ":SMS_END"
LINE_TERMINATOR = "\r\n"
# Receive side only; the 4096 byte limit applies to the firmware input buffer
MAX_LINE_BUFFER = 64 * 1024

# Serial line parameters (fixed for probing and normal operation)
BAUD_RATE = 115200
PROBE_READ_TIMEOUT = 1.0
PROBE_SETTLE_DELAY = 0.5
PROBE_READ_SIZE = 4096
READ_TIMEOUT = 1.0

# Status cache
STATUS_REFRESH_INTERVAL = 30
STATUS_CACHE_TTL = 300

# Reconnect backoff
RECONNECT_MIN_DELAY = 5
RECONNECT_MAX_DELAY = 60
RECONNECT_FACTOR = 2

# Outgoing SMS still "sending" after this many seconds are marked failed
SEND_CONFIRM_TIMEOUT = 600

# Upstream actions
ACTION_SEND_SMS = "send_sms"
ACTION_GET_STATUS = "get_status"
ACTION_RESET_STACK = "reset_stack"
ACTION_REBOOT_MCU = "reboot_mcu"
ACTION_SET_CELLULAR = "set_cellular"

# Downstream message types
TYPE_STATUS_RESPONSE = "status_response"
TYPE_SYSTEM_READY = "system_ready"
TYPE_HEARTBEAT = "heartbeat"
TYPE_CELLULAR_CONTROL_RESPONSE = "cellular_control_response"
TYPE_PHONE_NUMBER_RESPONSE = "phone_number_response"
TYPE_COMMAND_RESPONSE = "command_response"
TYPE_CMD_RESPONSE = "cmd_response"
TYPE_SIM_EVENT = "sim_event"
TYPE_WARNING = "warning"
TYPE_ERROR = "error"
TYPE_INCOMING_SMS = "incoming_sms"
TYPE_INCOMING_CALL = "incoming_call"
TYPE_SMS_SEND_RESULT = "sms_send_result"

# Link states
STATE_IDLE = "idle"
STATE_CONNECTING = "connecting"
STATE_CONNECTED = "connected"
STATE_DISCONNECTED = "disconnected"
STATE_STOPPED = "stopped"

# Text message records
MESSAGE_TYPE_INCOMING = "incoming"
MESSAGE_TYPE_OUTGOING = "outgoing"
MESSAGE_STATUS_RECEIVED = "received"
MESSAGE_STATUS_SENDING = "sending"
MESSAGE_STATUS_SENT = "sent"
MESSAGE_STATUS_FAILED = "failed"

# Notification events
EVENT_SMS = "sms"
EVENT_CALL = "call"

# Properties
PROPERTY_NOTIFICATION_CHANNELS = "notification_channels"

CHANNEL_DINGTALK = "dingtalk"
CHANNEL_WECOM = "wecom"
CHANNEL_FEISHU = "feishu"
CHANNEL_WEBHOOK = "webhook"
CHANNEL_TELEGRAM = "telegram"
CHANNEL_EMAIL = "email"
CHANNEL_MQTT = "mqtt"

NOTIFY_TIMEOUT = 10

# Scheduler
DEFAULT_SCHEDULER_CHECK_HOUR = 8
