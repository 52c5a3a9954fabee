"""Records exchanged between the serial link, storage, notifier and API"""

import time
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict

from .const import MESSAGE_STATUS_RECEIVED, MESSAGE_TYPE_INCOMING


def now_ms() -> int:
    return int(time.time() * 1000)


def as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _as_str(value: Any) -> str:
    return "" if value is None else str(value)


_COERCE = {bool: as_bool, int: _as_int, float: _as_float, str: _as_str}


def _coerce_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    """Pick known fields out of a payload, coercing simple types"""
    kwargs = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        convert = _COERCE.get(f.type)
        kwargs[f.name] = convert(data[f.name]) if convert else data[f.name]
    return kwargs


@dataclass
class MobileInfo:
    is_registered: bool = False
    is_roaming: bool = False
    iccid: str = ""
    signal_desc: str = ""
    signal_level: int = 0
    sim_ready: bool = False
    rssi: int = 0
    csq: int = 0
    rsrp: int = 0
    rsrq: float = 0.0
    imsi: str = ""
    number: str = ""
    operator: str = ""
    uptime: int = 0

    @classmethod
    def from_payload(cls, data: Any) -> "MobileInfo":
        if not isinstance(data, dict):
            return cls()
        return cls(**_coerce_fields(cls, data))


@dataclass
class StatusData:
    """Last known device status plus gateway-local connection fields"""
    cellular_enabled: bool = False
    type: str = ""
    version: str = ""
    mobile: MobileInfo = field(default_factory=MobileInfo)
    timestamp: int = 0
    mem_kb: int = 0
    port_name: str = ""
    connected: bool = False

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "StatusData":
        kwargs = _coerce_fields(cls, {k: v for k, v in data.items() if k != "mobile"})
        # Connection fields are owned by the gateway, never by the device
        kwargs.pop("port_name", None)
        kwargs.pop("connected", None)
        return cls(mobile=MobileInfo.from_payload(data.get("mobile")), **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TextMessage:
    id: str
    from_: str = ""
    to: str = ""
    content: str = ""
    type: str = MESSAGE_TYPE_INCOMING
    status: str = MESSAGE_STATUS_RECEIVED
    timestamp: int = 0
    created_at: int = 0
    updated_at: int = 0

    @property
    def peer(self) -> str:
        """The other party of the conversation"""
        return self.from_ if self.type == MESSAGE_TYPE_INCOMING else self.to

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "from": self.from_,
            "to": self.to,
            "content": self.content,
            "type": self.type,
            "status": self.status,
            "timestamp": self.timestamp,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TextMessage":
        return cls(
            id=str(data["id"]),
            from_=data.get("from", ""),
            to=data.get("to", ""),
            content=data.get("content", ""),
            type=data.get("type", MESSAGE_TYPE_INCOMING),
            status=data.get("status", MESSAGE_STATUS_RECEIVED),
            timestamp=_as_int(data.get("timestamp")),
            created_at=_as_int(data.get("createdAt")),
            updated_at=_as_int(data.get("updatedAt")),
        )


@dataclass
class ScheduledTask:
    id: str = ""
    name: str = ""
    enabled: bool = True
    interval_days: int = 1
    phone_number: str = ""
    content: str = ""
    created_at: int = 0
    updated_at: int = 0
    last_run_at: int = 0
    last_run_status: str = ""
    last_message_id: str = ""

    _KEYS = {
        "id": "id",
        "name": "name",
        "enabled": "enabled",
        "interval_days": "intervalDays",
        "phone_number": "phoneNumber",
        "content": "content",
        "created_at": "createdAt",
        "updated_at": "updatedAt",
        "last_run_at": "lastRunAt",
        "last_run_status": "lastRunStatus",
        "last_message_id": "lastMessageId",
    }

    def to_dict(self) -> Dict[str, Any]:
        return {key: getattr(self, attr) for attr, key in self._KEYS.items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScheduledTask":
        renamed = {attr: data[key] for attr, key in cls._KEYS.items() if key in data}
        return cls(**_coerce_fields(cls, renamed))


@dataclass
class NotificationEvent:
    type: str
    from_: str
    content: str
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "from": self.from_, "content": self.content, "timestamp": self.timestamp}
