"""
UART SMS Gateway - Persistence
JSON-file stores for text messages, scheduled tasks and generic properties

Licensed under Apache License 2.0
"""

import json
import logging
import os
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .const import (
    MESSAGE_STATUS_FAILED,
    MESSAGE_STATUS_SENDING,
    MESSAGE_TYPE_INCOMING,
    MESSAGE_TYPE_OUTGOING,
)
from .errors import StoreError
from .models import ScheduledTask, TextMessage, now_ms

logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGES = 5000


def _read_json(path: str, default: Any) -> Any:
    """Read a JSON file, returning default when it does not exist or is unreadable"""
    try:
        if os.path.exists(path):
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f)
        logger.info(f"📂 {os.path.basename(path)} not found, starting fresh")
    except Exception as e:
        logger.error(f"Error loading {path}: {e}")
    return default


def _write_json(path: str, data: Any):
    """Write JSON atomically via a temp file, raising StoreError on failure"""
    try:
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, path)
    except (OSError, TypeError, ValueError) as e:
        raise StoreError(f"Error saving {path}: {e}") from e


class MessageStore:
    """Incoming and outgoing text messages (thread-safe).

    Mutations raise StoreError when the file cannot be written and leave the
    in-memory state as it was before the call.
    """

    def __init__(self, data_dir: str, max_messages: int = DEFAULT_MAX_MESSAGES):
        self.path = os.path.join(data_dir, 'messages.json')
        self.max_messages = max_messages
        self._lock = threading.Lock()
        self._messages: Dict[str, TextMessage] = {}
        self._load()

    def _load(self):
        data = _read_json(self.path, {'messages': []})
        for item in data.get('messages', []):
            try:
                msg = TextMessage.from_dict(item)
            except (KeyError, TypeError) as e:
                logger.warning(f"⚠️ Skipping malformed message record: {e}")
                continue
            self._messages[msg.id] = msg
        if self._messages:
            logger.info(f"📜 Loaded {len(self._messages)} messages")

    def _save(self):
        _write_json(self.path, {'messages': [m.to_dict() for m in self._messages.values()]})

    def _commit(self, snapshot: Dict[str, TextMessage]):
        """Persist, putting the previous contents back if the write fails"""
        try:
            self._save()
        except StoreError:
            self._messages = snapshot
            raise

    def _trim(self):
        excess = len(self._messages) - self.max_messages
        if self.max_messages <= 0 or excess <= 0:
            return
        oldest = sorted(self._messages.values(), key=lambda m: (m.created_at, m.timestamp))[:excess]
        for msg in oldest:
            del self._messages[msg.id]
        logger.debug(f"📜 Dropped {excess} oldest messages")

    def save(self, msg: TextMessage) -> TextMessage:
        with self._lock:
            now = now_ms()
            if not msg.created_at:
                msg.created_at = now
            msg.updated_at = now
            snapshot = dict(self._messages)
            self._messages[msg.id] = msg
            self._trim()
            self._commit(snapshot)
        return msg

    def get(self, msg_id: str) -> Optional[TextMessage]:
        with self._lock:
            return self._messages.get(str(msg_id))

    def update_status(self, msg_id: str, status: str) -> bool:
        with self._lock:
            msg = self._messages.get(str(msg_id))
            if msg is None:
                return False
            previous = (msg.status, msg.updated_at)
            msg.status = status
            msg.updated_at = now_ms()
            try:
                self._save()
            except StoreError:
                msg.status, msg.updated_at = previous
                raise
            return True

    def list(self, page: int = 1, page_size: int = 20, type: str = "", status: str = "",
             keyword: str = "") -> Tuple[List[TextMessage], int]:
        """Paged listing, newest first. Returns (items, total)."""
        with self._lock:
            items = list(self._messages.values())

        if type:
            items = [m for m in items if m.type == type]
        if status:
            items = [m for m in items if m.status == status]
        if keyword:
            items = [m for m in items if keyword in m.content or keyword in m.from_ or keyword in m.to]

        items.sort(key=lambda m: m.timestamp, reverse=True)
        total = len(items)
        page = max(page, 1)
        page_size = max(page_size, 1)
        start = (page - 1) * page_size
        return items[start:start + page_size], total

    def delete(self, msg_id: str) -> bool:
        with self._lock:
            snapshot = dict(self._messages)
            if self._messages.pop(str(msg_id), None) is None:
                return False
            self._commit(snapshot)
            return True

    def clear(self):
        with self._lock:
            snapshot = dict(self._messages)
            self._messages.clear()
            self._commit(snapshot)
        logger.info("📜 Message history cleared")

    def stats(self) -> Dict[str, int]:
        midnight = datetime.now().replace(hour=0, minute=0, second=0, microsecond=0)
        today_ms = int(midnight.timestamp() * 1000)
        with self._lock:
            items = list(self._messages.values())
        return {
            'totalCount': len(items),
            'incomingCount': sum(1 for m in items if m.type == MESSAGE_TYPE_INCOMING),
            'outgoingCount': sum(1 for m in items if m.type == MESSAGE_TYPE_OUTGOING),
            'todayCount': sum(1 for m in items if m.timestamp >= today_ms),
        }

    def conversations(self) -> List[Dict[str, Any]]:
        """One summary per peer number, most recent conversation first"""
        with self._lock:
            items = sorted(self._messages.values(), key=lambda m: m.timestamp)

        summaries: Dict[str, Dict[str, Any]] = {}
        for msg in items:
            peer = msg.peer
            if not peer:
                continue
            summary = summaries.setdefault(peer, {'peer': peer, 'messageCount': 0})
            summary['messageCount'] += 1
            summary['lastMessage'] = msg.content
            summary['lastMessageType'] = msg.type
            summary['lastMessageTime'] = msg.timestamp
        return sorted(summaries.values(), key=lambda s: s['lastMessageTime'], reverse=True)

    def conversation_messages(self, peer: str) -> List[TextMessage]:
        with self._lock:
            items = [m for m in self._messages.values() if m.peer == peer]
        return sorted(items, key=lambda m: m.timestamp)

    def delete_conversation(self, peer: str) -> int:
        with self._lock:
            ids = [m.id for m in self._messages.values() if m.peer == peer]
            if ids:
                snapshot = dict(self._messages)
                for msg_id in ids:
                    del self._messages[msg_id]
                self._commit(snapshot)
        return len(ids)

    def fail_stale_sending(self, timeout_seconds: float) -> List[str]:
        """Mark outgoing messages stuck in 'sending' longer than the timeout as failed"""
        if timeout_seconds <= 0:
            return []
        cutoff = now_ms() - int(timeout_seconds * 1000)
        with self._lock:
            stale = [
                m for m in self._messages.values()
                if m.type == MESSAGE_TYPE_OUTGOING and m.status == MESSAGE_STATUS_SENDING
                and m.created_at and m.created_at < cutoff
            ]
            if not stale:
                return []
            previous = [(m.status, m.updated_at) for m in stale]
            now = now_ms()
            for msg in stale:
                msg.status = MESSAGE_STATUS_FAILED
                msg.updated_at = now
            try:
                self._save()
            except StoreError:
                for msg, (status, updated_at) in zip(stale, previous):
                    msg.status, msg.updated_at = status, updated_at
                raise
        return [m.id for m in stale]


class ScheduledTaskStore:
    """Recurring send tasks (thread-safe)"""

    def __init__(self, data_dir: str):
        self.path = os.path.join(data_dir, 'scheduled_tasks.json')
        self._lock = threading.Lock()
        self._tasks: Dict[str, ScheduledTask] = {}
        self._load()

    def _load(self):
        data = _read_json(self.path, {'tasks': []})
        for item in data.get('tasks', []):
            task = ScheduledTask.from_dict(item)
            if task.id:
                self._tasks[task.id] = task
        if self._tasks:
            logger.info(f"⏰ Loaded {len(self._tasks)} scheduled tasks")

    def _save(self):
        _write_json(self.path, {'tasks': [t.to_dict() for t in self._tasks.values()]})

    def _commit(self, snapshot: Dict[str, ScheduledTask]):
        try:
            self._save()
        except StoreError:
            self._tasks = snapshot
            raise

    def all(self) -> List[ScheduledTask]:
        with self._lock:
            return sorted(self._tasks.values(), key=lambda t: t.created_at)

    def enabled(self) -> List[ScheduledTask]:
        return [t for t in self.all() if t.enabled]

    def get(self, task_id: str) -> Optional[ScheduledTask]:
        with self._lock:
            return self._tasks.get(task_id)

    def create(self, task: ScheduledTask) -> ScheduledTask:
        with self._lock:
            now = now_ms()
            task.id = task.id or str(uuid.uuid4())
            task.created_at = now
            task.updated_at = now
            snapshot = dict(self._tasks)
            self._tasks[task.id] = task
            self._commit(snapshot)
        return task

    def update(self, task: ScheduledTask) -> ScheduledTask:
        with self._lock:
            if task.id not in self._tasks:
                raise StoreError(f"Scheduled task {task.id} not found")
            task.updated_at = now_ms()
            snapshot = dict(self._tasks)
            self._tasks[task.id] = task
            self._commit(snapshot)
        return task

    def delete(self, task_id: str) -> bool:
        with self._lock:
            snapshot = dict(self._tasks)
            if self._tasks.pop(task_id, None) is None:
                return False
            self._commit(snapshot)
            return True

    def find_by_message_id(self, msg_id: str) -> Optional[ScheduledTask]:
        with self._lock:
            for task in self._tasks.values():
                if task.last_message_id and task.last_message_id == msg_id:
                    return task
        return None


class PropertyStore:
    """Free-form JSON values keyed by property id (thread-safe)"""

    def __init__(self, data_dir: str, defaults: Optional[Dict[str, Any]] = None):
        self.path = os.path.join(data_dir, 'properties.json')
        self._lock = threading.Lock()
        self._values: Dict[str, Any] = _read_json(self.path, {})
        if not isinstance(self._values, dict):
            logger.error(f"Ignoring {self.path}: not a JSON object")
            self._values = {}
        seeded = False
        for key, value in (defaults or {}).items():
            if key not in self._values:
                self._values[key] = value
                seeded = True
        if seeded:
            self._save()

    def _save(self):
        _write_json(self.path, self._values)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._values.get(key, default)

    def set(self, key: str, value: Any):
        with self._lock:
            snapshot = dict(self._values)
            self._values[key] = value
            try:
                self._save()
            except StoreError:
                self._values = snapshot
                raise
        logger.debug(f"💾 Property {key} updated")
