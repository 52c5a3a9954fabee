"""
UART SMS Gateway - Scheduled SMS
Daily check of recurring send tasks plus their CRUD operations

Licensed under Apache License 2.0
"""

import logging
import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .const import (
    DEFAULT_SCHEDULER_CHECK_HOUR,
    MESSAGE_STATUS_FAILED,
    MESSAGE_STATUS_SENDING,
)
from .errors import GatewayError, StoreError
from .models import ScheduledTask, now_ms

logger = logging.getLogger(__name__)

MS_PER_DAY = 24 * 60 * 60 * 1000


class TaskValidationError(ValueError):
    """Rejected scheduled task payload"""


def validate_task(task: ScheduledTask):
    if not task.name.strip():
        raise TaskValidationError("name is required")
    if not task.phone_number.strip():
        raise TaskValidationError("phoneNumber is required")
    if not task.content.strip():
        raise TaskValidationError("content is required")
    if task.interval_days < 1:
        raise TaskValidationError("intervalDays must be at least 1")


def is_task_due(task: ScheduledTask, now: datetime) -> bool:
    """Due when it never ran or at least interval_days whole days have passed"""
    if not task.last_run_at:
        return True
    days_since = (int(now.timestamp() * 1000) - task.last_run_at) // MS_PER_DAY
    return days_since >= task.interval_days


def seconds_until(hour: int, now: datetime) -> float:
    """Seconds from now until the next occurrence of hour:00 local time"""
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


class SchedulerService:
    """Runs due tasks once a day and keeps task run status in sync with send results"""

    def __init__(self, task_store, serial_service, check_hour: int = DEFAULT_SCHEDULER_CHECK_HOUR,
                 clock: Callable[[], datetime] = datetime.now):
        if not 0 <= check_hour <= 23:
            raise ValueError(f"check_hour must be 0-23, got {check_hour}")
        self.task_store = task_store
        self.serial_service = serial_service
        self.check_hour = check_hour
        self._clock = clock
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # Task management

    def list_tasks(self) -> List[ScheduledTask]:
        return self.task_store.all()

    def get_task(self, task_id: str) -> Optional[ScheduledTask]:
        return self.task_store.get(task_id)

    def create_task(self, data: Dict[str, Any]) -> ScheduledTask:
        task = ScheduledTask.from_dict(data)
        task.id = ""
        task.last_run_at = 0
        task.last_run_status = ""
        task.last_message_id = ""
        validate_task(task)
        task = self.task_store.create(task)
        logger.info(f"⏰ Scheduled task created: {task.name} (every {task.interval_days} days)")
        return task

    def update_task(self, task_id: str, data: Dict[str, Any]) -> Optional[ScheduledTask]:
        existing = self.task_store.get(task_id)
        if existing is None:
            return None
        merged = dict(existing.to_dict())
        for key in ('name', 'enabled', 'intervalDays', 'phoneNumber', 'content'):
            if key in data:
                merged[key] = data[key]
        task = ScheduledTask.from_dict(merged)
        validate_task(task)
        task = self.task_store.update(task)
        logger.info(f"⏰ Scheduled task updated: {task.name}")
        return task

    def delete_task(self, task_id: str) -> bool:
        deleted = self.task_store.delete(task_id)
        if deleted:
            logger.info(f"⏰ Scheduled task {task_id} deleted")
        return deleted

    # Scheduling

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="scheduler", daemon=True)
        self._thread.start()
        logger.info(f"⏰ Scheduler started (daily check at {self.check_hour:02d}:00)")

    def stop(self, timeout: float = 5.0):
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def _run(self):
        while True:
            delay = seconds_until(self.check_hour, self._clock())
            logger.debug(f"Next scheduled task check in {delay:.0f}s")
            if self._stop_event.wait(delay):
                return
            try:
                self.check_and_execute()
            except Exception as e:
                logger.error(f"❌ Scheduled task check failed: {e}", exc_info=True)

    def check_and_execute(self) -> List[str]:
        """Run every enabled task that is due. Returns the ids of tasks that ran."""
        logger.info("⏰ Checking scheduled tasks")
        now = self._clock()
        executed = []
        for task in self.task_store.enabled():
            if not is_task_due(task, now):
                continue
            logger.info(f"⏰ Task {task.name} is due (every {task.interval_days} days)")
            if self.execute_task(task):
                executed.append(task.id)
        return executed

    def run_now(self, task_id: str) -> Optional[ScheduledTask]:
        """Execute one task immediately, regardless of its schedule"""
        task = self.task_store.get(task_id)
        if task is None:
            return None
        self.execute_task(task)
        return self.task_store.get(task_id)

    def execute_task(self, task: ScheduledTask) -> bool:
        logger.info(f"📤 Running scheduled task {task.name}: SMS to {task.phone_number}")

        # Stored before the write so a fast sms_send_result finds this task
        msg_id = str(uuid.uuid4())
        task.last_message_id = msg_id
        task.last_run_status = MESSAGE_STATUS_SENDING
        self._save(task)

        try:
            self.serial_service.send_sms(task.phone_number, task.content, msg_id=msg_id)
        except GatewayError as e:
            logger.error(f"❌ Scheduled task {task.name} failed: {e}")
            task.last_run_status = MESSAGE_STATUS_FAILED
            self._save(task)
            return False

        task.last_run_at = now_ms()
        self._save(task)
        return True

    def on_send_result(self, msg_id: str, status: str):
        """Send result listener: record the final status on the task that sent msg_id"""
        task = self.task_store.find_by_message_id(msg_id)
        if task is None:
            return
        task.last_run_status = status
        self._save(task)
        logger.info(f"⏰ Scheduled task {task.name} last run: {status}")

    def _save(self, task: ScheduledTask):
        try:
            self.task_store.update(task)
        except StoreError as e:
            logger.error(f"❌ Failed to update scheduled task {task.id}: {e}")
