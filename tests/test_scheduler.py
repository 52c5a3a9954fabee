"""
Tests for scheduled SMS tasks.

These tests verify:
- Due-date and next-check calculations
- Task validation and CRUD
- Execution success / failure bookkeeping
- Send result propagation to the owning task
"""
from datetime import datetime, timedelta
from unittest.mock import Mock

import pytest

from sms_gateway.errors import NotConnectedError
from sms_gateway.models import ScheduledTask
from sms_gateway.scheduler import (
    MS_PER_DAY,
    SchedulerService,
    TaskValidationError,
    is_task_due,
    seconds_until,
)

NOW = datetime(2024, 5, 1, 9, 30, 0)
NOW_MS = int(NOW.timestamp() * 1000)

TASK_DATA = {"name": "Keep SIM alive", "phoneNumber": "10086", "content": "CXLL", "intervalDays": 30}


@pytest.fixture
def serial_service():
    svc = Mock()
    svc.send_sms.side_effect = lambda to, content, msg_id=None: msg_id or "msg-1"
    return svc


@pytest.fixture
def scheduler(task_store, serial_service):
    return SchedulerService(task_store, serial_service, check_hour=8, clock=lambda: NOW)


class TestDueCalculation:
    """Test is_task_due and seconds_until."""

    def test_never_run_is_due(self):
        assert is_task_due(ScheduledTask(interval_days=30), NOW)

    @pytest.mark.parametrize("days_ago,due", [(0, False), (29, False), (30, True), (45, True)])
    def test_whole_days(self, days_ago, due):
        task = ScheduledTask(interval_days=30, last_run_at=NOW_MS - days_ago * MS_PER_DAY)
        assert is_task_due(task, NOW) is due

    def test_partial_day_does_not_count(self):
        task = ScheduledTask(interval_days=1, last_run_at=NOW_MS - MS_PER_DAY + 1000)
        assert not is_task_due(task, NOW)

    def test_seconds_until_later_today(self):
        assert seconds_until(10, NOW) == 30 * 60

    def test_seconds_until_rolls_to_tomorrow(self):
        assert seconds_until(8, NOW) == timedelta(hours=22, minutes=30).total_seconds()
        assert seconds_until(9, NOW.replace(minute=0)) == 24 * 3600


class TestTaskManagement:
    """Test task CRUD through the service."""

    def test_create(self, scheduler):
        task = scheduler.create_task(dict(TASK_DATA, lastRunAt=123, id="forged"))
        assert task.id and task.id != "forged"
        assert task.last_run_at == 0
        assert task.enabled is True
        assert scheduler.get_task(task.id).interval_days == 30

    @pytest.mark.parametrize("override", [
        {"name": " "}, {"phoneNumber": ""}, {"content": ""}, {"intervalDays": 0},
    ])
    def test_create_rejects_invalid(self, scheduler, override):
        with pytest.raises(TaskValidationError):
            scheduler.create_task(dict(TASK_DATA, **override))

    def test_update_merges_editable_fields(self, scheduler):
        task = scheduler.create_task(TASK_DATA)
        updated = scheduler.update_task(task.id, {"enabled": False, "content": "CXYE", "lastRunAt": 99})

        assert updated.enabled is False
        assert updated.content == "CXYE"
        assert updated.name == "Keep SIM alive"
        assert updated.last_run_at == 0

    def test_update_missing(self, scheduler):
        assert scheduler.update_task("ghost", {"name": "x"}) is None

    def test_delete(self, scheduler):
        task = scheduler.create_task(TASK_DATA)
        assert scheduler.delete_task(task.id) is True
        assert scheduler.list_tasks() == []

    def test_invalid_check_hour(self, task_store, serial_service):
        with pytest.raises(ValueError):
            SchedulerService(task_store, serial_service, check_hour=24)


class TestExecution:
    """Test running tasks."""

    def test_success_records_message(self, scheduler, serial_service):
        task = scheduler.create_task(TASK_DATA)

        assert scheduler.execute_task(task) is True

        msg_id = serial_service.send_sms.call_args.kwargs["msg_id"]
        serial_service.send_sms.assert_called_once_with("10086", "CXLL", msg_id=msg_id)
        stored = scheduler.get_task(task.id)
        assert stored.last_message_id == msg_id
        assert stored.last_run_status == "sending"
        assert stored.last_run_at > 0

    def test_failure_keeps_task_due(self, scheduler, serial_service):
        serial_service.send_sms.side_effect = NotConnectedError("Serial port not connected")
        task = scheduler.create_task(TASK_DATA)

        assert scheduler.execute_task(task) is False

        stored = scheduler.get_task(task.id)
        assert stored.last_run_status == "failed"
        assert stored.last_run_at == 0
        assert is_task_due(stored, NOW)

    def test_check_runs_only_due_enabled_tasks(self, scheduler, task_store, serial_service):
        due = scheduler.create_task(TASK_DATA)
        recent = scheduler.create_task(dict(TASK_DATA, name="recent"))
        recent.last_run_at = NOW_MS - MS_PER_DAY
        task_store.update(recent)
        scheduler.create_task(dict(TASK_DATA, name="off", enabled=False))

        assert scheduler.check_and_execute() == [due.id]
        assert serial_service.send_sms.call_count == 1

    def test_run_now_ignores_schedule(self, scheduler, task_store, serial_service):
        task = scheduler.create_task(TASK_DATA)
        task.last_run_at = NOW_MS
        task_store.update(task)

        result = scheduler.run_now(task.id)

        assert result.last_message_id == serial_service.send_sms.call_args.kwargs["msg_id"]
        serial_service.send_sms.assert_called_once()

    def test_run_now_missing(self, scheduler):
        assert scheduler.run_now("ghost") is None


class TestSendResult:
    """Test send result propagation."""

    def test_result_updates_owning_task(self, scheduler):
        task = scheduler.create_task(TASK_DATA)
        scheduler.execute_task(task)

        scheduler.on_send_result(scheduler.get_task(task.id).last_message_id, "sent")

        assert scheduler.get_task(task.id).last_run_status == "sent"

    def test_unrelated_message_is_ignored(self, scheduler):
        task = scheduler.create_task(TASK_DATA)
        scheduler.execute_task(task)

        scheduler.on_send_result("other", "failed")

        assert scheduler.get_task(task.id).last_run_status == "sending"

    def test_result_arriving_during_send_is_kept(self, scheduler, serial_service):
        """Test that a result delivered before send_sms returns still reaches the task."""
        def send_and_answer(to, content, msg_id=None):
            scheduler.on_send_result(msg_id, "sent")
            return msg_id

        serial_service.send_sms.side_effect = send_and_answer
        task = scheduler.create_task(TASK_DATA)

        assert scheduler.execute_task(task) is True

        stored = scheduler.get_task(task.id)
        assert stored.last_run_status == "sent"
        assert stored.last_run_at > 0

    def test_id_is_recorded_before_send(self, scheduler, serial_service, task_store):
        seen = {}

        def send(to, content, msg_id=None):
            seen["task"] = task_store.find_by_message_id(msg_id)
            return msg_id

        serial_service.send_sms.side_effect = send
        task = scheduler.create_task(TASK_DATA)
        scheduler.execute_task(task)

        assert seen["task"] is not None
        assert seen["task"].id == task.id


class TestLifecycle:
    """Test the background thread."""

    def test_start_stop(self, scheduler):
        scheduler.start()
        assert scheduler._thread.is_alive()
        scheduler.stop(timeout=2)
        assert not scheduler._thread.is_alive()
