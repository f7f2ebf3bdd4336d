import pytest

from panel_billing.celery_app import celery_app
from panel_billing.tasks import billing_tasks


def test_beat_schedule_registers_billing_sweeps():
    schedule = celery_app.conf.beat_schedule

    assert schedule["apply-scheduled-downgrades"]["task"] == (
        "panel_billing.tasks.billing_tasks.apply_scheduled_downgrades_task"
    )
    assert schedule["cancel-stale-orders"]["task"] == (
        "panel_billing.tasks.billing_tasks.cancel_stale_orders_task"
    )


def test_apply_scheduled_downgrades_task_reports_result(monkeypatch):
    async def fake_apply():
        return {"processed": 2, "failed": 0, "order_nos": ["ORD-20260114-AAAAAAAA", "ORD-20260114-BBBBBBBB"]}

    monkeypatch.setattr(billing_tasks, "apply_scheduled_downgrades", fake_apply)

    result = billing_tasks.apply_scheduled_downgrades_task.apply().get()

    assert result["status"] == "success"
    assert result["task_name"] == "apply_scheduled_downgrades"
    assert result["result"]["processed"] == 2


def test_cancel_stale_orders_task_propagates_failure(monkeypatch):
    async def broken():
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(billing_tasks, "cancel_stale_orders", broken)

    outcome = billing_tasks.cancel_stale_orders_task.apply()

    assert outcome.failed()
    with pytest.raises(RuntimeError):
        outcome.get()
