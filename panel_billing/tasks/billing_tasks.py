"""
计费定时任务

- apply_scheduled_downgrades_task: 执行已到期的预约降级
- cancel_stale_orders_task: 取消超过支付时限的待支付订单
"""
import logging
from datetime import datetime
from typing import Dict, Any

from panel_billing.celery_app import celery_app
from panel_billing.tasks.base import record_task_result, run_async
from panel_billing.utils.request_context import request_id_ctx

logger = logging.getLogger(__name__)


async def apply_scheduled_downgrades() -> Dict[str, Any]:
    from panel_billing.database import AsyncSessionLocal
    from panel_billing.services.plan_change_service import PlanChangeService

    async with AsyncSessionLocal() as db:
        return await PlanChangeService(db).apply_scheduled_downgrades()


async def cancel_stale_orders() -> Dict[str, Any]:
    from panel_billing.database import AsyncSessionLocal
    from panel_billing.services.order_service import OrderService

    async with AsyncSessionLocal() as db:
        cancelled = await OrderService(db).cancel_stale_pending()
    return {"cancelled": cancelled}


def _run_tracked(task_id: str, task_name: str, func) -> Dict[str, Any]:
    start_time = datetime.now()
    with request_id_ctx(task_id):
        logger.info(f"[{task_id}] 开始执行 {task_name}")
        try:
            result = run_async(func)
        except Exception as e:
            logger.error(f"[{task_id}] {task_name} 执行失败: {e}")
            record_task_result(
                task_id=task_id,
                task_name=task_name,
                status="failed",
                error=str(e),
                duration=(datetime.now() - start_time).total_seconds(),
            )
            raise

        return record_task_result(
            task_id=task_id,
            task_name=task_name,
            status="success",
            result=result,
            duration=(datetime.now() - start_time).total_seconds(),
        )


@celery_app.task(
    name="panel_billing.tasks.billing_tasks.apply_scheduled_downgrades_task",
    bind=True,
)
def apply_scheduled_downgrades_task(self) -> Dict[str, Any]:
    """执行到期降级（定时任务）"""
    return _run_tracked(self.request.id, "apply_scheduled_downgrades", apply_scheduled_downgrades)


@celery_app.task(
    name="panel_billing.tasks.billing_tasks.cancel_stale_orders_task",
    bind=True,
)
def cancel_stale_orders_task(self) -> Dict[str, Any]:
    """取消超时未支付订单（定时任务）"""
    return _run_tracked(self.request.id, "cancel_stale_orders", cancel_stale_orders)
