"""
Celery 应用配置

队列：
- default: 默认队列
- billing: 计费定时任务（到期降级、超时订单）
"""
import os
from celery import Celery
from celery.schedules import crontab

from panel_billing.config import get_settings

settings = get_settings()

celery_app = Celery(
    "panel_billing",
    broker=settings.broker_url,
    backend=settings.result_backend_url,
    include=[
        "panel_billing.tasks.billing_tasks",
    ]
)

# Celery 配置
celery_app.conf.update(
    # 任务结果过期时间（1天）
    result_expires=86400,
    # 任务结果序列化格式
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # 任务超时设置
    task_time_limit=600,            # 硬超时：10 分钟后强制终止任务
    task_soft_time_limit=540,       # 软超时：9 分钟后发送 SoftTimeLimitExceeded 异常
    task_acks_late=True,            # 任务执行完成后才确认
    worker_prefetch_multiplier=1,   # 每次只预取一个任务
    # 任务路由
    task_routes={
        "panel_billing.tasks.billing_tasks.*": {"queue": "billing"},
    },
    # 失败任务处理
    task_reject_on_worker_lost=True,
    # 定时任务
    beat_schedule={
        # 执行到期的预约降级
        "apply-scheduled-downgrades": {
            "task": "panel_billing.tasks.billing_tasks.apply_scheduled_downgrades_task",
            "schedule": crontab(minute=f"*/{settings.downgrade_sweep_minutes}"),
        },
        # 取消超时未支付的订单
        "cancel-stale-orders": {
            "task": "panel_billing.tasks.billing_tasks.cancel_stale_orders_task",
            "schedule": crontab(minute="*/10"),
        },
    },
)

# Worker 配置
celery_app.conf.worker_max_tasks_per_child = 1000
celery_app.conf.worker_concurrency = os.cpu_count() or 4

if __name__ == "__main__":
    celery_app.start()
