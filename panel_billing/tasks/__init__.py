"""
Celery 任务模块

- billing_tasks: 到期降级执行、超时订单取消
"""
from panel_billing.celery_app import celery_app

__all__ = ["celery_app"]
