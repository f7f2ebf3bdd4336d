"""
数据库模型
"""
from panel_billing.models.user import User
from panel_billing.models.plan import Plan
from panel_billing.models.order import Order, OrderStatus, PaymentMethod
from panel_billing.models.balance import BalanceTransaction, TransactionType
from panel_billing.models.pending_downgrade import PendingDowngrade

__all__ = [
    "User",
    "Plan",
    "Order",
    "OrderStatus",
    "PaymentMethod",
    "BalanceTransaction",
    "TransactionType",
    "PendingDowngrade",
]
