"""
订单模型
"""
import uuid
from datetime import datetime
from enum import Enum
from sqlalchemy import String, Integer, DateTime, ForeignKey, Text, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from panel_billing.database import Base


class OrderStatus(str, Enum):
    """订单状态"""
    PENDING = "pending"  # 待支付
    PAID = "paid"  # 已支付
    COMPLETED = "completed"  # 已完成
    CANCELLED = "cancelled"  # 已取消
    REFUNDED = "refunded"  # 已退款


class PaymentMethod(str, Enum):
    """支付方式"""
    BALANCE = "balance"  # 余额支付
    GATEWAY = "gateway"  # 外部支付网关
    PLAN_CHANGE = "plan_change"  # 预约套餐变更生效，无需支付


class Order(Base):
    """订单表"""
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("pay_amount <= original_amount", name="ck_orders_pay_amount"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    order_no: Mapped[str] = mapped_column(String(64), unique=True, index=True)  # ORD-20260114-XXXXXXXX
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), index=True)
    plan_id: Mapped[str] = mapped_column(String(36), ForeignKey("plans.id"), index=True)
    original_amount: Mapped[int] = mapped_column(Integer)  # 原价（分）
    pay_amount: Mapped[int] = mapped_column(Integer)  # 实付（分），不超过原价
    status: Mapped[str] = mapped_column(
        String(32), default=OrderStatus.PENDING.value, index=True
    )
    payment_method: Mapped[str] = mapped_column(String(32), nullable=True)
    paid_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    expired_at: Mapped[datetime] = mapped_column(DateTime, index=True)  # 订阅到期时间
    notes: Mapped[str] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    # 关系
    user = relationship("User", back_populates="orders", lazy="noload")
    plan = relationship("Plan", lazy="noload")

    def __repr__(self):
        return f"<Order {self.order_no}: {self.status}>"
