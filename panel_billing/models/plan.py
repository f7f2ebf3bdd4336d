"""
套餐模型 - 定义可购买的订阅套餐
"""
import uuid
from datetime import datetime
from sqlalchemy import String, Integer, BigInteger, Boolean, DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column
from panel_billing.database import Base


class Plan(Base):
    """订阅套餐表

    被订单引用后不再修改，下架只影响新购买。
    """
    __tablename__ = "plans"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name: Mapped[str] = mapped_column(String(128))  # 套餐名称
    description: Mapped[str] = mapped_column(Text, nullable=True)  # 描述
    price: Mapped[int] = mapped_column(Integer)  # 价格（分）
    duration: Mapped[int] = mapped_column(Integer)  # 时长（天）
    traffic_limit: Mapped[int] = mapped_column(BigInteger, default=0)  # 流量（字节），0 表示不限
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)  # 是否上架
    sort_order: Mapped[int] = mapped_column(Integer, default=0)  # 排序
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    def __repr__(self):
        return f"<Plan {self.name}: {self.price} / {self.duration}d>"
