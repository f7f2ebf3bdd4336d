"""
余额流水模型
"""
from datetime import datetime
from enum import Enum
from sqlalchemy import String, Integer, BigInteger, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from panel_billing.database import Base


class TransactionType(str, Enum):
    """交易类型"""
    RECHARGE = "recharge"      # 充值
    CONSUME = "consume"        # 消费
    REFUND = "refund"          # 退款 / 折算返还
    ADJUST = "adjust"          # 管理员调整


SYSTEM_OPERATOR = "system"


class BalanceTransaction(Base):
    """余额流水表（只追加，不修改）"""
    __tablename__ = "balance_transactions"

    # 自增主键保证同一时刻写入的流水仍有确定的先后顺序
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id"), index=True
    )
    type: Mapped[str] = mapped_column(String(20))
    amount: Mapped[int] = mapped_column(Integer)  # 正数增加，负数减少
    balance_after: Mapped[int] = mapped_column(Integer)  # 交易后余额
    order_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("orders.id"), nullable=True, index=True
    )
    description: Mapped[str] = mapped_column(String(256), nullable=True)
    operator: Mapped[str] = mapped_column(String(64), default=SYSTEM_OPERATOR)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, index=True
    )

    def __repr__(self):
        return f"<BalanceTransaction {self.type}: {self.amount} -> {self.balance_after}>"
