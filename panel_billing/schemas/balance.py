"""
余额相关 Schemas
"""
from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from typing import Optional, List


class BalanceResponse(BaseModel):
    """余额"""
    balance: int


class BalanceTransactionResponse(BaseModel):
    """余额流水响应"""
    id: int
    type: str
    amount: int
    balance_after: int
    order_id: Optional[str]
    description: Optional[str]
    operator: str
    created_at: datetime

    class Config:
        from_attributes = True


class BalanceHistoryResponse(BaseModel):
    """余额流水列表响应"""
    transactions: List[BalanceTransactionResponse]
    total: int
    page: int
    page_size: int


class BalanceStatisticsResponse(BaseModel):
    """按类型汇总"""
    total_recharge: int
    total_spent: int
    total_refund: int
    total_adjust: int


class BalanceAdjustRequest(BaseModel):
    """管理员调整余额请求"""
    amount: int
    reason: str = Field(..., min_length=1, max_length=256)

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: int) -> int:
        if v == 0:
            raise ValueError("调整金额不能为 0")
        return v


class ReconcileResponse(BaseModel):
    """对账结果"""
    user_id: str
    transaction_count: int
    replayed_balance: int
    cached_balance: int
    mismatched_transaction_ids: List[int]
    consistent: bool
