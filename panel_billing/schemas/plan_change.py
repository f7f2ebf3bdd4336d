"""
套餐变更相关 Schemas
"""
from pydantic import BaseModel
from datetime import datetime


class PlanChangeRequest(BaseModel):
    """套餐变更请求"""
    current_plan_id: str
    new_plan_id: str


class PlanChangeQuote(BaseModel):
    """变更试算结果"""
    direction: str
    current_plan_id: str
    new_plan_id: str
    remaining_days: int
    prorated_credit: int
    charge_amount: int

    class Config:
        from_attributes = True


class PendingDowngradeResponse(BaseModel):
    """待生效降级"""
    id: str
    user_id: str
    current_plan_id: str
    new_plan_id: str
    effective_at: datetime
    created_at: datetime

    class Config:
        from_attributes = True
