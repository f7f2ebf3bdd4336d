"""
套餐相关 Schemas
"""
from pydantic import BaseModel
from datetime import datetime
from typing import Optional


class PlanResponse(BaseModel):
    """套餐响应"""
    id: str
    name: str
    description: Optional[str]
    price: int
    duration: int
    traffic_limit: int
    is_active: bool
    sort_order: int
    created_at: datetime

    class Config:
        from_attributes = True


class PlanActivationRequest(BaseModel):
    """上架/下架套餐（管理员）"""
    is_active: bool
