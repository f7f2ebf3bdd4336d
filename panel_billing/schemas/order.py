"""
订单相关 Schemas
"""
from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List

from panel_billing.models.order import OrderStatus


class CreateOrderRequest(BaseModel):
    """创建订单请求"""
    plan_id: str


class OrderResponse(BaseModel):
    """订单响应"""
    id: str
    order_no: str
    user_id: str
    plan_id: str
    original_amount: int
    pay_amount: int
    status: str
    payment_method: Optional[str]
    paid_at: Optional[datetime]
    expired_at: datetime
    notes: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class OrderListResponse(BaseModel):
    """订单列表响应"""
    orders: List[OrderResponse]
    total: int
    page: int
    page_size: int


class OrderStatusUpdateRequest(BaseModel):
    """管理员变更订单状态"""
    status: OrderStatus


class RefundRequest(BaseModel):
    """退款请求"""
    reason: str = Field("", max_length=200)
    amount: Optional[int] = None  # 不传则全额退款


class RefundableAmountResponse(BaseModel):
    """可退款金额"""
    order_no: str
    max_refund_amount: int
