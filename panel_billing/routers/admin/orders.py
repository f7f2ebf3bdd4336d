"""
订单管理路由
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from panel_billing.database import get_db
from panel_billing.models.user import User
from panel_billing.schemas.order import (
    OrderListResponse,
    OrderResponse,
    OrderStatusUpdateRequest,
    RefundRequest,
    RefundableAmountResponse,
)
from panel_billing.services.order_service import OrderService
from panel_billing.utils.security import get_admin_user

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/orders", response_model=OrderListResponse)
async def list_orders(
    status: Optional[str] = None,
    user_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    admin: User = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
):
    """订单列表，可按状态与用户筛选"""
    orders, total = await OrderService(db).list_orders(
        status=status, user_id=user_id, page=page, page_size=page_size
    )
    return OrderListResponse(
        orders=[OrderResponse.model_validate(o) for o in orders],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/orders/{order_no}", response_model=OrderResponse)
async def get_order(
    order_no: str,
    admin: User = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
):
    return await OrderService(db).get_by_order_no(order_no)


@router.put("/orders/{order_no}/status", response_model=OrderResponse)
async def update_order_status(
    order_no: str,
    request: OrderStatusUpdateRequest,
    admin: User = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
):
    """
    按状态机变更订单状态

    只修改状态，不联动余额；退款请使用 /refund。
    """
    service = OrderService(db)
    order = await service.get_by_order_no(order_no)
    order = await service.update_status(order.id, request.status.value)
    logger.info(f"管理员变更订单状态: order={order_no} status={order.status} admin={admin.username}")
    return order


@router.post("/orders/{order_no}/refund", response_model=OrderResponse)
async def refund_order(
    order_no: str,
    request: RefundRequest,
    admin: User = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
):
    """退款：返还余额，不传金额时全额退还实付金额"""
    service = OrderService(db)
    order = await service.get_by_order_no(order_no)
    order = await service.refund(order.id, reason=request.reason, amount=request.amount)
    logger.info(
        f"管理员退款: order={order_no} amount={request.amount or order.pay_amount} admin={admin.username}"
    )
    return order


@router.get("/orders/{order_no}/refundable", response_model=RefundableAmountResponse)
async def get_refundable_amount(
    order_no: str,
    admin: User = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
):
    service = OrderService(db)
    order = await service.get_by_order_no(order_no)
    return RefundableAmountResponse(
        order_no=order.order_no,
        max_refund_amount=await service.get_max_refund_amount(order.id),
    )
