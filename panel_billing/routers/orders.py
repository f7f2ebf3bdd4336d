"""
订单路由 - 用户端
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from panel_billing.database import get_db
from panel_billing.models.user import User
from panel_billing.schemas.order import (
    CreateOrderRequest,
    OrderListResponse,
    OrderResponse,
)
from panel_billing.services.errors import OrderNotFound
from panel_billing.services.order_service import OrderService
from panel_billing.utils.security import get_current_user

router = APIRouter()


@router.post("", response_model=OrderResponse)
async def create_order(
    request: CreateOrderRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """创建待支付订单"""
    return await OrderService(db).create(current_user.id, request.plan_id)


@router.get("", response_model=OrderListResponse)
async def list_my_orders(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """获取我的订单列表"""
    orders, total = await OrderService(db).list_by_user(
        current_user.id, page=page, page_size=page_size
    )
    return OrderListResponse(
        orders=[OrderResponse.model_validate(o) for o in orders],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/{order_no}", response_model=OrderResponse)
async def get_order(
    order_no: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """获取订单详情"""
    order = await OrderService(db).get_by_order_no(order_no)
    if order.user_id != current_user.id:
        raise OrderNotFound("订单不存在")
    return order


@router.post("/{order_no}/pay", response_model=OrderResponse)
async def pay_order(
    order_no: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """使用余额支付订单"""
    service = OrderService(db)
    order = await service.get_by_order_no(order_no)
    return await service.pay_with_balance(order.id, user_id=current_user.id)


@router.post("/{order_no}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_no: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """取消待支付订单"""
    service = OrderService(db)
    order = await service.get_by_order_no(order_no)
    if order.user_id != current_user.id:
        raise OrderNotFound("订单不存在")
    return await service.cancel(order.id)
