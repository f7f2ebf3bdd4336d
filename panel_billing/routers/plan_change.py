"""
套餐变更路由 - 试算、升级、预约降级
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from panel_billing.database import get_db
from panel_billing.models.user import User
from panel_billing.schemas.order import OrderResponse
from panel_billing.schemas.plan_change import (
    PendingDowngradeResponse,
    PlanChangeQuote,
    PlanChangeRequest,
)
from panel_billing.services.plan_change_service import PlanChangeService
from panel_billing.utils.security import get_current_user

router = APIRouter()


@router.post("/calculate", response_model=PlanChangeQuote)
async def calculate_change(
    request: PlanChangeRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """试算变更金额，不产生写入"""
    change = await PlanChangeService(db).calculate_change(
        current_user.id, request.current_plan_id, request.new_plan_id
    )
    return PlanChangeQuote.model_validate(change)


@router.post("/upgrade", response_model=OrderResponse)
async def upgrade(
    request: PlanChangeRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """立即升级，按剩余天数折算后从余额扣款"""
    return await PlanChangeService(db).execute_upgrade(
        current_user.id, request.current_plan_id, request.new_plan_id
    )


@router.post("/downgrade", response_model=PendingDowngradeResponse)
async def schedule_downgrade(
    request: PlanChangeRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """预约降级，当前周期结束时生效"""
    return await PlanChangeService(db).schedule_downgrade(
        current_user.id, request.current_plan_id, request.new_plan_id
    )


@router.get("/pending", response_model=PendingDowngradeResponse)
async def get_pending_downgrade(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """查看待生效的降级"""
    return await PlanChangeService(db).get_pending_downgrade(current_user.id)


@router.delete("/pending")
async def cancel_pending_downgrade(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """取消待生效的降级"""
    await PlanChangeService(db).cancel_pending_downgrade(current_user.id)
    return {"message": "待生效降级已取消"}
