"""
套餐管理路由
"""
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from panel_billing.database import get_db
from panel_billing.models.user import User
from panel_billing.schemas.plan import PlanActivationRequest, PlanResponse
from panel_billing.services.plan_service import PlanService
from panel_billing.utils.security import get_admin_user

router = APIRouter()


@router.get("/plans", response_model=List[PlanResponse])
async def list_all_plans(
    admin: User = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
):
    """全部套餐，包括已下架的"""
    return await PlanService(db).list_plans(active_only=False)


@router.put("/plans/{plan_id}/activation", response_model=PlanResponse)
async def set_plan_activation(
    plan_id: str,
    request: PlanActivationRequest,
    admin: User = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
):
    """上架/下架套餐"""
    return await PlanService(db).set_active(plan_id, request.is_active)
