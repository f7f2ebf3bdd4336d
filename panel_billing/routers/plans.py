"""
套餐路由 - 用户端
"""
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from panel_billing.database import get_db
from panel_billing.schemas.plan import PlanResponse
from panel_billing.services.plan_service import PlanService

router = APIRouter()


@router.get("", response_model=List[PlanResponse])
async def list_plans(db: AsyncSession = Depends(get_db)):
    """获取可购买套餐列表"""
    return await PlanService(db).list_plans(active_only=True)


@router.get("/{plan_id}", response_model=PlanResponse)
async def get_plan(
    plan_id: str,
    db: AsyncSession = Depends(get_db),
):
    """获取单个套餐详情"""
    return await PlanService(db).get_plan(plan_id)
