"""
套餐目录服务
"""
import logging
from typing import List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from panel_billing.models.plan import Plan
from panel_billing.services.errors import PlanNotFound, PlanInactive

logger = logging.getLogger(__name__)


class PlanService:
    """套餐查询与上下架"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_plan(self, plan_id: str) -> Plan:
        result = await self.db.execute(select(Plan).where(Plan.id == plan_id))
        plan = result.scalar_one_or_none()
        if not plan:
            raise PlanNotFound("套餐不存在")
        return plan

    async def get_purchasable_plan(self, plan_id: str) -> Plan:
        """获取可购买的套餐，已下架时抛出 PlanInactive"""
        plan = await self.get_plan(plan_id)
        if not plan.is_active:
            raise PlanInactive("套餐已下架")
        return plan

    async def list_plans(self, active_only: bool = True) -> List[Plan]:
        query = select(Plan)
        if active_only:
            query = query.where(Plan.is_active == True)  # noqa: E712
        query = query.order_by(Plan.sort_order, Plan.price)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def set_active(self, plan_id: str, is_active: bool) -> Plan:
        """上架/下架套餐，不修改价格与时长"""
        plan = await self.get_plan(plan_id)
        plan.is_active = is_active
        await self.db.flush()
        logger.info(f"套餐{'上架' if is_active else '下架'}: plan={plan_id}")
        return plan
