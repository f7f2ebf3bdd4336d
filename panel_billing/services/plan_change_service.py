"""
套餐变更服务 - 升级立即生效，降级在下个计费周期生效

折算规则:
    当前套餐剩余价值 = 当前套餐价格 * 剩余天数 // 当前套餐时长（向下取整）
    升级应付金额 = max(0, 新套餐价格 - 剩余价值)
降级不折算、不退款、不立即扣费，只记录一条待生效降级，
在当前订单到期时由定时任务生成零元新套餐订单并直接生效。
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from panel_billing.database import atomic
from panel_billing.models.order import Order, OrderStatus, PaymentMethod
from panel_billing.models.pending_downgrade import PendingDowngrade
from panel_billing.models.plan import Plan
from panel_billing.models.user import User
from panel_billing.services.errors import (
    BillingError,
    DowngradeNotAllowed,
    NoActiveSubscription,
    NoPendingDowngrade,
    PendingDowngradeExists,
    PlanInactive,
    PlanNotFound,
    SamePlan,
    UpgradeNotAllowed,
    UserNotFound,
)
from panel_billing.services.ledger_service import LedgerService
from panel_billing.services.order_service import OrderService
from panel_billing.services.plan_service import PlanService
from panel_billing.utils.metrics import PLAN_CHANGES
from panel_billing.utils.timezone import SystemClock

logger = logging.getLogger(__name__)


class ChangeDirection(str, Enum):
    """变更方向"""
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"


@dataclass
class PlanChange:
    """套餐变更试算结果"""
    direction: str
    current_plan_id: str
    new_plan_id: str
    remaining_days: int
    prorated_credit: int
    charge_amount: int


def calculate_prorated_credit(price: int, remaining_days: int, duration: int) -> int:
    """剩余天数对应的折算价值，整数运算向下取整"""
    if duration <= 0 or remaining_days <= 0:
        return 0
    remaining_days = min(remaining_days, duration)
    return price * remaining_days // duration


def compute_change(current_plan: Plan, new_plan: Plan, remaining_days: int) -> PlanChange:
    """
    纯计算：判断变更方向并计算折算金额

    Raises:
        SamePlan: 同一套餐或价格相同
    """
    if current_plan.id == new_plan.id or new_plan.price == current_plan.price:
        raise SamePlan("不能变更为相同价格的套餐")

    remaining_days = max(0, min(remaining_days, current_plan.duration))
    credit = calculate_prorated_credit(current_plan.price, remaining_days, current_plan.duration)

    if new_plan.price > current_plan.price:
        direction = ChangeDirection.UPGRADE.value
        charge_amount = max(0, new_plan.price - credit)
    else:
        direction = ChangeDirection.DOWNGRADE.value
        charge_amount = 0

    return PlanChange(
        direction=direction,
        current_plan_id=current_plan.id,
        new_plan_id=new_plan.id,
        remaining_days=remaining_days,
        prorated_credit=credit,
        charge_amount=charge_amount,
    )


class PlanChangeService:
    """
    套餐变更服务

    使用方式:
        service = PlanChangeService(db)
        quote = await service.calculate_change(user_id, basic.id, pro.id)
        order = await service.execute_upgrade(user_id, basic.id, pro.id)
    """

    def __init__(self, db: AsyncSession, clock=None):
        self.db = db
        self.clock = clock or SystemClock()
        self.ledger = LedgerService(db, clock=self.clock)
        self.orders = OrderService(db, ledger=self.ledger, clock=self.clock)
        self.plans = PlanService(db)

    async def calculate_change(
        self,
        user_id: str,
        current_plan_id: str,
        new_plan_id: str,
    ) -> PlanChange:
        """试算，不产生任何写入"""
        current_plan = await self.plans.get_plan(current_plan_id)
        new_plan = await self.plans.get_plan(new_plan_id)
        active = await self.orders.get_active_subscription(user_id)
        return compute_change(current_plan, new_plan, self._remaining_days(active, current_plan))

    async def execute_upgrade(
        self,
        user_id: str,
        current_plan_id: str,
        new_plan_id: str,
    ) -> Order:
        """
        立即升级

        在同一工作单元内：创建新套餐订单、按折算后金额扣款、订单置为已支付、
        原订单置为已完成、清除待生效降级。任何一步失败都整体回滚。

        Raises:
            DowngradeNotAllowed: 目标套餐价格更低
            NoActiveSubscription: 当前套餐没有生效中的订阅
            InsufficientBalance: 余额不足，不创建订单也不扣款
        """
        try:
            async with atomic(self.db):
                await self._lock_user(user_id)
                current_plan = await self.plans.get_plan(current_plan_id)
                new_plan = await self.plans.get_plan(new_plan_id)
                active = await self.orders.get_active_subscription(user_id)

                change = compute_change(current_plan, new_plan, self._remaining_days(active, current_plan))
                if change.direction != ChangeDirection.UPGRADE.value:
                    raise DowngradeNotAllowed("降级请使用预约降级，不能立即执行")
                if not self._is_subscribed_to(active, current_plan):
                    raise NoActiveSubscription("当前套餐没有生效中的订阅")

                order = await self.orders.create(
                    user_id,
                    new_plan.id,
                    pay_amount=change.charge_amount,
                    notes=f"套餐升级: {current_plan.name} -> {new_plan.name}，折算抵扣 {change.prorated_credit}",
                )
                if change.charge_amount > 0:
                    await self.ledger.charge(
                        user_id,
                        change.charge_amount,
                        order_id=order.id,
                        description=f"套餐升级: {current_plan.name} -> {new_plan.name}",
                    )
                order = await self.orders.update_status(order.id, OrderStatus.PAID.value)
                order.payment_method = PaymentMethod.BALANCE.value

                # 原订单剩余价值已折算抵扣，结束后不可再退款
                if active.status == OrderStatus.PAID.value:
                    await self.orders.update_status(active.id, OrderStatus.COMPLETED.value)

                await self.db.execute(
                    delete(PendingDowngrade).where(PendingDowngrade.user_id == user_id)
                )
                await self.db.flush()
        except BillingError as e:
            PLAN_CHANGES.labels(ChangeDirection.UPGRADE.value, e.error_code.lower()).inc()
            raise

        PLAN_CHANGES.labels(ChangeDirection.UPGRADE.value, "success").inc()
        logger.info(
            f"套餐升级完成: user={user_id} {current_plan_id} -> {new_plan_id} "
            f"order={order.order_no} charge={change.charge_amount} credit={change.prorated_credit}"
        )
        return order

    async def schedule_downgrade(
        self,
        user_id: str,
        current_plan_id: str,
        new_plan_id: str,
    ) -> PendingDowngrade:
        """
        预约降级，在当前订单到期时生效

        Raises:
            UpgradeNotAllowed: 目标套餐价格更高
            PlanInactive: 目标套餐已下架
            NoActiveSubscription: 当前套餐没有生效中的订阅
            PendingDowngradeExists: 已有待生效的降级
        """
        try:
            async with atomic(self.db):
                await self._lock_user(user_id)
                current_plan = await self.plans.get_plan(current_plan_id)
                new_plan = await self.plans.get_plan(new_plan_id)
                active = await self.orders.get_active_subscription(user_id)

                change = compute_change(current_plan, new_plan, self._remaining_days(active, current_plan))
                if change.direction != ChangeDirection.DOWNGRADE.value:
                    raise UpgradeNotAllowed("升级请使用立即升级，不能预约")
                if not new_plan.is_active:
                    raise PlanInactive("套餐已下架")
                if not self._is_subscribed_to(active, current_plan):
                    raise NoActiveSubscription("当前套餐没有生效中的订阅")
                if await self._find_pending(user_id) is not None:
                    raise PendingDowngradeExists("已有待生效的降级")

                downgrade = PendingDowngrade(
                    user_id=user_id,
                    current_plan_id=current_plan.id,
                    new_plan_id=new_plan.id,
                    effective_at=active.expired_at,
                    created_at=self.clock.now(),
                )
                self.db.add(downgrade)
                await self.db.flush()
        except IntegrityError as e:
            # 并发预约由 user_id 唯一约束兜底
            PLAN_CHANGES.labels(ChangeDirection.DOWNGRADE.value, "pending_downgrade").inc()
            raise PendingDowngradeExists("已有待生效的降级") from e
        except BillingError as e:
            PLAN_CHANGES.labels(ChangeDirection.DOWNGRADE.value, e.error_code.lower()).inc()
            raise

        PLAN_CHANGES.labels(ChangeDirection.DOWNGRADE.value, "scheduled").inc()
        logger.info(
            f"套餐降级已预约: user={user_id} {current_plan_id} -> {new_plan_id} "
            f"effective_at={downgrade.effective_at.isoformat()}"
        )
        return downgrade

    async def get_pending_downgrade(self, user_id: str) -> PendingDowngrade:
        downgrade = await self._find_pending(user_id)
        if downgrade is None:
            raise NoPendingDowngrade("没有待生效的降级")
        return downgrade

    async def cancel_pending_downgrade(self, user_id: str) -> None:
        async with atomic(self.db):
            await self._lock_user(user_id)
            downgrade = await self._find_pending(user_id, for_update=True)
            if downgrade is None:
                raise NoPendingDowngrade("没有待生效的降级")
            await self.db.delete(downgrade)
            await self.db.flush()
        logger.info(f"待生效降级已取消: user={user_id}")

    async def apply_scheduled_downgrades(self, as_of: Optional[datetime] = None) -> dict:
        """
        执行已到期的降级（由定时任务调用）

        每条记录独立提交，单条失败只记录日志，不影响其他记录。

        Returns:
            {"processed": 成功数, "failed": 失败数, "order_nos": 新订单号列表}
        """
        as_of = as_of or self.clock.now()
        async with atomic(self.db):
            result = await self.db.execute(
                select(PendingDowngrade.id)
                .where(PendingDowngrade.effective_at <= as_of)
                .order_by(PendingDowngrade.effective_at)
            )
            due_ids = list(result.scalars().all())

        processed = 0
        failed = 0
        order_nos = []
        for downgrade_id in due_ids:
            try:
                async with atomic(self.db):
                    result = await self.db.execute(
                        select(PendingDowngrade)
                        .where(PendingDowngrade.id == downgrade_id)
                        .with_for_update(skip_locked=True)
                    )
                    downgrade = result.scalar_one_or_none()
                    if downgrade is None:
                        # 已被其他 worker 处理
                        continue
                    # 降级不收费，新周期从原订单到期时刻续接并直接生效
                    order = await self.orders.create(
                        downgrade.user_id,
                        downgrade.new_plan_id,
                        pay_amount=0,
                        starts_at=downgrade.effective_at,
                        notes=f"预约降级生效: {downgrade.current_plan_id} -> {downgrade.new_plan_id}",
                    )
                    order = await self.orders.update_status(order.id, OrderStatus.PAID.value)
                    order.payment_method = PaymentMethod.PLAN_CHANGE.value
                    await self.db.delete(downgrade)
                    await self.db.flush()
            except (PlanInactive, PlanNotFound) as e:
                # 目标套餐不可用，保留记录等待运营处理（重新上架或取消降级）
                failed += 1
                PLAN_CHANGES.labels(ChangeDirection.DOWNGRADE.value, "plan_unavailable").inc()
                logger.warning(f"降级目标套餐不可用，暂不执行: downgrade={downgrade_id} reason={e.message}")
                continue
            except (BillingError, SQLAlchemyError):
                failed += 1
                PLAN_CHANGES.labels(ChangeDirection.DOWNGRADE.value, "apply_failed").inc()
                logger.exception(f"降级执行失败: downgrade={downgrade_id}")
                continue

            processed += 1
            order_nos.append(order.order_no)
            PLAN_CHANGES.labels(ChangeDirection.DOWNGRADE.value, "applied").inc()

        if processed or failed:
            logger.info(f"到期降级处理完成: processed={processed} failed={failed}")
        return {"processed": processed, "failed": failed, "order_nos": order_nos}

    async def _lock_user(self, user_id: str) -> None:
        # 同一用户的套餐变更在用户行锁上串行
        result = await self.db.execute(
            select(User.id).where(User.id == user_id).with_for_update()
        )
        if result.scalar_one_or_none() is None:
            raise UserNotFound("用户不存在")

    async def _find_pending(self, user_id: str, for_update: bool = False) -> Optional[PendingDowngrade]:
        query = select(PendingDowngrade).where(PendingDowngrade.user_id == user_id)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    def _remaining_days(self, active: Optional[Order], current_plan: Plan) -> int:
        if not self._is_subscribed_to(active, current_plan):
            return 0
        remaining = active.expired_at - self.clock.now()
        return max(0, min(remaining.days, current_plan.duration))

    @staticmethod
    def _is_subscribed_to(active: Optional[Order], plan: Plan) -> bool:
        return active is not None and active.plan_id == plan.id
