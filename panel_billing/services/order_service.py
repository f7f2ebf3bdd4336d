"""
订单服务 - 订单创建与状态机

状态流转:
    pending -> paid -> completed | refunded
    pending -> cancelled
completed / cancelled / refunded 为终态。

涉及资金的流转（余额支付、退款）在同一个工作单元内完成扣款/返还与状态变更。
"""
import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from panel_billing.config import get_settings
from panel_billing.database import atomic
from panel_billing.models.order import Order, OrderStatus, PaymentMethod
from panel_billing.models.user import User
from panel_billing.services.errors import (
    InvalidAmount,
    InvalidTransition,
    OrderNotFound,
    UserNotFound,
)
from panel_billing.services.ledger_service import LedgerService
from panel_billing.services.plan_service import PlanService
from panel_billing.utils.timezone import SystemClock

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING.value: {OrderStatus.PAID.value, OrderStatus.CANCELLED.value},
    OrderStatus.PAID.value: {OrderStatus.COMPLETED.value, OrderStatus.REFUNDED.value},
    OrderStatus.COMPLETED.value: set(),
    OrderStatus.CANCELLED.value: set(),
    OrderStatus.REFUNDED.value: set(),
}

TERMINAL_STATUSES = {status for status, targets in ALLOWED_TRANSITIONS.items() if not targets}


def is_valid_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def generate_order_no(now: datetime) -> str:
    """生成订单号，格式 ORD-20260114-XXXXXXXX"""
    return f"ORD-{now.strftime('%Y%m%d')}-{secrets.token_hex(4).upper()}"


class OrderService:
    """订单服务"""

    def __init__(self, db: AsyncSession, ledger: Optional[LedgerService] = None, clock=None):
        self.db = db
        self.clock = clock or SystemClock()
        self.ledger = ledger or LedgerService(db, clock=self.clock)
        self.plans = PlanService(db)
        self.settings = get_settings()

    async def create(
        self,
        user_id: str,
        plan_id: str,
        pay_amount: Optional[int] = None,
        notes: Optional[str] = None,
        starts_at: Optional[datetime] = None,
    ) -> Order:
        """
        创建待支付订单，不涉及资金变动

        Args:
            user_id: 用户 ID
            plan_id: 套餐 ID
            pay_amount: 实付金额，默认等于套餐价格，不能超过原价
            notes: 备注
            starts_at: 订阅周期起点，默认为当前时间（预约降级从原订单到期时刻续接）

        Raises:
            PlanNotFound / PlanInactive / UserNotFound / InvalidAmount
        """
        async with atomic(self.db):
            await self._ensure_user(user_id)
            plan = await self.plans.get_purchasable_plan(plan_id)

            original_amount = plan.price
            if pay_amount is None:
                pay_amount = original_amount
            if pay_amount < 0 or pay_amount > original_amount:
                raise InvalidAmount("实付金额必须在 0 与原价之间")

            now = self.clock.now()
            order = Order(
                order_no=generate_order_no(now),
                user_id=user_id,
                plan_id=plan.id,
                original_amount=original_amount,
                pay_amount=pay_amount,
                status=OrderStatus.PENDING.value,
                expired_at=(starts_at or now) + timedelta(days=plan.duration),
                notes=(notes or "")[:800] or None,
                created_at=now,
                updated_at=now,
            )
            self.db.add(order)
            await self.db.flush()

        logger.info(f"订单创建: order={order.order_no} user={user_id} plan={plan.id} amount={pay_amount}")
        return order

    async def update_status(self, order_id: str, target_status: str) -> Order:
        """
        按状态机变更订单状态，只修改状态本身

        pending -> paid 前调用方须已完成扣款；paid -> refunded 前调用方须已返还余额。
        需要资金联动时使用 pay_with_balance / refund。
        """
        target = self._normalize_status(target_status)
        async with atomic(self.db):
            order = await self._get_for_update(order_id)
            self._transition(order, target)
            await self.db.flush()
        return order

    async def cancel(self, order_id: str) -> Order:
        """取消订单，仅限待支付状态"""
        return await self.update_status(order_id, OrderStatus.CANCELLED.value)

    async def pay_with_balance(self, order_id: str, user_id: Optional[str] = None) -> Order:
        """余额支付：扣款与 pending -> paid 在同一工作单元内完成"""
        async with atomic(self.db):
            order = await self._get_for_update(order_id, user_id=user_id)
            if not is_valid_transition(order.status, OrderStatus.PAID.value):
                raise InvalidTransition(order.status, OrderStatus.PAID.value)

            if order.pay_amount > 0:
                await self.ledger.charge(
                    order.user_id,
                    order.pay_amount,
                    order_id=order.id,
                    description=f"订单支付: {order.order_no}",
                )
            order.payment_method = PaymentMethod.BALANCE.value
            self._transition(order, OrderStatus.PAID.value)
            await self.db.flush()
        return order

    async def refund(self, order_id: str, reason: str = "", amount: Optional[int] = None) -> Order:
        """
        退款：返还余额与 paid -> refunded 在同一工作单元内完成

        Args:
            order_id: 订单 ID
            reason: 退款原因
            amount: 退款金额，默认全额退还实付金额；部分退款同样使订单进入 refunded

        Raises:
            InvalidTransition: 订单不是已支付状态
            InvalidAmount: 退款金额不大于 0 或超过实付金额
        """
        async with atomic(self.db):
            order = await self._get_for_update(order_id)
            if not is_valid_transition(order.status, OrderStatus.REFUNDED.value):
                raise InvalidTransition(order.status, OrderStatus.REFUNDED.value)

            if amount is None:
                amount = order.pay_amount
            elif amount <= 0 or amount > order.pay_amount:
                raise InvalidAmount(f"退款金额必须在 1 与实付金额 {order.pay_amount} 之间")

            if amount > 0:
                description = f"订单退款: {order.order_no}"
                if reason:
                    description = f"{description}: {reason}"
                await self.ledger.credit(
                    order.user_id,
                    amount,
                    order_id=order.id,
                    description=description[:256],
                )
            note = f"退款 {amount}"
            if reason:
                note = f"{note}，原因: {reason}"
            order.notes = ((order.notes or "") + f"\n{note}").strip()[:800]
            self._transition(order, OrderStatus.REFUNDED.value)
            await self.db.flush()

        logger.info(f"订单退款: order={order.order_no} amount={amount} pay_amount={order.pay_amount}")
        return order

    async def get_max_refund_amount(self, order_id: str) -> int:
        """可退款上限，即实付金额；非已支付订单不可退款"""
        order = await self.get_by_id(order_id)
        if not is_valid_transition(order.status, OrderStatus.REFUNDED.value):
            raise InvalidTransition(order.status, OrderStatus.REFUNDED.value)
        return order.pay_amount

    async def get_by_id(self, order_id: str) -> Order:
        result = await self.db.execute(select(Order).where(Order.id == order_id))
        order = result.scalar_one_or_none()
        if not order:
            raise OrderNotFound("订单不存在")
        return order

    async def get_by_order_no(self, order_no: str) -> Order:
        result = await self.db.execute(select(Order).where(Order.order_no == order_no))
        order = result.scalar_one_or_none()
        if not order:
            raise OrderNotFound("订单不存在")
        return order

    async def list_by_user(
        self,
        user_id: str,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[Order], int]:
        """获取用户自己的订单，按创建时间倒序"""
        return await self.list_orders(user_id=user_id, page=page, page_size=page_size, owner_only=True)

    async def list_orders(
        self,
        status: Optional[str] = None,
        user_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
        owner_only: bool = False,
    ) -> tuple[list[Order], int]:
        """管理后台订单列表"""
        if owner_only and not user_id:
            raise UserNotFound("用户不存在")
        page, page_size = self.settings.clamp_page(page, page_size)

        conditions = []
        if user_id:
            conditions.append(Order.user_id == user_id)
        if status:
            conditions.append(Order.status == self._normalize_status(status))

        count_result = await self.db.execute(
            select(func.count(Order.id)).where(*conditions)
        )
        total = count_result.scalar() or 0

        result = await self.db.execute(
            select(Order)
            .where(*conditions)
            .order_by(Order.created_at.desc(), Order.order_no.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), total

    async def get_active_subscription(self, user_id: str) -> Optional[Order]:
        """当前生效的订阅：最近一笔已支付且未到期的订单"""
        result = await self.db.execute(
            select(Order)
            .where(
                Order.user_id == user_id,
                Order.status.in_([OrderStatus.PAID.value, OrderStatus.COMPLETED.value]),
                Order.expired_at > self.clock.now(),
            )
            .order_by(Order.created_at.desc(), Order.order_no.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def cancel_stale_pending(self, older_than: Optional[datetime] = None) -> int:
        """取消超过支付时限仍未支付的订单"""
        now = self.clock.now()
        cutoff = older_than or now - timedelta(minutes=self.settings.order_payment_timeout_minutes)
        async with atomic(self.db):
            result = await self.db.execute(
                update(Order)
                .where(
                    Order.status == OrderStatus.PENDING.value,
                    Order.created_at < cutoff,
                )
                .values(status=OrderStatus.CANCELLED.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        count = result.rowcount or 0
        if count > 0:
            logger.info(f"超时订单已取消: count={count}")
        return count

    async def _get_for_update(self, order_id: str, user_id: Optional[str] = None) -> Order:
        query = select(Order).where(Order.id == order_id)
        if user_id:
            query = query.where(Order.user_id == user_id)
        result = await self.db.execute(
            query.with_for_update().execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if not order:
            raise OrderNotFound("订单不存在")
        return order

    async def _ensure_user(self, user_id: str) -> None:
        result = await self.db.execute(select(User.id).where(User.id == user_id))
        if result.scalar_one_or_none() is None:
            raise UserNotFound("用户不存在")

    def _transition(self, order: Order, target: str) -> None:
        if not is_valid_transition(order.status, target):
            raise InvalidTransition(order.status, target)
        previous = order.status
        now = self.clock.now()
        order.status = target
        order.updated_at = now
        if target == OrderStatus.PAID.value:
            order.paid_at = now
        logger.info(f"订单状态变更: order={order.order_no} {previous} -> {target}")

    @staticmethod
    def _normalize_status(status: str) -> str:
        return str(status or "").strip().lower()
