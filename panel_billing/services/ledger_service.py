"""
余额账本服务 - 统一管理用户余额的扣除、返还、充值和调整

此服务提供：
1. 原子性的余额变动（余额更新与流水追加在同一工作单元内）
2. 按账户行加锁，不同账户互不阻塞
3. 只追加的流水记录，余额字段只是流水的缓存
4. 对账：重放流水校验每一条余额快照
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from panel_billing.config import get_settings
from panel_billing.database import atomic
from panel_billing.models.balance import BalanceTransaction, TransactionType, SYSTEM_OPERATOR
from panel_billing.models.user import User
from panel_billing.services.errors import (
    BillingError,
    InsufficientBalance,
    InvalidAmount,
    LedgerError,
    UserNotFound,
)
from panel_billing.utils.metrics import LEDGER_OPERATIONS
from panel_billing.utils.timezone import SystemClock

logger = logging.getLogger(__name__)


class LedgerService:
    """
    余额账本

    使用方式:
        ledger = LedgerService(db)
        await ledger.charge(user_id, 2500, order_id=order.id, description="套餐升级")
    """

    def __init__(self, db: AsyncSession, clock=None):
        self.db = db
        self.clock = clock or SystemClock()
        self.settings = get_settings()

    async def get_balance(self, user_id: str) -> int:
        """获取当前余额"""
        result = await self.db.execute(
            select(User.balance).where(User.id == user_id)
        )
        balance = result.scalar_one_or_none()
        if balance is None:
            raise UserNotFound("用户不存在")
        return balance

    async def adjust(
        self,
        user_id: str,
        amount: int,
        reason: str,
        operator: str,
    ) -> BalanceTransaction:
        """
        管理员调整余额

        Args:
            user_id: 用户 ID
            amount: 调整金额，可为负数，允许把余额调成负数
            reason: 调整原因
            operator: 操作人

        Raises:
            InvalidAmount: 金额为 0
            LedgerError: 账户锁定或写入失败
        """
        if amount == 0:
            raise InvalidAmount("调整金额不能为 0")
        if not operator:
            raise InvalidAmount("管理员调整必须记录操作人")

        async with self._mutation("adjust"):
            tx = await self._apply(
                user_id,
                amount,
                TransactionType.ADJUST,
                description=(reason or "").strip()[:256],
                operator=operator,
            )
        logger.info(
            f"余额调整: user={user_id} amount={amount} balance={tx.balance_after} operator={operator}"
        )
        return tx

    async def charge(
        self,
        user_id: str,
        amount: int,
        order_id: Optional[str] = None,
        description: str = "",
    ) -> BalanceTransaction:
        """
        扣除余额

        Raises:
            InsufficientBalance: 余额不足，状态保持不变
        """
        self._require_positive(amount)
        async with self._mutation("charge"):
            tx = await self._apply(
                user_id,
                -amount,
                TransactionType.CONSUME,
                order_id=order_id,
                description=description,
                require_funds=True,
            )
        logger.info(f"余额扣除: user={user_id} amount={amount} balance={tx.balance_after} order={order_id}")
        return tx

    async def credit(
        self,
        user_id: str,
        amount: int,
        order_id: Optional[str] = None,
        description: str = "",
    ) -> BalanceTransaction:
        """返还余额（退款、折算返还）"""
        self._require_positive(amount)
        async with self._mutation("credit"):
            tx = await self._apply(
                user_id,
                amount,
                TransactionType.REFUND,
                order_id=order_id,
                description=description,
            )
        logger.info(f"余额返还: user={user_id} amount={amount} balance={tx.balance_after} order={order_id}")
        return tx

    async def recharge(
        self,
        user_id: str,
        amount: int,
        order_id: Optional[str] = None,
        description: str = "",
    ) -> BalanceTransaction:
        """充值（由支付网关回调方调用）"""
        self._require_positive(amount)
        async with self._mutation("recharge"):
            tx = await self._apply(
                user_id,
                amount,
                TransactionType.RECHARGE,
                order_id=order_id,
                description=description,
            )
        logger.info(f"余额充值: user={user_id} amount={amount} balance={tx.balance_after}")
        return tx

    async def list_transactions(
        self,
        user_id: str,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[BalanceTransaction], int]:
        """分页获取流水，最新的在前"""
        page, page_size = self.settings.clamp_page(page, page_size)

        count_result = await self.db.execute(
            select(func.count(BalanceTransaction.id)).where(
                BalanceTransaction.user_id == user_id
            )
        )
        total = count_result.scalar() or 0

        result = await self.db.execute(
            select(BalanceTransaction)
            .where(BalanceTransaction.user_id == user_id)
            .order_by(BalanceTransaction.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), total

    async def get_statistics(self, user_id: str) -> dict:
        """按交易类型汇总"""
        result = await self.db.execute(
            select(BalanceTransaction.type, func.sum(BalanceTransaction.amount))
            .where(BalanceTransaction.user_id == user_id)
            .group_by(BalanceTransaction.type)
        )
        sums = {tx_type: int(total or 0) for tx_type, total in result.all()}
        return {
            "total_recharge": sums.get(TransactionType.RECHARGE.value, 0),
            "total_spent": -sums.get(TransactionType.CONSUME.value, 0),
            "total_refund": sums.get(TransactionType.REFUND.value, 0),
            "total_adjust": sums.get(TransactionType.ADJUST.value, 0),
        }

    async def reconcile(self, user_id: str) -> dict:
        """
        重放流水对账

        按流水 id（写入顺序）累加金额，逐条比对余额快照，最后比对账户缓存余额。
        """
        cached = await self.get_balance(user_id)
        result = await self.db.execute(
            select(BalanceTransaction.id, BalanceTransaction.amount, BalanceTransaction.balance_after)
            .where(BalanceTransaction.user_id == user_id)
            .order_by(BalanceTransaction.id)
        )

        running = 0
        count = 0
        mismatched_ids = []
        for tx_id, amount, balance_after in result.all():
            running += amount
            count += 1
            if running != balance_after:
                mismatched_ids.append(tx_id)

        consistent = not mismatched_ids and running == cached
        if not consistent:
            logger.warning(
                f"账本不一致: user={user_id} cached={cached} replayed={running} mismatched={mismatched_ids}"
            )
        return {
            "user_id": user_id,
            "transaction_count": count,
            "replayed_balance": running,
            "cached_balance": cached,
            "mismatched_transaction_ids": mismatched_ids,
            "consistent": consistent,
        }

    async def _apply(
        self,
        user_id: str,
        delta: int,
        tx_type: TransactionType,
        order_id: Optional[str] = None,
        description: str = "",
        operator: str = SYSTEM_OPERATOR,
        require_funds: bool = False,
    ) -> BalanceTransaction:
        # 条件更新持有行锁直到事务结束，同一账户的并发变动在此串行
        stmt = update(User).where(User.id == user_id)
        if require_funds:
            stmt = stmt.where(User.balance >= -delta)
        stmt = (
            stmt.values(balance=User.balance + delta, updated_at=self.clock.now())
            .returning(User.balance)
        )
        result = await self.db.execute(stmt)
        balance_after = result.scalar_one_or_none()

        if balance_after is None:
            # 用户不存在或余额不足
            current = await self.get_balance(user_id)
            raise InsufficientBalance(required=-delta, available=current)

        tx = BalanceTransaction(
            user_id=user_id,
            type=tx_type.value,
            amount=delta,
            balance_after=balance_after,
            order_id=order_id,
            description=description,
            operator=operator,
            created_at=self.clock.now(),
        )
        self.db.add(tx)
        await self.db.flush()
        return tx

    @asynccontextmanager
    async def _mutation(self, operation: str):
        try:
            async with atomic(self.db):
                yield
        except BillingError:
            LEDGER_OPERATIONS.labels(operation, "rejected").inc()
            raise
        except DBAPIError as e:
            LEDGER_OPERATIONS.labels(operation, "error").inc()
            logger.error(f"账本写入失败: operation={operation} error={e}")
            raise LedgerError("账户锁定或写入失败，请稍后重试") from e
        LEDGER_OPERATIONS.labels(operation, "success").inc()

    @staticmethod
    def _require_positive(amount: int) -> None:
        if amount <= 0:
            raise InvalidAmount("金额必须大于 0")
