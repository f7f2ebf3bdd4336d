"""
余额管理路由 - 调整与对账
"""
import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from panel_billing.database import get_db
from panel_billing.models.user import User
from panel_billing.schemas.balance import (
    BalanceAdjustRequest,
    BalanceHistoryResponse,
    BalanceTransactionResponse,
    ReconcileResponse,
)
from panel_billing.services.ledger_service import LedgerService
from panel_billing.utils.security import get_admin_user

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/users/{user_id}/balance/adjust", response_model=BalanceTransactionResponse)
async def adjust_balance(
    user_id: str,
    request: BalanceAdjustRequest,
    admin: User = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
):
    """调整用户余额，操作人记为当前管理员"""
    return await LedgerService(db).adjust(
        user_id, request.amount, request.reason, operator=admin.username
    )


@router.get("/users/{user_id}/balance/transactions", response_model=BalanceHistoryResponse)
async def get_user_transactions(
    user_id: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    admin: User = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
):
    """查看用户余额流水"""
    transactions, total = await LedgerService(db).list_transactions(
        user_id, page=page, page_size=page_size
    )
    return BalanceHistoryResponse(
        transactions=[BalanceTransactionResponse.model_validate(t) for t in transactions],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/users/{user_id}/balance/reconcile", response_model=ReconcileResponse)
async def reconcile_balance(
    user_id: str,
    admin: User = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
):
    """重放流水对账"""
    return ReconcileResponse(**await LedgerService(db).reconcile(user_id))
