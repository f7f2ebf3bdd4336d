"""
余额路由
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from panel_billing.database import get_db
from panel_billing.models.user import User
from panel_billing.schemas.balance import (
    BalanceResponse,
    BalanceHistoryResponse,
    BalanceStatisticsResponse,
    BalanceTransactionResponse,
)
from panel_billing.services.ledger_service import LedgerService
from panel_billing.utils.security import get_current_user

router = APIRouter()


@router.get("", response_model=BalanceResponse)
async def get_balance(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """获取当前余额"""
    balance = await LedgerService(db).get_balance(current_user.id)
    return BalanceResponse(balance=balance)


@router.get("/transactions", response_model=BalanceHistoryResponse)
async def get_transactions(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """获取余额流水，最新的在前"""
    transactions, total = await LedgerService(db).list_transactions(
        current_user.id, page=page, page_size=page_size
    )
    return BalanceHistoryResponse(
        transactions=[BalanceTransactionResponse.model_validate(t) for t in transactions],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/statistics", response_model=BalanceStatisticsResponse)
async def get_statistics(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """按类型汇总余额变动"""
    stats = await LedgerService(db).get_statistics(current_user.id)
    return BalanceStatisticsResponse(**stats)
