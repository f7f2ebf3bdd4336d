"""
管理后台路由 - 主入口

模块结构:
    - balance: 余额调整、流水与对账
    - orders: 订单列表、状态变更与退款
    - plans: 套餐上下架
"""
from fastapi import APIRouter

from .balance import router as balance_router
from .orders import router as orders_router
from .plans import router as plans_router

router = APIRouter()

router.include_router(balance_router, tags=["管理后台-余额"])
router.include_router(orders_router, tags=["管理后台-订单"])
router.include_router(plans_router, tags=["管理后台-套餐"])
