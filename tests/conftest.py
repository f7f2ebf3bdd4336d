from datetime import datetime, timedelta

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from panel_billing.database import Base
from panel_billing.models import Order, OrderStatus, PaymentMethod, Plan, User
from panel_billing.services.ledger_service import LedgerService
from panel_billing.services.order_service import generate_order_no
from panel_billing.utils.timezone import FixedClock


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def engine():
    """In-memory SQLite engine with SAVEPOINT support."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite 默认的事务处理会吞掉 SAVEPOINT，改由 SQLAlchemy 显式 BEGIN
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def db(session_factory):
    """
    测试会话

    工厂只 flush 不提交，整个用例运行在同一个外层事务里，
    服务内的 atomic() 均以 SAVEPOINT 执行，关闭会话时整体回滚。
    """
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 1, 14, 12, 0, 0))


@pytest.fixture
def make_user(db, clock):
    async def _make(username="alice", balance=0, is_admin=False):
        user = User(username=username, balance=0, is_admin=is_admin)
        db.add(user)
        await db.flush()
        if balance:
            await LedgerService(db, clock=clock).recharge(user.id, balance, description="初始充值")
        return user

    return _make


@pytest.fixture
def make_plan(db):
    async def _make(name, price, duration=30, is_active=True, sort_order=0):
        plan = Plan(
            name=name,
            price=price,
            duration=duration,
            is_active=is_active,
            sort_order=sort_order,
        )
        db.add(plan)
        await db.flush()
        return plan

    return _make


@pytest.fixture
def subscribe(db, clock):
    """Insert a paid order that expires ``days_left`` days from now."""
    async def _subscribe(user, plan, days_left):
        now = clock.now()
        order = Order(
            order_no=generate_order_no(now),
            user_id=user.id,
            plan_id=plan.id,
            original_amount=plan.price,
            pay_amount=plan.price,
            status=OrderStatus.PAID.value,
            payment_method=PaymentMethod.BALANCE.value,
            paid_at=now - timedelta(days=plan.duration - days_left),
            expired_at=now + timedelta(days=days_left),
            created_at=now - timedelta(days=plan.duration - days_left),
            updated_at=now,
        )
        db.add(order)
        await db.flush()
        return order

    return _subscribe
