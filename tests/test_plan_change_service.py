import logging
from datetime import timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy import func, select

from panel_billing.models import BalanceTransaction, Order, PendingDowngrade, TransactionType
from panel_billing.services.errors import (
    DowngradeNotAllowed,
    InsufficientBalance,
    InvalidTransition,
    NoActiveSubscription,
    NoPendingDowngrade,
    PendingDowngradeExists,
    PlanInactive,
    PlanNotFound,
    SamePlan,
    UpgradeNotAllowed,
)
from panel_billing.services.plan_change_service import (
    PlanChangeService,
    calculate_prorated_credit,
    compute_change,
)

pytestmark = pytest.mark.anyio


def _plan(plan_id, price, duration=30):
    return SimpleNamespace(id=plan_id, price=price, duration=duration)


async def _count(db, model, *conditions):
    result = await db.execute(select(func.count()).select_from(model).where(*conditions))
    return result.scalar()


@pytest.fixture
async def catalog(make_plan):
    return SimpleNamespace(
        basic=await make_plan("Basic", 1000, duration=30, sort_order=1),
        pro=await make_plan("Pro", 3000, duration=30, sort_order=2),
        premium=await make_plan("Premium", 6000, duration=30, sort_order=3),
    )


# ========== 纯计算 ==========

def test_compute_upgrade():
    change = compute_change(_plan("basic", 1000), _plan("pro", 3000), remaining_days=15)

    assert change.direction == "upgrade"
    assert change.remaining_days == 15
    assert change.prorated_credit == 500
    assert change.charge_amount == 2500


def test_compute_downgrade_is_never_charged():
    change = compute_change(_plan("pro", 3000), _plan("basic", 1000), remaining_days=15)

    assert change.direction == "downgrade"
    assert change.charge_amount == 0


def test_compute_rejects_same_plan_and_same_price():
    with pytest.raises(SamePlan):
        compute_change(_plan("basic", 1000), _plan("basic", 1000), remaining_days=5)
    with pytest.raises(SamePlan):
        compute_change(_plan("basic", 1000), _plan("basic-v2", 1000), remaining_days=5)


def test_compute_clamps_remaining_days():
    current = _plan("basic", 1000, duration=30)
    new = _plan("pro", 3000)

    assert compute_change(current, new, remaining_days=45).remaining_days == 30
    assert compute_change(current, new, remaining_days=45).charge_amount == 2000
    assert compute_change(current, new, remaining_days=-3).remaining_days == 0
    assert compute_change(current, new, remaining_days=-3).charge_amount == 3000


def test_prorated_credit_rounds_down():
    assert calculate_prorated_credit(1000, 7, 30) == 233
    assert calculate_prorated_credit(999, 1, 30) == 33
    assert calculate_prorated_credit(1000, 0, 30) == 0
    assert calculate_prorated_credit(1000, 5, 0) == 0


# ========== 试算 ==========

async def test_calculate_change_uses_active_subscription(db, clock, make_user, subscribe, catalog):
    user = await make_user(balance=5000)
    await subscribe(user, catalog.basic, days_left=15)
    service = PlanChangeService(db, clock=clock)

    change = await service.calculate_change(user.id, catalog.basic.id, catalog.pro.id)

    assert change.direction == "upgrade"
    assert change.remaining_days == 15
    assert change.prorated_credit == 500
    assert change.charge_amount == 2500
    # 试算不产生写入
    assert await _count(db, Order) == 1
    assert await service.ledger.get_balance(user.id) == 5000


async def test_calculate_change_without_subscription_has_no_credit(db, clock, make_user, catalog):
    user = await make_user()
    service = PlanChangeService(db, clock=clock)

    change = await service.calculate_change(user.id, catalog.basic.id, catalog.pro.id)

    assert change.remaining_days == 0
    assert change.prorated_credit == 0
    assert change.charge_amount == 3000


async def test_calculate_change_unknown_plan(db, clock, make_user, catalog):
    user = await make_user()
    with pytest.raises(PlanNotFound):
        await PlanChangeService(db, clock=clock).calculate_change(user.id, catalog.basic.id, "missing")


# ========== 升级 ==========

async def test_upgrade_then_schedule_downgrade_scenario(db, clock, make_user, subscribe, catalog):
    user = await make_user(balance=5000)
    await subscribe(user, catalog.basic, days_left=15)
    service = PlanChangeService(db, clock=clock)

    order = await service.execute_upgrade(user.id, catalog.basic.id, catalog.pro.id)

    assert order.plan_id == catalog.pro.id
    assert order.status == "paid"
    assert order.payment_method == "balance"
    assert order.original_amount == 3000
    assert order.pay_amount == 2500
    assert order.expired_at == clock.now() + timedelta(days=30)
    assert await service.ledger.get_balance(user.id) == 2500

    result = await db.execute(
        select(BalanceTransaction).where(BalanceTransaction.type == TransactionType.CONSUME.value)
    )
    consumes = list(result.scalars().all())
    assert len(consumes) == 1
    assert consumes[0].amount == -2500
    assert consumes[0].order_id == order.id

    active = await service.orders.get_active_subscription(user.id)
    assert active.id == order.id

    downgrade = await service.schedule_downgrade(user.id, catalog.pro.id, catalog.basic.id)

    assert downgrade.effective_at == order.expired_at
    assert downgrade.current_plan_id == catalog.pro.id
    assert downgrade.new_plan_id == catalog.basic.id
    assert await service.ledger.get_balance(user.id) == 2500
    assert await _count(db, Order) == 2


async def test_upgrade_with_insufficient_balance_changes_nothing(db, clock, make_user, subscribe, catalog):
    user = await make_user(balance=2499)
    await subscribe(user, catalog.basic, days_left=15)
    service = PlanChangeService(db, clock=clock)

    with pytest.raises(InsufficientBalance) as exc:
        await service.execute_upgrade(user.id, catalog.basic.id, catalog.pro.id)

    assert exc.value.required == 2500
    assert exc.value.available == 2499
    assert await _count(db, Order) == 1
    assert await _count(db, BalanceTransaction) == 1
    assert await service.ledger.get_balance(user.id) == 2499


async def test_upgrade_in_wrong_direction(db, clock, make_user, subscribe, catalog):
    user = await make_user(balance=5000)
    await subscribe(user, catalog.pro, days_left=15)
    service = PlanChangeService(db, clock=clock)

    with pytest.raises(DowngradeNotAllowed):
        await service.execute_upgrade(user.id, catalog.pro.id, catalog.basic.id)
    with pytest.raises(SamePlan):
        await service.execute_upgrade(user.id, catalog.pro.id, catalog.pro.id)


async def test_upgrade_requires_active_subscription_on_current_plan(db, clock, make_user, subscribe, catalog):
    user = await make_user(balance=10000)
    service = PlanChangeService(db, clock=clock)

    with pytest.raises(NoActiveSubscription):
        await service.execute_upgrade(user.id, catalog.basic.id, catalog.pro.id)

    await subscribe(user, catalog.pro, days_left=15)
    with pytest.raises(NoActiveSubscription):
        await service.execute_upgrade(user.id, catalog.basic.id, catalog.premium.id)
    assert await service.ledger.get_balance(user.id) == 10000


async def test_repeated_upgrade_is_rejected(db, clock, make_user, subscribe, catalog):
    user = await make_user(balance=10000)
    await subscribe(user, catalog.basic, days_left=15)
    service = PlanChangeService(db, clock=clock)

    await service.execute_upgrade(user.id, catalog.basic.id, catalog.pro.id)
    with pytest.raises(NoActiveSubscription):
        await service.execute_upgrade(user.id, catalog.basic.id, catalog.pro.id)

    assert await service.ledger.get_balance(user.id) == 7500


async def test_upgrade_completes_superseded_order(db, clock, make_user, subscribe, catalog):
    user = await make_user(balance=5000)
    basic_order = await subscribe(user, catalog.basic, days_left=15)
    basic_order_id = basic_order.id
    service = PlanChangeService(db, clock=clock)

    await service.execute_upgrade(user.id, catalog.basic.id, catalog.pro.id)

    superseded = await service.orders.get_by_id(basic_order_id)
    assert superseded.status == "completed"
    # 剩余价值已折算抵扣，原订单不能再退款
    with pytest.raises(InvalidTransition):
        await service.orders.refund(basic_order_id)
    assert await service.ledger.get_balance(user.id) == 2500


async def test_upgrade_clears_pending_downgrade(db, clock, make_user, subscribe, catalog):
    user = await make_user(balance=10000)
    await subscribe(user, catalog.pro, days_left=10)
    service = PlanChangeService(db, clock=clock)
    await service.schedule_downgrade(user.id, catalog.pro.id, catalog.basic.id)

    order = await service.execute_upgrade(user.id, catalog.pro.id, catalog.premium.id)

    # 3000 * 10 // 30 = 1000
    assert order.pay_amount == 5000
    with pytest.raises(NoPendingDowngrade):
        await service.get_pending_downgrade(user.id)


# ========== 降级 ==========

async def test_schedule_downgrade(db, clock, make_user, subscribe, catalog):
    user = await make_user(balance=100)
    current = await subscribe(user, catalog.pro, days_left=12)
    service = PlanChangeService(db, clock=clock)

    downgrade = await service.schedule_downgrade(user.id, catalog.pro.id, catalog.basic.id)

    assert downgrade.effective_at == current.expired_at
    assert downgrade.created_at == clock.now()
    assert await _count(db, Order) == 1
    assert await _count(db, BalanceTransaction) == 1
    assert (await service.get_pending_downgrade(user.id)).id == downgrade.id


async def test_only_one_pending_downgrade(db, clock, make_user, subscribe, catalog):
    user = await make_user()
    await subscribe(user, catalog.premium, days_left=12)
    service = PlanChangeService(db, clock=clock)
    await service.schedule_downgrade(user.id, catalog.premium.id, catalog.pro.id)

    with pytest.raises(PendingDowngradeExists) as exc:
        await service.schedule_downgrade(user.id, catalog.premium.id, catalog.basic.id)
    assert exc.value.error_code == "PENDING_DOWNGRADE"

    await service.cancel_pending_downgrade(user.id)
    with pytest.raises(NoPendingDowngrade):
        await service.get_pending_downgrade(user.id)

    downgrade = await service.schedule_downgrade(user.id, catalog.premium.id, catalog.basic.id)
    assert downgrade.new_plan_id == catalog.basic.id
    assert await _count(db, PendingDowngrade) == 1


async def test_schedule_downgrade_validation(db, clock, make_user, subscribe, catalog, make_plan):
    user = await make_user()
    service = PlanChangeService(db, clock=clock)
    retired = await make_plan("Starter", 500, is_active=False)

    with pytest.raises(NoActiveSubscription):
        await service.schedule_downgrade(user.id, catalog.pro.id, catalog.basic.id)

    await subscribe(user, catalog.pro, days_left=12)
    with pytest.raises(UpgradeNotAllowed):
        await service.schedule_downgrade(user.id, catalog.pro.id, catalog.premium.id)
    with pytest.raises(PlanInactive):
        await service.schedule_downgrade(user.id, catalog.pro.id, retired.id)
    assert await _count(db, PendingDowngrade) == 0


async def test_cancel_without_pending_downgrade(db, clock, make_user):
    user = await make_user()
    with pytest.raises(NoPendingDowngrade):
        await PlanChangeService(db, clock=clock).cancel_pending_downgrade(user.id)


# ========== 到期执行 ==========

async def test_apply_scheduled_downgrades(db, clock, make_user, subscribe, catalog):
    user = await make_user()
    current = await subscribe(user, catalog.pro, days_left=3)
    service = PlanChangeService(db, clock=clock)
    await service.schedule_downgrade(user.id, catalog.pro.id, catalog.basic.id)

    result = await service.apply_scheduled_downgrades()
    assert result == {"processed": 0, "failed": 0, "order_nos": []}

    clock.advance(timedelta(days=3))
    result = await service.apply_scheduled_downgrades()

    assert result["processed"] == 1
    assert result["failed"] == 0
    order = await service.orders.get_by_order_no(result["order_nos"][0])
    assert order.plan_id == catalog.basic.id
    assert order.status == "paid"
    assert order.payment_method == "plan_change"
    assert order.pay_amount == 0
    assert order.original_amount == catalog.basic.price
    assert order.paid_at == clock.now()
    assert order.expired_at == current.expired_at + timedelta(days=catalog.basic.duration)
    assert await _count(db, PendingDowngrade) == 0
    # 降级不产生任何流水
    assert await _count(db, BalanceTransaction) == 0
    assert await service.ledger.get_balance(user.id) == 0

    active = await service.orders.get_active_subscription(user.id)
    assert active.id == order.id

    # 再次执行不会重复生成订单
    assert (await service.apply_scheduled_downgrades())["processed"] == 0


async def test_applied_downgrade_survives_stale_order_sweep(db, clock, make_user, subscribe, catalog):
    user = await make_user()
    await subscribe(user, catalog.pro, days_left=3)
    service = PlanChangeService(db, clock=clock)
    await service.schedule_downgrade(user.id, catalog.pro.id, catalog.basic.id)

    clock.advance(timedelta(days=3, minutes=1))
    result = await service.apply_scheduled_downgrades()
    order_no = result["order_nos"][0]

    clock.advance(timedelta(minutes=31))
    assert await service.orders.cancel_stale_pending() == 0

    order = await service.orders.get_by_order_no(order_no)
    assert order.status == "paid"
    active = await service.orders.get_active_subscription(user.id)
    assert active.order_no == order_no


async def test_apply_scheduled_downgrades_isolates_failures(db, clock, make_user, subscribe, catalog, caplog):
    alice = await make_user("alice")
    bob = await make_user("bob")
    await subscribe(alice, catalog.pro, days_left=1)
    await subscribe(bob, catalog.premium, days_left=2)
    service = PlanChangeService(db, clock=clock)
    await service.schedule_downgrade(alice.id, catalog.pro.id, catalog.basic.id)
    await service.schedule_downgrade(bob.id, catalog.premium.id, catalog.pro.id)
    alice_id, bob_id = alice.id, bob.id

    # 目标套餐在生效前下架
    await service.plans.set_active(catalog.basic.id, False)

    clock.advance(timedelta(days=5))
    caplog.set_level(logging.WARNING, logger="panel_billing.services.plan_change_service")
    result = await service.apply_scheduled_downgrades()

    assert result["processed"] == 1
    assert result["failed"] == 1
    remaining = await db.execute(select(PendingDowngrade.user_id))
    assert remaining.scalars().all() == [alice_id]
    order = await service.orders.get_by_order_no(result["order_nos"][0])
    assert order.user_id == bob_id

    # 目标套餐下架属于运营状态，只记警告，不打印堆栈
    unavailable = [r for r in caplog.records if "降级目标套餐不可用" in r.getMessage()]
    assert len(unavailable) == 1
    assert unavailable[0].levelno == logging.WARNING
    assert unavailable[0].exc_info is None
    assert not [r for r in caplog.records if r.levelno >= logging.ERROR]

    # 重新上架后下一轮即可生效
    await service.plans.set_active(catalog.basic.id, True)
    result = await service.apply_scheduled_downgrades()
    assert result["processed"] == 1
    order = await service.orders.get_by_order_no(result["order_nos"][0])
    assert order.user_id == alice_id
    assert order.plan_id == catalog.basic.id
