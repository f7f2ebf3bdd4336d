"""
计费异常定义

每种异常都带有稳定的 error_code，调用方按类型或 error_code 判断，
不要从 message 文本反推错误类型。
"""


class BillingError(Exception):
    """计费操作异常基类"""
    error_code = "BILLING_ERROR"

    def __init__(self, message: str, error_code: str = None):
        self.message = message
        if error_code:
            self.error_code = error_code
        super().__init__(message)


class NotFound(BillingError):
    error_code = "NOT_FOUND"


class PlanNotFound(NotFound):
    error_code = "PLAN_NOT_FOUND"


class OrderNotFound(NotFound):
    error_code = "ORDER_NOT_FOUND"


class UserNotFound(NotFound):
    error_code = "USER_NOT_FOUND"


class InvalidTransition(BillingError):
    """非法的订单状态流转"""
    error_code = "INVALID_TRANSITION"

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"订单状态不能从 {current} 变更为 {target}")


class InvalidAmount(BillingError):
    error_code = "INVALID_AMOUNT"


class InsufficientBalance(BillingError):
    """余额不足（用户可充值后重试）"""
    error_code = "INSUFFICIENT_BALANCE"

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(f"余额不足，需要 {required}，当前余额 {available}")


class LedgerError(BillingError):
    """账户锁定或存储失败"""
    error_code = "LEDGER_ERROR"


class PlanInactive(BillingError):
    error_code = "PLAN_INACTIVE"


class SamePlan(BillingError):
    error_code = "SAME_PLAN"


class UpgradeNotAllowed(BillingError):
    error_code = "UPGRADE_NOT_ALLOWED"


class DowngradeNotAllowed(BillingError):
    error_code = "DOWNGRADE_NOT_ALLOWED"


class PendingDowngradeExists(BillingError):
    error_code = "PENDING_DOWNGRADE"


class NoPendingDowngrade(BillingError):
    error_code = "NO_PENDING_DOWNGRADE"


class NoActiveSubscription(BillingError):
    error_code = "NO_ACTIVE_SUBSCRIPTION"
