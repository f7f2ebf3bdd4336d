"""
统一时间处理模块

数据库存储 UTC 时间（不带时区信息的 naive datetime），
服务层通过注入的时钟获取当前时间，便于测试到期与折算逻辑。
"""
from datetime import datetime, timezone
from typing import Optional


def utc_now_naive() -> datetime:
    """
    获取当前 UTC 时间（naive，不带时区信息）

    这是数据库存储的标准格式，与 datetime.utcnow() 等效

    Returns:
        不带时区信息的 naive datetime 对象
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc(dt: datetime) -> datetime:
    """
    将任意时间转换为 UTC 时间

    Args:
        dt: 任意时区的 datetime 对象

    Returns:
        UTC 时间（naive，不带时区信息）
    """
    if dt.tzinfo is None:
        # 已经是 naive，假设是 UTC
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


class SystemClock:
    """系统时钟"""

    def now(self) -> datetime:
        return utc_now_naive()


class FixedClock:
    """固定时钟，测试与补跑任务使用"""

    def __init__(self, current: Optional[datetime] = None):
        self.current = to_utc(current) if current else utc_now_naive()

    def now(self) -> datetime:
        return self.current

    def advance(self, delta) -> datetime:
        self.current = self.current + delta
        return self.current
