"""时间工具 - 统一使用不带时区的 UTC 时间存库"""

from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    """当前 UTC 时间（naive）"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def start_of_utc_day(now: datetime) -> datetime:
    """当天 UTC 零点"""
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def seconds_until_next_utc_day(now: datetime) -> int:
    """距离下一个 UTC 零点的秒数（至少 1 秒）"""
    next_midnight = start_of_utc_day(now) + timedelta(days=1)
    return max(1, int((next_midnight - now).total_seconds()))
