from __future__ import annotations

import calendar
import logging
from datetime import datetime
from typing import Any, Mapping, Protocol

from .models import OFFSET_ID, to_epoch_ms


logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK_MONTHS = 6


class OffsetStorageReader(Protocol):
    """
    host 提供的只读 offset 存储视图：按 partition 返回最后一次已提交的 offset。
    """

    def offset(self, partition: Mapping[str, str]) -> Mapping[str, Any] | None: ...


def months_before(now: datetime, months: int) -> datetime:
    """
    按日历月回退，日期超出目标月份天数时取该月最后一天（例如 8/31 回退 6 个月 -> 2/28）。
    """
    month_index = now.year * 12 + (now.month - 1) - months
    year, month0 = divmod(month_index, 12)
    month = month0 + 1
    day = min(now.day, calendar.monthrange(year, month)[1])
    return now.replace(year=year, month=month, day=day)


def initial_cursor(
    durable_offset: int | None,
    *,
    now: datetime,
    lookback_months: int = DEFAULT_LOOKBACK_MONTHS,
) -> int:
    """
    计算 task 启动时的 cursor。

    - 存在已提交的 offset：原样返回（断点续跑）
    - 首次运行：从 now 往前 lookback_months 个月开始
    """
    if durable_offset is not None:
        return durable_offset
    return to_epoch_ms(months_before(now, lookback_months))


def load_offset(reader: OffsetStorageReader, partition: Mapping[str, str]) -> int | None:
    """
    从 host 的 offset 存储读取该 partition 最后提交的 played_at。

    core 只读不写：offset 的持久化由 host 在记录写入下游后完成。
    存储值无法解析时按"不存在"处理（回退到 lookback 只会导致重复，不会丢数据）。
    """
    saved = reader.offset(partition)
    if not saved:
        return None
    value = saved.get(OFFSET_ID)
    if value is None:
        return None
    if isinstance(value, bool):
        logger.warning("ignoring stored offset: partition=%s value=%r", dict(partition), value)
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("ignoring stored offset: partition=%s value=%r", dict(partition), value)
        return None
