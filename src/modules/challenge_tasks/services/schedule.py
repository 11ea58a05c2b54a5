# src/modules/challenge_tasks/services/schedule.py

from datetime import datetime, timedelta, time

from src.core.utils import to_utc
from src.modules.challenge_tasks.config import TaskSettings
from src.modules.challenge_tasks.models import TriggerName

# 最多向后查找的周数，用于寻找满足“每 N 周”条件的抽奖日
_MAX_WEEKS_AHEAD = 106


def _next_weekly(after: datetime, weekday: int, hour: int) -> datetime:
    """返回严格晚于 after 的下一个 “每周 weekday 的 hour:00 UTC”。weekday: 0 = 周一。"""
    after = to_utc(after)
    candidate = datetime.combine(after.date(), time(hour=hour), tzinfo=after.tzinfo)
    candidate += timedelta(days=(weekday - candidate.weekday()) % 7)
    if candidate <= after:
        candidate += timedelta(days=7)
    return candidate


def _next_minute_slot(after: datetime, modulus: int, residue: int) -> datetime:
    """
    返回严格晚于 after 的下一个整分钟，使得 (自 Unix 纪元起的分钟数) % modulus == residue。
    使用绝对分钟数而不是“小时内的分钟”，周期在整点处不会被截断。
    """
    after = to_utc(after)
    start = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
    minutes = int(start.timestamp()) // 60
    return start + timedelta(minutes=(residue - minutes) % modulus)


class TaskSchedule:
    """
    计算各个触发器的下一次触发时间。纯函数，不读取当前时间。

    正式模式: 每周固定时间开启投票，投票时长之后开始活动，每 N 个 ISO 周在固定日期开奖。
    测试模式: 以 T 分钟为一个周期，分钟数 ≡ T-1 开启投票，≡ 0 开始活动，每 2T 分钟中 ≡ 1 时开奖。
    """

    def __init__(self, settings: TaskSettings):
        self.settings = settings

    @property
    def poll_duration(self) -> timedelta:
        if self.settings.test_mode:
            return timedelta(minutes=1)
        return timedelta(hours=self.settings.poll_duration_hours)

    @property
    def event_duration(self) -> timedelta:
        if self.settings.test_mode:
            return timedelta(minutes=self.settings.test_interval_minutes)
        return timedelta(days=self.settings.task_duration_days)

    def next_fire(self, trigger: TriggerName, after: datetime) -> datetime:
        trigger = TriggerName(trigger)
        if self.settings.test_mode:
            return self._next_fire_test(trigger, after)

        s = self.settings
        if trigger is TriggerName.POLL_OPEN:
            return _next_weekly(after, s.poll_day, s.poll_hour_utc)
        if trigger is TriggerName.EVENT_START:
            # 活动开始 = 某次投票开启时间 + 投票时长
            return _next_weekly(to_utc(after) - self.poll_duration, s.poll_day, s.poll_hour_utc) + self.poll_duration
        return self._next_prize_draw(after)

    def _next_fire_test(self, trigger: TriggerName, after: datetime) -> datetime:
        interval = self.settings.test_interval_minutes
        if trigger is TriggerName.POLL_OPEN:
            return _next_minute_slot(after, interval, interval - 1)
        if trigger is TriggerName.EVENT_START:
            return _next_minute_slot(after, interval, 0)
        return _next_minute_slot(after, 2 * interval, 1)

    def _next_prize_draw(self, after: datetime) -> datetime:
        s = self.settings
        candidate = _next_weekly(after, s.prize_day, s.prize_hour_utc)
        for _ in range(_MAX_WEEKS_AHEAD):
            if candidate.isocalendar()[1] % s.prize_frequency_weeks == 0:
                return candidate
            candidate += timedelta(days=7)
        return candidate

    def prize_window(self, now: datetime) -> tuple[datetime, datetime]:
        """最近 prize_period_days 个完整的 UTC 自然日（包含今天），返回 (开始, 结束)。"""
        now = to_utc(now)
        end = datetime.combine(now.date(), time.max, tzinfo=now.tzinfo)
        start = datetime.combine(now.date() - timedelta(days=self.settings.prize_period_days - 1), time.min, tzinfo=now.tzinfo)
        return start, end
