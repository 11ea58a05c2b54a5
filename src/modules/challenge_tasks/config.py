# src/modules/challenge_tasks/config.py

import os
import logging
from dataclasses import dataclass, field
from typing import Optional

from src.modules.challenge_tasks.models import TaskCategory

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES = (TaskCategory.PVM.value, TaskCategory.SKILLING.value, TaskCategory.MINIGAME.value)


def _get_int(name: str, default: int) -> int:
    """读取整数环境变量，解析失败时记录警告并使用默认值。"""
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning(f"环境变量 {name} 的值 '{raw}' 不是有效整数，将使用默认值 {default}。")
        return default


def _get_optional_id(name: str) -> Optional[int]:
    raw = os.getenv(name, '').strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.error(f"错误：解析 {name} 时出错！请检查 .env 文件中的 ID 是否为纯数字。")
        return None


def _get_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class TaskSettings:
    """任务循环的全部可配置项，均来自 .env。"""
    task_channel_id: Optional[int] = None
    admin_channel_id: Optional[int] = None
    archive_channel_id: Optional[int] = None
    prize_channel_id: Optional[int] = None
    task_role_id: Optional[int] = None

    poll_day: int = 6  # 0 = 周一 ... 6 = 周日
    poll_hour_utc: int = 0
    poll_duration_hours: int = 24
    task_duration_days: int = 7
    prize_day: int = 1
    prize_hour_utc: int = 0
    prize_frequency_weeks: int = 2
    prize_period_days: int = 14

    test_mode: bool = False
    test_interval_minutes: int = 7

    categories: list[str] = field(default_factory=lambda: list(DEFAULT_CATEGORIES))
    scheduler_tick_seconds: int = 30
    theme_color: int = 0x49989a

    @classmethod
    def from_env(cls) -> 'TaskSettings':
        categories = cls._load_categories()

        try:
            theme_color = int(os.getenv('THEME_COLOR', '0x49989a'), 16)
        except ValueError:
            logger.warning("THEME_COLOR 格式错误，将使用默认颜色。")
            theme_color = 0x49989a

        settings = cls(
            task_channel_id=_get_optional_id('TASK_CHANNEL_ID'),
            admin_channel_id=_get_optional_id('TASK_ADMIN_CHANNEL_ID'),
            archive_channel_id=_get_optional_id('TASK_ARCHIVE_CHANNEL_ID'),
            prize_channel_id=_get_optional_id('TASK_PRIZE_CHANNEL_ID'),
            task_role_id=_get_optional_id('TASK_USER_ROLE_ID'),
            poll_day=_get_int('TASK_POLL_DAY', 6) % 7,
            poll_hour_utc=_get_int('TASK_POLL_HOUR_UTC', 0) % 24,
            poll_duration_hours=max(1, _get_int('TASK_POLL_DURATION_HOURS', 24)),
            task_duration_days=max(1, _get_int('TASK_DURATION_DAYS', 7)),
            prize_day=_get_int('TASK_PRIZE_DAY', 1) % 7,
            prize_hour_utc=_get_int('TASK_PRIZE_HOUR_UTC', 0) % 24,
            prize_frequency_weeks=max(1, _get_int('TASK_PRIZE_FREQUENCY_WEEKS', 2)),
            prize_period_days=max(1, _get_int('TASK_PRIZE_PERIOD_DAYS', 14)),
            test_mode=os.getenv('TASK_MODE', 'prod').strip().lower() == 'dev',
            test_interval_minutes=max(2, _get_int('TASK_TEST_INTERVAL_MINUTES', 7)),
            categories=categories,
            scheduler_tick_seconds=max(5, _get_int('TASK_SCHEDULER_TICK_SECONDS', 30)),
            theme_color=theme_color,
        )
        logger.info(
            "任务配置已加载",
            extra={'categories': settings.categories, 'test_mode': settings.test_mode}
        )
        return settings

    @staticmethod
    def _load_categories() -> list[str]:
        """解析 TASK_CATEGORIES，忽略未知分类。Leagues 需要额外开启。"""
        raw = os.getenv('TASK_CATEGORIES', '')
        known = {c.value.lower(): c.value for c in TaskCategory}
        categories = []
        for name in (part.strip() for part in raw.split(',')):
            if not name:
                continue
            value = known.get(name.lower())
            if value is None:
                logger.warning(f"未知的任务分类 '{name}'，已忽略。")
                continue
            if value not in categories:
                categories.append(value)
        if not categories:
            categories = list(DEFAULT_CATEGORIES)

        leagues = TaskCategory.LEAGUES.value
        if _get_bool('TASK_LEAGUES_ENABLED'):
            if leagues not in categories:
                categories.append(leagues)
        elif leagues in categories:
            categories.remove(leagues)
        return categories

    @property
    def enabled_categories(self) -> list[str]:
        return list(self.categories)
