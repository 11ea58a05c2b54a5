# src/modules/challenge_tasks/services/scheduler_service.py

import logging
import random
from datetime import datetime
from typing import Optional

from src.core.database import Database
from src.core.utils import parse_iso, utcnow
from src.modules.challenge_tasks.config import TaskSettings
from src.modules.challenge_tasks.exceptions import ConflictError, NotFoundError
from src.modules.challenge_tasks.models import ChallengeEvent, Poll, TriggerName, TriggerState
from src.modules.challenge_tasks.services.candidate_selector import select_candidates
from src.modules.challenge_tasks.services.catalog_service import CatalogService
from src.modules.challenge_tasks.services.event_service import EventService
from src.modules.challenge_tasks.services.keyword_service import KeywordService
from src.modules.challenge_tasks.services.poll_service import PollService
from src.modules.challenge_tasks.services.prize_draw_service import PrizeDrawService
from src.modules.challenge_tasks.services.schedule import TaskSchedule

logger = logging.getLogger(__name__)

# 抽奖汇总所有分类，所以在触发器表中使用这个伪分类
ALL_CATEGORIES = 'all'


class TaskScheduler:
    """
    基于持久化触发器状态的调度器。
    每次 tick: 未设置的触发器被设置下一次触发时间；到期的触发器执行后，从当前时间重新计算下一次。
    机器人停机期间错过的触发只会补执行一次。每个触发器相互隔离，一个失败不影响其他触发器。
    """

    def __init__(
        self,
        db: Database,
        settings: TaskSettings,
        catalog_service: CatalogService,
        poll_service: PollService,
        event_service: EventService,
        keyword_service: KeywordService,
        prize_draw_service: PrizeDrawService,
        schedule: Optional[TaskSchedule] = None,
        rng: Optional[random.Random] = None,
    ):
        self.db = db
        self.settings = settings
        self.catalog_service = catalog_service
        self.poll_service = poll_service
        self.event_service = event_service
        self.keyword_service = keyword_service
        self.prize_draw_service = prize_draw_service
        self.schedule = schedule or TaskSchedule(settings)
        self.rng = rng or random.Random()

    def _triggers(self) -> list[tuple[str, TriggerName]]:
        categories = self.settings.enabled_categories
        # 先开始活动（结算旧投票），再开启新投票
        triggers = [(c, TriggerName.EVENT_START) for c in categories]
        triggers += [(c, TriggerName.POLL_OPEN) for c in categories]
        triggers.append((ALL_CATEGORIES, TriggerName.PRIZE_DRAW))
        return triggers

    async def get_trigger_states(self, guild_id: int) -> dict[tuple[str, TriggerName], TriggerState]:
        states = {}
        for row in await self.db.get_trigger_states(guild_id):
            try:
                trigger = TriggerName(row['trigger_name'])
            except ValueError:
                continue
            states[(row['category'], trigger)] = TriggerState(
                category=row['category'],
                trigger=trigger,
                last_fired_at=parse_iso(row['last_fired_at']),
                next_fire_at=parse_iso(row['next_fire_at']),
            )
        return states

    async def tick(self, guild_id: int, now: Optional[datetime] = None) -> list[tuple[str, TriggerName]]:
        """执行一次调度检查，返回本次到期并执行的 (分类, 触发器) 列表。"""
        now = now or utcnow()
        states = await self.get_trigger_states(guild_id)

        due: list[tuple[str, TriggerName]] = []
        for category, trigger in self._triggers():
            state = states.get((category, trigger))
            if state is None or state.next_fire_at is None:
                next_fire = self.schedule.next_fire(trigger, now)
                await self.db.save_trigger_state(guild_id, category, trigger.value, None, next_fire)
                logger.info(
                    "已设置触发器",
                    extra={'guild_id': guild_id, 'category': category, 'trigger': trigger.value, 'next_fire_at': next_fire.isoformat()}
                )
                continue
            if state.next_fire_at <= now:
                due.append((category, trigger))

        if not due:
            return due

        event_categories = [c for c, t in due if t is TriggerName.EVENT_START]
        if event_categories:
            await self._fire_event_starts(guild_id, event_categories, now)

        for category, trigger in due:
            if trigger is TriggerName.POLL_OPEN:
                await self._isolated(guild_id, category, trigger, self._fire_poll_open(guild_id, category, now))
            elif trigger is TriggerName.PRIZE_DRAW:
                await self._isolated(guild_id, category, trigger, self.prize_draw_service.run_draw(guild_id, now=now, rng=self.rng))

        for category, trigger in due:
            await self.db.save_trigger_state(guild_id, category, trigger.value, now, self.schedule.next_fire(trigger, now))
        return due

    async def _isolated(self, guild_id: int, category: str, trigger: TriggerName, coro) -> bool:
        log_context = {'guild_id': guild_id, 'category': category, 'trigger': trigger.value}
        try:
            await coro
            logger.info("触发器执行完成", extra=log_context)
            return True
        except Exception:
            logger.error("触发器执行失败", extra=log_context, exc_info=True)
            return False

    async def open_poll_now(self, guild_id: int, category: str, now: Optional[datetime] = None) -> Poll:
        """抽取候选任务、开启并发布投票。该分类已有进行中的投票时抛出 ConflictError。"""
        now = now or utcnow()
        catalog = await self.catalog_service.get_templates(guild_id, category)
        candidates = select_candidates(category, catalog, self.rng)
        poll = await self.poll_service.open_poll(guild_id, category, candidates, now)
        await self.poll_service.publish_poll(guild_id, poll)
        return poll

    async def start_event_now(
        self, guild_id: int, category: str, now: Optional[datetime] = None, keyword: Optional[str] = None
    ) -> ChallengeEvent:
        """结算该分类等待中的投票并开始活动。"""
        now = now or utcnow()
        poll = await self._poll_awaiting_event(guild_id, category)
        if poll is None:
            raise NotFoundError(f"分类 {category} 没有等待开始活动的投票。")
        if keyword is None:
            keyword = await self.keyword_service.select_keyword(guild_id, now)
        resolved = await self.poll_service.resolve_poll(guild_id, poll.poll_id, now)
        return await self.event_service.start_event(guild_id, resolved, keyword, now)

    async def force_close_poll(
        self, guild_id: int, category: str, now: Optional[datetime] = None, keyword: Optional[str] = None
    ) -> ChallengeEvent:
        """管理员提前结束投票：结算后立即开始活动，本轮循环不会因此中断。"""
        now = now or utcnow()
        await self.poll_service.force_close(guild_id, category, now)
        return await self.start_event_now(guild_id, category, now, keyword=keyword)

    async def _poll_awaiting_event(self, guild_id: int, category: str) -> Optional[Poll]:
        """进行中的投票；没有时取最近一次已结算但还没有对应活动的投票。"""
        poll = await self.poll_service.get_active_poll(guild_id, category)
        if poll is not None:
            return poll
        row = await self.db.get_latest_closed_task_poll(guild_id, category)
        if row is None or await self.db.get_task_event_by_poll(guild_id, row['poll_id']):
            return None
        return Poll.from_row(row, row['votes'])

    async def _fire_poll_open(self, guild_id: int, category: str, now: datetime):
        try:
            await self.open_poll_now(guild_id, category, now)
        except ConflictError as e:
            logger.warning(
                "该分类已有进行中的投票，保留原投票",
                extra={'guild_id': guild_id, 'category': category, 'poll_id': e.existing.poll_id if e.existing else None}
            )

    async def _fire_event_starts(self, guild_id: int, categories: list[str], now: datetime):
        """同一次 tick 中到期的所有分类共用一个关键词。"""
        keyword = None
        for category in categories:
            async def start(category=category):
                nonlocal keyword
                poll = await self._poll_awaiting_event(guild_id, category)
                if poll is None:
                    logger.info("该分类没有等待开始活动的投票，跳过", extra={'guild_id': guild_id, 'category': category})
                    return
                if keyword is None:
                    keyword = await self.keyword_service.select_keyword(guild_id, now)
                await self.start_event_now(guild_id, category, now, keyword=keyword)

            await self._isolated(guild_id, category, TriggerName.EVENT_START, start())
