# src/modules/challenge_tasks/services/event_service.py

import logging
from datetime import datetime
from typing import Optional

from src.core.database import Database
from src.core.utils import utcnow
from src.modules.challenge_tasks import embeds
from src.modules.challenge_tasks.config import TaskSettings
from src.modules.challenge_tasks.exceptions import DependencyUnavailable, NotFoundError, ValidationError
from src.modules.challenge_tasks.models import ChallengeEvent, MessageRef, Poll
from src.modules.challenge_tasks.services.schedule import TaskSchedule

logger = logging.getLogger(__name__)


class EventService:
    """
    任务活动的生命周期：由已结算的投票创建活动、发布公告、同步完成人数。
    活动的结束时间只作展示，状态由结束时间推导。
    """

    def __init__(self, db: Database, notifier, settings: TaskSettings, schedule: Optional[TaskSchedule] = None):
        self.db = db
        self.notifier = notifier
        self.settings = settings
        self.schedule = schedule or TaskSchedule(settings)

    async def _load(self, guild_id: int, row: Optional[dict]) -> Optional[ChallengeEvent]:
        if not row:
            return None
        completed = await self.db.get_event_completed_user_ids(guild_id, row['event_id'])
        return ChallengeEvent.from_row(row, completed)

    async def get_event(self, guild_id: int, event_id: str) -> Optional[ChallengeEvent]:
        return await self._load(guild_id, await self.db.get_task_event(guild_id, event_id))

    async def get_active_events(self, guild_id: int, now: Optional[datetime] = None) -> list[ChallengeEvent]:
        rows = await self.db.get_active_task_events(guild_id, now or utcnow())
        return [await self._load(guild_id, row) for row in rows]

    async def get_latest_event(self, guild_id: int, category: str) -> Optional[ChallengeEvent]:
        return await self._load(guild_id, await self.db.get_latest_task_event(guild_id, category))

    async def start_event(
        self, guild_id: int, poll: Poll, keyword: str, now: Optional[datetime] = None
    ) -> ChallengeEvent:
        """
        根据已结算的投票开启活动。同一个投票重复调用时返回已存在的活动，不会再次发布公告。
        """
        if poll.is_active or poll.winning_option is None:
            raise ValidationError("投票尚未结算，无法开始活动。")

        existing = await self._load(guild_id, await self.db.get_task_event_by_poll(guild_id, poll.poll_id))
        if existing:
            logger.info("该投票的活动已存在，跳过创建", extra={'guild_id': guild_id, 'event_id': existing.event_id})
            return existing

        now = now or utcnow()
        template = poll.winning_option
        row = await self.db.create_task_event(guild_id, {
            'event_id': f"{poll.category}-{template.template_id}-{now:%Y%m%d%H%M}",
            'category': poll.category,
            'poll_id': poll.poll_id,
            'template': template.to_snapshot(),
            'keyword': keyword,
            'start_time': now,
            'end_time': now + self.schedule.event_duration,
            # 阈值在此复制，之后模板的修改不影响本次活动
            'amt_bronze': template.amt_bronze,
            'amt_silver': template.amt_silver,
            'amt_gold': template.amt_gold,
        })
        event = await self._load(guild_id, row)

        log_context = {'guild_id': guild_id, 'event_id': event.event_id, 'poll_id': poll.poll_id, 'keyword': keyword}
        logger.info("任务活动已开始", extra=log_context)

        await self._publish(guild_id, event)
        return event

    async def _publish(self, guild_id: int, event: ChallengeEvent):
        content = f"<@&{self.settings.task_role_id}>" if self.settings.task_role_id else None
        try:
            ref = await self.notifier.post_announcement(
                self.settings.task_channel_id,
                embeds.build_event_embed(event, self.settings.theme_color),
                content=content,
                view=embeds.build_event_view(event),
            )
        except DependencyUnavailable as e:
            logger.warning(f"发布活动公告失败: {e.message}", extra={'guild_id': guild_id, 'event_id': event.event_id})
            return
        await self.db.update_task_event_message(guild_id, event.event_id, ref.channel_id, ref.message_id)
        event.channel_id, event.message_id = ref.channel_id, ref.message_id

    async def record_progress(self, guild_id: int, event_id: str) -> ChallengeEvent:
        """重新读取完成人数并原地更新活动公告。"""
        event = await self.get_event(guild_id, event_id)
        if event is None:
            raise NotFoundError("找不到该任务活动。")
        if event.message_id:
            try:
                await self.notifier.edit_announcement(
                    MessageRef(event.channel_id, event.message_id),
                    embeds.build_event_embed(event, self.settings.theme_color),
                )
            except DependencyUnavailable as e:
                logger.warning(f"更新活动公告失败: {e.message}", extra={'guild_id': guild_id, 'event_id': event_id})
        return event
