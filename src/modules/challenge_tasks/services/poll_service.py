# src/modules/challenge_tasks/services/poll_service.py

import logging
import uuid
from datetime import datetime
from typing import Optional, Sequence

from src.core.database import Database
from src.core.utils import utcnow
from src.modules.challenge_tasks import embeds
from src.modules.challenge_tasks.config import TaskSettings
from src.modules.challenge_tasks.exceptions import (
    ConflictError, DependencyUnavailable, NotFoundError, ValidationError,
)
from src.modules.challenge_tasks.models import (
    ChallengeTemplate, MessageRef, Poll, VoteOutcome, VoteResult,
)
from src.modules.challenge_tasks.services.schedule import TaskSchedule

logger = logging.getLogger(__name__)


def pick_winner(options: Sequence[dict], tallies: dict[str, int]) -> Optional[str]:
    """
    选出票数最多的选项。
    平票时取候选顺序中靠前的那个；没有任何投票时即为第一个候选。
    """
    winner, best = None, -1
    for option in options:
        option_id = option['template_id']
        votes = tallies.get(option_id, 0)
        if votes > best:
            winner, best = option_id, votes
    return winner


class PollService:
    """
    投票引擎：开启、投票、结算。
    每个分类同时只有一个进行中的投票，每个用户在一个投票中只有一票（以最后一次为准）。
    """

    def __init__(self, db: Database, notifier, settings: TaskSettings, schedule: Optional[TaskSchedule] = None):
        self.db = db
        self.notifier = notifier
        self.settings = settings
        self.schedule = schedule or TaskSchedule(settings)

    async def get_poll(self, guild_id: int, poll_id: str) -> Optional[Poll]:
        row = await self.db.get_task_poll(guild_id, poll_id)
        return Poll.from_row(row, row['votes']) if row else None

    async def get_active_poll(self, guild_id: int, category: str) -> Optional[Poll]:
        row = await self.db.get_active_task_poll(guild_id, category)
        return Poll.from_row(row, row['votes']) if row else None

    async def open_poll(
        self, guild_id: int, category: str, candidates: Sequence[ChallengeTemplate], now: Optional[datetime] = None
    ) -> Poll:
        if not candidates:
            raise ValidationError(f"分类 {category} 没有可用的候选任务，无法开启投票。")

        now = now or utcnow()
        poll_id = f"{category}-{now:%Y%m%d%H%M}-{uuid.uuid4().hex[:6]}"
        existing_id = await self.db.create_task_poll(guild_id, {
            'poll_id': poll_id,
            'category': category,
            'options': [c.to_snapshot() for c in candidates],
            'created_at': now,
            'ends_at': now + self.schedule.poll_duration,
        })
        if existing_id:
            existing = await self.get_poll(guild_id, existing_id)
            raise ConflictError(f"分类 {category} 已经有一个进行中的投票。", existing=existing)

        log_context = {'guild_id': guild_id, 'poll_id': poll_id, 'category': category}
        logger.info("已开启新的任务投票", extra=log_context)
        return await self.get_poll(guild_id, poll_id)

    async def publish_poll(self, guild_id: int, poll: Poll) -> Optional[MessageRef]:
        """发布投票消息并保存消息位置。失败只记录日志，投票本身依然有效。"""
        content = f"<@&{self.settings.task_role_id}>" if self.settings.task_role_id else None
        try:
            ref = await self.notifier.post_announcement(
                self.settings.task_channel_id,
                embeds.build_poll_embed(poll, self.settings.theme_color),
                content=content,
                view=embeds.build_poll_view(poll),
            )
        except DependencyUnavailable as e:
            logger.warning(f"发布投票消息失败: {e.message}", extra={'guild_id': guild_id, 'poll_id': poll.poll_id})
            return None

        await self.db.update_task_poll_message(guild_id, poll.poll_id, ref.channel_id, ref.message_id)
        poll.channel_id, poll.message_id = ref.channel_id, ref.message_id
        return ref

    async def cast_vote(
        self, guild_id: int, poll_id: str, user_id: int, option_id: str, now: Optional[datetime] = None
    ) -> VoteOutcome:
        poll = await self.get_poll(guild_id, poll_id)
        if poll is None:
            raise NotFoundError("找不到该投票。")
        if not poll.is_active:
            raise ValidationError("该投票已经结束。")
        if poll.get_option(option_id) is None:
            raise ValidationError("无效的投票选项。")

        result = await self.db.record_task_poll_vote(guild_id, poll_id, user_id, option_id, now or utcnow())
        if not result['is_active']:
            # 读取与写入之间投票被关闭
            raise ValidationError("该投票已经结束。")

        previous = result['previous']
        if previous is None:
            vote_result = VoteResult.FIRST_VOTE
        elif previous == option_id:
            vote_result = VoteResult.UNCHANGED
        else:
            vote_result = VoteResult.CHANGED

        poll = await self.get_poll(guild_id, poll_id)
        log_context = {'guild_id': guild_id, 'poll_id': poll_id, 'user_id': user_id, 'option_id': option_id, 'result': vote_result.name}
        logger.info("用户投票", extra=log_context)

        if vote_result is not VoteResult.UNCHANGED:
            await self._refresh_message(guild_id, poll)
        return VoteOutcome(result=vote_result, poll=poll)

    async def resolve_poll(self, guild_id: int, poll_id: str, now: Optional[datetime] = None) -> Poll:
        """关闭投票并确定获胜选项。已关闭的投票直接返回已保存的结果。"""
        was_active = await self.get_poll(guild_id, poll_id)
        if was_active is None:
            raise NotFoundError("找不到该投票。")

        row = await self.db.close_task_poll(guild_id, poll_id, now or utcnow(), pick_winner)
        poll = Poll.from_row(row, row['votes'])

        if was_active.is_active:
            log_context = {'guild_id': guild_id, 'poll_id': poll_id, 'winner': poll.winning_option_id, 'tallies': poll.tallies()}
            logger.info("投票已结算", extra=log_context)
            await self._refresh_message(guild_id, poll)
        return poll

    async def force_close(self, guild_id: int, category: str, now: Optional[datetime] = None) -> Poll:
        """管理员手动结束某个分类当前的投票。"""
        poll = await self.get_active_poll(guild_id, category)
        if poll is None:
            raise NotFoundError(f"分类 {category} 当前没有进行中的投票。")
        return await self.resolve_poll(guild_id, poll.poll_id, now)

    async def _refresh_message(self, guild_id: int, poll: Poll):
        if not poll.message_id:
            return
        try:
            await self.notifier.edit_announcement(
                MessageRef(poll.channel_id, poll.message_id),
                embeds.build_poll_embed(poll, self.settings.theme_color),
                view=embeds.build_poll_view(poll),
            )
        except DependencyUnavailable as e:
            logger.warning(f"更新投票消息失败: {e.message}", extra={'guild_id': guild_id, 'poll_id': poll.poll_id})
