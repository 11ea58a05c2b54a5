# src/modules/challenge_tasks/services/prize_draw_service.py

import logging
import random
from datetime import datetime, time, timezone
from typing import Optional

from src.core.database import Database
from src.core.utils import to_utc, utcnow
from src.modules.challenge_tasks import embeds
from src.modules.challenge_tasks.config import TaskSettings
from src.modules.challenge_tasks.exceptions import DependencyUnavailable, NotFoundError, ValidationError
from src.modules.challenge_tasks.models import APPROVED_STATUSES, PrizeDraw, SubmissionStatus, Tier
from src.modules.challenge_tasks.services.schedule import TaskSchedule

logger = logging.getLogger(__name__)


def make_draw_id(window_start: datetime, window_end: datetime) -> str:
    return f"{to_utc(window_start):%Y-%m-%d}_to_{to_utc(window_end):%Y-%m-%d}"


def parse_draw_id(draw_id: str) -> tuple[datetime, datetime]:
    """把抽奖 ID 还原为统计区间 (开始日 00:00 到结束日最后一刻，UTC)。"""
    start_text, sep, end_text = draw_id.strip().partition('_to_')
    try:
        if not sep:
            raise ValueError(draw_id)
        start = datetime.strptime(start_text, '%Y-%m-%d').date()
        end = datetime.strptime(end_text, '%Y-%m-%d').date()
    except ValueError as e:
        raise ValidationError(f"无效的抽奖 ID: '{draw_id}'，格式应为 YYYY-MM-DD_to_YYYY-MM-DD。") from e
    if end < start:
        raise ValidationError(f"无效的抽奖 ID: '{draw_id}'，结束日期早于开始日期。")
    return datetime.combine(start, time.min, tzinfo=timezone.utc), datetime.combine(end, time.max, tzinfo=timezone.utc)


class PrizeDrawService:
    """
    抽奖引擎。
    每个用户在每个活动中按最高已批准等级获得抽奖券 (铜 1 / 银 2 / 金 3)，不同活动之间累加。
    一个抽奖一旦有了获奖者就不会再被重新抽取。
    """

    def __init__(self, db: Database, notifier, settings: TaskSettings, schedule: Optional[TaskSchedule] = None):
        self.db = db
        self.notifier = notifier
        self.settings = settings
        self.schedule = schedule or TaskSchedule(settings)

    def current_window(self, now: Optional[datetime] = None) -> tuple[datetime, datetime]:
        return self.schedule.prize_window(now or utcnow())

    def resolve_window(self, draw_id: Optional[str] = None, now: Optional[datetime] = None) -> tuple[datetime, datetime]:
        """指定抽奖 ID 时还原它的统计区间，否则使用当前区间。"""
        return parse_draw_id(draw_id) if draw_id else self.current_window(now)

    async def get_draw(self, guild_id: int, draw_id: str) -> Optional[PrizeDraw]:
        row = await self.db.get_prize_draw(guild_id, draw_id)
        return PrizeDraw.from_row(row) if row else None

    async def snapshot_draw(
        self,
        guild_id: int,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> PrizeDraw:
        now = now or utcnow()
        if window_start is None or window_end is None:
            window_start, window_end = self.current_window(now)

        events = await self.db.get_task_events_between(guild_id, window_start, window_end)
        approved = [s.value for s in APPROVED_STATUSES]

        participants: dict[int, int] = {}
        tier_counts = {tier.column: 0 for tier in Tier}
        for event in events:
            # 同一活动中只取每个用户的最高等级
            best: dict[int, Tier] = {}
            for row in await self.db.get_submissions_for_event(guild_id, event['event_id'], approved):
                tier = SubmissionStatus(row['status']).tier
                current = best.get(row['user_id'])
                if current is None or tier.rolls > current.rolls:
                    best[row['user_id']] = tier
            for user_id, tier in best.items():
                participants[user_id] = participants.get(user_id, 0) + tier.rolls
                tier_counts[tier.column] += 1

        tickets = [user_id for user_id in sorted(participants) for _ in range(participants[user_id])]
        draw_id = make_draw_id(window_start, window_end)
        row = await self.db.save_prize_draw_snapshot(guild_id, {
            'draw_id': draw_id,
            'window_start': window_start,
            'window_end': window_end,
            'snapshot_taken_at': now,
            'participants': participants,
            'tickets': tickets,
            'total_entries': len(tickets),
            'tier_counts': tier_counts,
            'event_ids': [event['event_id'] for event in events],
        })
        draw = PrizeDraw.from_row(row)

        log_context = {'guild_id': guild_id, 'draw_id': draw_id, 'participants': len(draw.participants), 'total_entries': draw.total_entries}
        if draw.winner_id is not None:
            logger.info("抽奖已有获奖者，保留原快照", extra=log_context)
        else:
            logger.info("已生成抽奖快照", extra=log_context)
        return draw

    async def roll_draw(
        self, guild_id: int, draw_id: str, now: Optional[datetime] = None, rng: Optional[random.Random] = None
    ) -> Optional[int]:
        """在抽奖券中等概率抽取一个获奖者。已有获奖者时直接返回；没有抽奖券时返回 None。"""
        draw = await self.get_draw(guild_id, draw_id)
        if draw is None:
            raise NotFoundError("找不到该抽奖。")
        if draw.winner_id is not None:
            return draw.winner_id
        if not draw.tickets:
            logger.info("没有任何抽奖券，本期不产生获奖者", extra={'guild_id': guild_id, 'draw_id': draw_id})
            return None

        rng = rng or random.Random()
        candidate = rng.choice(draw.tickets)
        winner_id = await self.db.set_prize_draw_winner(guild_id, draw_id, candidate, now or utcnow())
        logger.info("已抽出获奖者", extra={'guild_id': guild_id, 'draw_id': draw_id, 'winner_id': winner_id})
        return winner_id

    async def announce_draw(self, guild_id: int, draw_id: str, now: Optional[datetime] = None) -> bool:
        """
        公布获奖者，每个抽奖只公布一次。
        先标记为已公布再发送；发送失败时撤销标记以便之后重试。给获奖者的私信失败不影响结果。
        """
        draw = await self.get_draw(guild_id, draw_id)
        if draw is None:
            raise NotFoundError("找不到该抽奖。")
        if draw.winner_id is None:
            raise ValidationError("该抽奖还没有获奖者。")

        if not await self.db.mark_prize_draw_announced(guild_id, draw_id, now or utcnow()):
            logger.info("抽奖结果已公布过，跳过", extra={'guild_id': guild_id, 'draw_id': draw_id})
            return False

        content = f"<@&{self.settings.task_role_id}>" if self.settings.task_role_id else None
        try:
            await self.notifier.post_announcement(
                self.settings.prize_channel_id,
                embeds.build_prize_embed(draw, self.settings.theme_color),
                content=content,
            )
        except DependencyUnavailable:
            await self.db.mark_prize_draw_announced(guild_id, draw_id, None)
            raise

        delivered = await self.notifier.direct_message(
            draw.winner_id,
            content="🏆 **恭喜！** 你赢得了本期社区任务抽奖！请联系任务管理员领取奖品。"
        )
        if not delivered:
            logger.warning("获奖私信未送达", extra={'guild_id': guild_id, 'draw_id': draw_id, 'winner_id': draw.winner_id})
        return True

    async def run_draw(
        self,
        guild_id: int,
        now: Optional[datetime] = None,
        rng: Optional[random.Random] = None,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
    ) -> PrizeDraw:
        """快照 -> 抽奖 -> 公布 (只在有获奖者时公布)。不指定区间时使用当前区间。"""
        now = now or utcnow()
        draw = await self.snapshot_draw(guild_id, window_start, window_end, now=now)
        winner_id = await self.roll_draw(guild_id, draw.draw_id, now=now, rng=rng)
        if winner_id is None:
            return draw
        await self.announce_draw(guild_id, draw.draw_id, now=now)
        return await self.get_draw(guild_id, draw.draw_id)
