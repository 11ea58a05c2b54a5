# src/modules/challenge_tasks/services/review_service.py

import logging
import uuid
from datetime import datetime
from typing import Optional, Sequence

from src.core.database import Database
from src.core.utils import utcnow
from src.modules.challenge_tasks import embeds
from src.modules.challenge_tasks.config import TaskSettings
from src.modules.challenge_tasks.exceptions import DependencyUnavailable, NotFoundError, ValidationError
from src.modules.challenge_tasks.models import (
    EventStatus, MessageRef, ReviewDecision, ReviewOutcome, ReviewResult, Submission, Tier,
)
from src.modules.challenge_tasks.services.event_service import EventService

logger = logging.getLogger(__name__)

MAX_EVIDENCE = 10


class ReviewService:
    """
    提交与审核的状态机: Pending -> Bronze/Silver/Gold/Rejected。
    每个用户在每个活动中只保留最高的已批准等级，计数随升级迁移而不是累加。
    """

    def __init__(self, db: Database, notifier, settings: TaskSettings, event_service: EventService):
        self.db = db
        self.notifier = notifier
        self.settings = settings
        self.event_service = event_service

    async def get_submission(self, guild_id: int, submission_id: str) -> Optional[Submission]:
        row = await self.db.get_task_submission(guild_id, submission_id)
        return Submission.from_row(row) if row else None

    async def get_pending_submissions(self, guild_id: int) -> list[Submission]:
        return [Submission.from_row(row) for row in await self.db.get_pending_submissions(guild_id)]

    async def submit_evidence(
        self,
        guild_id: int,
        user_id: int,
        event_id: str,
        evidence: Sequence[str],
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Submission:
        event = await self.event_service.get_event(guild_id, event_id)
        if event is None:
            raise NotFoundError("找不到该任务活动。")
        now = now or utcnow()
        if event.status(now) is EventStatus.ENDED:
            raise ValidationError("该任务活动已经结束，不能再提交。")

        urls = [url.strip() for url in evidence if url and url.strip()]
        if not urls:
            raise ValidationError("请至少上传一张截图。")
        if len(urls) > MAX_EVIDENCE:
            logger.info(f"提交的截图超过 {MAX_EVIDENCE} 张，多余的已被忽略。", extra={'user_id': user_id, 'event_id': event_id})
            urls = urls[:MAX_EVIDENCE]

        submission_id = uuid.uuid4().hex[:12]
        task_name = event.display_name()
        await self.db.create_task_submission(guild_id, {
            'submission_id': submission_id,
            'user_id': user_id,
            'event_id': event_id,
            'evidence': urls,
            'notes': notes.strip() if notes and notes.strip() else None,
            'task_name': task_name,
            'created_at': now,
        })
        submission = await self.get_submission(guild_id, submission_id)

        log_context = {'guild_id': guild_id, 'submission_id': submission_id, 'user_id': user_id, 'event_id': event_id}
        logger.info("收到新的任务提交", extra=log_context)

        try:
            ref = await self.notifier.post_announcement(
                self.settings.admin_channel_id,
                embeds.build_submission_embed(submission, task_name, self.settings.theme_color),
                view=embeds.build_review_view(submission_id),
            )
            await self.db.update_submission_review_message(guild_id, submission_id, ref.channel_id, ref.message_id)
            submission.review_channel_id, submission.review_message_id = ref.channel_id, ref.message_id
        except DependencyUnavailable as e:
            logger.warning(f"发送到审核频道失败: {e.message}", extra=log_context)
        return submission

    async def review_submission(
        self,
        guild_id: int,
        submission_id: str,
        decision: ReviewDecision,
        reviewer_id: int,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ReviewOutcome:
        """审核人的权限由调用方检查，这里只负责状态迁移。"""
        decision = ReviewDecision(decision)
        now = now or utcnow()
        submission = await self.get_submission(guild_id, submission_id)
        if submission is None:
            raise NotFoundError("找不到该提交。")

        log_context = {'guild_id': guild_id, 'submission_id': submission_id, 'reviewer_id': reviewer_id, 'decision': decision.value}

        if decision is ReviewDecision.REJECT:
            changed = await self.db.apply_submission_rejection(guild_id, submission_id, reviewer_id, now, reason)
            submission = await self.get_submission(guild_id, submission_id)
            if not changed:
                return ReviewOutcome(ReviewResult.ALREADY_REVIEWED, submission)
            logger.info("提交已被驳回", extra=log_context)
            await self._after_review(guild_id, submission, counters_changed=False)
            return ReviewOutcome(ReviewResult.REJECTED, submission)

        tier = decision.tier
        result = await self.db.apply_submission_approval(guild_id, submission_id, tier.value, tier.rolls, reviewer_id, now)
        previous_tier = Tier(result['previous_tier']) if result['previous_tier'] else None
        submission = await self.get_submission(guild_id, submission_id)

        if result['outcome'] == 'not_found':
            raise NotFoundError("找不到该提交。")
        if result['outcome'] == 'already_reviewed':
            return ReviewOutcome(ReviewResult.ALREADY_REVIEWED, submission)
        if result['outcome'] == 'not_upgrade':
            logger.info("用户已持有同级或更高等级，本次审核不生效", extra={**log_context, 'previous_tier': result['previous_tier']})
            return ReviewOutcome(ReviewResult.NOT_UPGRADE, submission, previous_tier)

        logger.info("提交已通过审核", extra={**log_context, 'previous_tier': result['previous_tier']})
        await self._after_review(guild_id, submission, counters_changed=True)
        return ReviewOutcome(ReviewResult.APPROVED, submission, previous_tier)

    async def _after_review(self, guild_id: int, submission: Submission, counters_changed: bool):
        """审核结果已提交后的副作用，任何一步失败都只记录日志。"""
        task_name = submission.task_name or submission.event_id
        log_context = {'guild_id': guild_id, 'submission_id': submission.submission_id}

        if counters_changed:
            try:
                await self.event_service.record_progress(guild_id, submission.event_id)
            except NotFoundError:
                logger.warning("审核后找不到对应的活动", extra=log_context)

        delivered = await self.notifier.direct_message(submission.user_id, content=embeds.review_dm_text(submission, task_name))
        if not delivered:
            logger.info("审核结果私信未送达", extra=log_context)

        try:
            await self.notifier.post_announcement(
                self.settings.archive_channel_id,
                embeds.build_archive_embed(submission, task_name, self.settings.theme_color),
            )
        except DependencyUnavailable as e:
            logger.warning(f"归档提交失败: {e.message}", extra=log_context)

        if submission.review_message_id:
            try:
                await self.notifier.delete_message(MessageRef(submission.review_channel_id, submission.review_message_id))
                await self.db.update_submission_review_message(guild_id, submission.submission_id, None, None)
            except DependencyUnavailable as e:
                logger.warning(f"删除审核消息失败: {e.message}", extra=log_context)
