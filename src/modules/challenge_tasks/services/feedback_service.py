# src/modules/challenge_tasks/services/feedback_service.py

import logging
import uuid
from typing import Optional

from src.core.database import Database
from src.modules.challenge_tasks.exceptions import NotFoundError
from src.modules.challenge_tasks.models import (
    FeedbackDirection, FeedbackOutcome, FeedbackResult, MAX_WEIGHT, MIN_WEIGHT,
)

logger = logging.getLogger(__name__)

FEEDBACK_STEP = 1


class FeedbackService:
    """用户对任务的 👍/👎 反馈，调整任务模板在候选抽取中的权重。"""

    def __init__(self, db: Database):
        self.db = db

    async def adjust_feedback(
        self,
        guild_id: int,
        template_id: str,
        user_id: int,
        direction: FeedbackDirection,
        event_id: Optional[str] = None,
    ) -> FeedbackOutcome:
        direction = FeedbackDirection(direction)
        result = await self.db.apply_task_feedback(
            guild_id,
            feedback_id=uuid.uuid4().hex[:12],
            template_id=template_id,
            event_id=event_id,
            user_id=user_id,
            direction=direction.value,
            first_delta=direction.sign * FEEDBACK_STEP,
            # 改变方向: 撤销旧的一票再应用新的一票
            switch_delta=direction.sign * FEEDBACK_STEP * 2,
            min_weight=MIN_WEIGHT,
            max_weight=MAX_WEIGHT,
        )
        if not result['found']:
            raise NotFoundError("找不到该任务模板。")

        previous = result['previous']
        if previous is None:
            outcome = FeedbackResult.NEW
        elif previous == direction.value:
            outcome = FeedbackResult.UNCHANGED
        else:
            outcome = FeedbackResult.REVERSED

        log_context = {'guild_id': guild_id, 'template_id': template_id, 'user_id': user_id, 'direction': direction.value, 'weight': result['weight']}
        logger.info(f"任务反馈: {outcome.name}", extra=log_context)
        return FeedbackOutcome(result=outcome, template_id=template_id, weight=result['weight'])
