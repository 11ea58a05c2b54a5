# src/modules/challenge_tasks/services/keyword_service.py

import logging
import random
from datetime import datetime
from typing import Iterable, Optional

from src.core.database import Database
from src.core.utils import utcnow

logger = logging.getLogger(__name__)

# 最近使用过的这么多个关键词不会被再次抽中
HISTORY_LIMIT = 26
FALLBACK_KEYWORD = 'keyword'

DEFAULT_KEYWORDS = (
    'pineapple', 'lantern', 'walrus', 'nebula', 'cactus', 'marble', 'tornado', 'biscuit',
    'falcon', 'glacier', 'pumpkin', 'velvet', 'compass', 'jellyfish', 'orchid', 'anchor',
    'meteor', 'pretzel', 'harbor', 'quartz', 'saffron', 'thimble', 'umbrella', 'volcano',
    'wombat', 'zeppelin', 'acorn', 'bramble', 'crumpet', 'dynamo', 'ember', 'fjord',
)


class KeywordService:
    """为每一轮任务挑选一个共用的验证关键词，参与者需要在截图中展示它。"""

    def __init__(self, db: Database, rng: Optional[random.Random] = None):
        self.db = db
        self.rng = rng or random.Random()

    async def add_keywords(self, guild_id: int, words: Iterable[str]) -> int:
        added = 0
        for word in words:
            word = word.strip().lower()
            if word and await self.db.add_task_keyword(guild_id, word):
                added += 1
        return added

    async def ensure_seeded(self, guild_id: int) -> int:
        """关键词库为空时写入默认关键词。"""
        if await self.db.get_task_keywords(guild_id):
            return 0
        added = await self.add_keywords(guild_id, DEFAULT_KEYWORDS)
        logger.info(f"服务器 {guild_id} 的关键词库为空，已写入 {added} 个默认关键词。")
        return added

    async def select_keyword(self, guild_id: int, now: Optional[datetime] = None, event_id: Optional[str] = None) -> str:
        now = now or utcnow()
        keywords = await self.db.get_task_keywords(guild_id)
        if not keywords:
            logger.warning(f"服务器 {guild_id} 没有可用的关键词，使用备用关键词。")
            return FALLBACK_KEYWORD

        used = sorted(
            (k for k in keywords if k['last_used_at']),
            key=lambda k: k['last_used_at'],
            reverse=True,
        )
        recent = {k['word'] for k in used[:HISTORY_LIMIT]}
        pool = [k['word'] for k in keywords if k['word'] not in recent]
        if not pool:
            # 全部最近用过：重置历史，从整个词库中挑选
            pool = [k['word'] for k in keywords]

        chosen = self.rng.choice(pool)
        await self.db.mark_task_keyword_used(guild_id, chosen, now, event_id)
        logger.info("已选出本轮关键词", extra={'guild_id': guild_id, 'keyword': chosen})
        return chosen
