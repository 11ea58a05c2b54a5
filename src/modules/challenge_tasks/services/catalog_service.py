# src/modules/challenge_tasks/services/catalog_service.py

import json
import logging
import pathlib
from typing import Iterable, Optional

from src.core.database import Database
from src.modules.challenge_tasks.exceptions import ValidationError
from src.modules.challenge_tasks.models import ChallengeTemplate, TaskCategory, TaskType

logger = logging.getLogger(__name__)

# 模板 ID 会拼进按钮的 custom_id (Discord 限制 100 个字符)
MAX_TEMPLATE_ID_LENGTH = 40


def parse_template(entry: dict) -> ChallengeTemplate:
    """校验并转换一条任务目录记录。"""
    template_id = str(entry.get('template_id') or entry.get('id') or '').strip()
    if not template_id or ':' in template_id:
        raise ValidationError(f"任务 ID 无效: '{template_id}'")
    if len(template_id) > MAX_TEMPLATE_ID_LENGTH:
        raise ValidationError(f"任务 ID 过长 (最多 {MAX_TEMPLATE_ID_LENGTH} 个字符): '{template_id}'")
    name = str(entry.get('name') or '').strip()
    if not name:
        raise ValidationError(f"任务 {template_id} 缺少名称。")
    try:
        category = TaskCategory(entry.get('category')).value
        task_type = TaskType(entry.get('task_type', TaskType.OTHER.value)).value
    except ValueError as e:
        raise ValidationError(f"任务 {template_id} 的分类或类型无效: {e}") from e

    try:
        amounts = [int(entry.get(key, 0) or 0) for key in ('amt_bronze', 'amt_silver', 'amt_gold')]
    except (TypeError, ValueError) as e:
        raise ValidationError(f"任务 {template_id} 的数量必须为整数。") from e

    return ChallengeTemplate(
        template_id=template_id,
        name=name,
        category=category,
        task_type=task_type,
        amt_bronze=amounts[0],
        amt_silver=amounts[1],
        amt_gold=amounts[2],
        short_name=entry.get('short_name'),
        skill=entry.get('skill'),
    )


class CatalogService:
    """任务目录：模板只会被新增或更新，不会被自动删除。"""

    def __init__(self, db: Database):
        self.db = db

    async def get_templates(self, guild_id: int, category: Optional[str] = None) -> list[ChallengeTemplate]:
        rows = await self.db.get_task_templates(guild_id, category)
        return [ChallengeTemplate.from_row(row) for row in rows]

    async def import_templates(self, guild_id: int, entries: Iterable[dict]) -> int:
        imported = 0
        for entry in entries:
            try:
                template = parse_template(entry)
            except ValidationError as e:
                logger.warning(f"跳过无效的任务模板: {e.message}", extra={'guild_id': guild_id})
                continue
            await self.db.upsert_task_template(guild_id, template.to_snapshot())
            imported += 1
        logger.info(f"已导入 {imported} 个任务模板", extra={'guild_id': guild_id})
        return imported

    async def import_file(self, guild_id: int, path: str) -> int:
        file_path = pathlib.Path(path)
        if not file_path.is_file():
            logger.warning(f"任务目录文件不存在，跳过导入: {file_path}")
            return 0
        data = json.loads(file_path.read_text(encoding='utf-8'))
        if not isinstance(data, list):
            raise ValidationError("任务目录文件必须是一个 JSON 数组。")
        return await self.import_templates(guild_id, data)
