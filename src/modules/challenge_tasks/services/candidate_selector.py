# src/modules/challenge_tasks/services/candidate_selector.py

import logging
import random
from typing import Optional, Sequence

from src.modules.challenge_tasks.models import ChallengeTemplate, TaskCategory, DEFAULT_WEIGHT

logger = logging.getLogger(__name__)

CANDIDATE_COUNT = 3


def _weight_of(template: ChallengeTemplate) -> int:
    weight = template.weight if template.weight is not None else DEFAULT_WEIGHT
    return max(0, weight)


def pick_weighted(
    templates: Sequence[ChallengeTemplate],
    count: int,
    rng: Optional[random.Random] = None,
) -> list[ChallengeTemplate]:
    """
    按权重不放回地抽取最多 count 个模板。
    权重为 0 的模板只有在池中全部为 0 时才会被等概率选中。
    """
    rng = rng or random.Random()
    pool = list(templates)
    selected: list[ChallengeTemplate] = []

    while pool and len(selected) < count:
        total = sum(_weight_of(t) for t in pool)
        if total <= 0:
            index = rng.randrange(len(pool))
        else:
            roll = rng.uniform(0, total)
            index = len(pool) - 1
            for i, template in enumerate(pool):
                weight = _weight_of(template)
                if weight <= 0:
                    continue
                roll -= weight
                if roll <= 0:
                    index = i
                    break
            else:
                # 浮点误差：落到最后一个权重为正的模板上
                index = max(i for i, t in enumerate(pool) if _weight_of(t) > 0)
        selected.append(pool.pop(index))

    return selected


def select_candidates(
    category: str,
    catalog: Sequence[ChallengeTemplate],
    rng: Optional[random.Random] = None,
    count: int = CANDIDATE_COUNT,
) -> list[ChallengeTemplate]:
    """
    为某个分类选出本轮投票的候选任务。

    Skilling 分类先随机挑选最多 count 个不同技能，每个技能再按权重挑一个任务，
    保证候选之间技能不重复。其他分类直接在该分类的任务中按权重不放回抽取。
    结果中不会出现重复的模板，数量为 min(count, 可选数量)。
    """
    rng = rng or random.Random()
    templates = [t for t in catalog if t.category == category]
    if not templates:
        logger.warning(f"分类 {category} 下没有任何任务模板，无法生成候选。")
        return []

    if category == TaskCategory.SKILLING.value:
        groups: dict[str, list[ChallengeTemplate]] = {}
        for template in templates:
            groups.setdefault(template.skill or 'Unknown', []).append(template)

        skills = sorted(groups)
        rng.shuffle(skills)
        chosen_skills = skills[:count]

        selected = []
        for skill in chosen_skills:
            selected.extend(pick_weighted(groups[skill], 1, rng))
        logger.info(f"Skilling 投票抽中的技能: {', '.join(chosen_skills)}")
    else:
        selected = pick_weighted(templates, count, rng)

    logger.info(
        "已为分类生成候选任务",
        extra={'category': category, 'candidates': [t.template_id for t in selected]}
    )
    return selected
