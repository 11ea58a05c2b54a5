import json
import random
from datetime import timedelta

import pytest

from src.modules.challenge_tasks.exceptions import ValidationError
from src.modules.challenge_tasks.services.catalog_service import MAX_TEMPLATE_ID_LENGTH, parse_template
from src.modules.challenge_tasks.services.keyword_service import DEFAULT_KEYWORDS, FALLBACK_KEYWORD, KeywordService

from tests.helpers import GUILD_ID, NOW


async def test_fallback_keyword_when_none_stored(services):
    assert await services.keywords.select_keyword(GUILD_ID, NOW) == FALLBACK_KEYWORD


async def test_seeding_only_happens_once(services):
    assert await services.keywords.ensure_seeded(GUILD_ID) == len(DEFAULT_KEYWORDS)
    assert await services.keywords.ensure_seeded(GUILD_ID) == 0


async def test_recent_keywords_are_not_repeated(db):
    service = KeywordService(db, rng=random.Random(3))
    await service.add_keywords(GUILD_ID, ['one', 'two', 'three'])

    picks = [await service.select_keyword(GUILD_ID, NOW + timedelta(minutes=i)) for i in range(3)]

    assert sorted(picks) == ['one', 'three', 'two']
    rows = {row['word']: row for row in await db.get_task_keywords(GUILD_ID)}
    assert all(row['times_used'] == 1 for row in rows.values())


async def test_history_resets_when_every_keyword_was_used(db):
    service = KeywordService(db, rng=random.Random(4))
    await service.add_keywords(GUILD_ID, ['solo'])

    assert await service.select_keyword(GUILD_ID, NOW) == 'solo'
    assert await service.select_keyword(GUILD_ID, NOW + timedelta(minutes=1)) == 'solo'


def test_parse_template_validates_fields():
    template = parse_template({
        'id': 'pvm-1', 'name': 'Kill {amount}', 'category': 'PvM', 'task_type': 'KC',
        'amt_bronze': '5', 'amt_silver': 10, 'amt_gold': 20,
    })

    assert template.template_id == 'pvm-1'
    assert (template.amt_bronze, template.amt_silver, template.amt_gold) == (5, 10, 20)
    with pytest.raises(ValidationError):
        parse_template({'template_id': 'x', 'name': 'X', 'category': 'Nope'})
    with pytest.raises(ValidationError):
        parse_template({'template_id': 'bad:id', 'name': 'X', 'category': 'PvM'})
    with pytest.raises(ValidationError):
        parse_template({'template_id': 'x' * (MAX_TEMPLATE_ID_LENGTH + 1), 'name': 'X', 'category': 'PvM'})


async def test_import_file_skips_invalid_entries(services, tmp_path):
    path = tmp_path / 'catalog.json'
    path.write_text(json.dumps([
        {'template_id': 'ok', 'name': 'Fine {amount}', 'category': 'Minigame', 'amt_bronze': 1, 'amt_silver': 2, 'amt_gold': 3},
        {'template_id': 'broken', 'category': 'PvM'},
    ]), encoding='utf-8')

    imported = await services.catalog.import_file(GUILD_ID, str(path))

    assert imported == 1
    templates = await services.catalog.get_templates(GUILD_ID, 'Minigame')
    assert [t.template_id for t in templates] == ['ok']
    assert templates[0].weight == 50


async def test_missing_catalog_file_imports_nothing(services, tmp_path):
    assert await services.catalog.import_file(GUILD_ID, str(tmp_path / 'missing.json')) == 0
