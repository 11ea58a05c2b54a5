from datetime import timedelta

from src.modules.challenge_tasks import embeds
from src.modules.challenge_tasks.config import TaskSettings
from src.modules.challenge_tasks.models import PrizeDraw, TaskType
from src.modules.challenge_tasks.services.catalog_service import MAX_TEMPLATE_ID_LENGTH, parse_template

from tests.helpers import GUILD_ID, NOW, start_event_for


def test_settings_defaults(monkeypatch):
    for name in ('TASK_CATEGORIES', 'TASK_LEAGUES_ENABLED', 'TASK_MODE', 'TASK_POLL_DAY', 'TASK_CHANNEL_ID'):
        monkeypatch.delenv(name, raising=False)

    settings = TaskSettings.from_env()

    assert settings.enabled_categories == ['PvM', 'Skilling', 'Minigame']
    assert settings.poll_day == 6
    assert settings.test_mode is False
    assert settings.task_channel_id is None


def test_settings_parse_environment(monkeypatch):
    monkeypatch.setenv('TASK_CATEGORIES', 'pvm, Misc, unknown, Leagues')
    monkeypatch.setenv('TASK_LEAGUES_ENABLED', 'false')
    monkeypatch.setenv('TASK_MODE', 'dev')
    monkeypatch.setenv('TASK_POLL_DAY', 'not-a-number')
    monkeypatch.setenv('TASK_CHANNEL_ID', '1234')

    settings = TaskSettings.from_env()

    assert settings.enabled_categories == ['PvM', 'Misc']
    assert settings.test_mode is True
    assert settings.poll_day == 6
    assert settings.task_channel_id == 1234


def test_leagues_flag_adds_category(monkeypatch):
    monkeypatch.delenv('TASK_CATEGORIES', raising=False)
    monkeypatch.setenv('TASK_LEAGUES_ENABLED', 'true')

    assert TaskSettings.from_env().enabled_categories == ['PvM', 'Skilling', 'Minigame', 'Leagues']


def test_every_task_type_has_instructions():
    for task_type in TaskType:
        assert embeds.instructions_for(task_type.value)
    assert embeds.instructions_for('Unknown') == embeds.TASK_INSTRUCTIONS[TaskType.OTHER]


def test_parse_custom_id():
    assert embeds.parse_custom_id('task_vote:p1:a') == ('task_vote', ['p1', 'a'])
    assert embeds.parse_custom_id('task_review:abc:gold') == ('task_review', ['abc', 'gold'])
    assert embeds.parse_custom_id('other:thing') is None
    assert embeds.parse_custom_id(None) is None


async def test_event_embed_shows_keyword_and_thresholds(services, seeded):
    event = await start_event_for(services, seeded, keyword='walrus')

    embed = embeds.build_event_embed(event)

    assert 'walrus' in embed.description
    assert any('25' in field.value for field in embed.fields)


async def test_poll_view_buttons_carry_vote_ids(services, seeded):
    poll = await services.polls.open_poll(GUILD_ID, 'PvM', seeded, NOW)

    view = embeds.build_poll_view(poll)

    assert [item.custom_id for item in view.children] == [f"task_vote:{poll.poll_id}:{o}" for o in ('a', 'b', 'c')]


def test_prize_embed_lists_breakdown():
    draw = PrizeDraw(
        draw_id='2025-02-26_to_2025-03-11', window_start=NOW - timedelta(days=4),
        window_end=NOW + timedelta(days=9), snapshot_taken_at=NOW,
        participants={1: 3, 2: 1}, tickets=[1, 1, 1, 2], total_entries=4,
        tier_counts={'bronze': 1, 'silver': 0, 'gold': 1}, winner_id=1,
    )

    embed = embeds.build_prize_embed(draw)

    assert '<@1>' in embed.description
    assert [field.value for field in embed.fields[:2]] == ['2', '4']


async def test_longest_allowed_template_id_fits_button_ids(services):
    template = parse_template({
        'template_id': 'm' * MAX_TEMPLATE_ID_LENGTH, 'name': 'Long {amount}', 'category': 'Minigame',
        'amt_bronze': 1, 'amt_silver': 2, 'amt_gold': 3,
    })
    poll = await services.polls.open_poll(GUILD_ID, 'Minigame', [template], NOW)
    resolved = await services.polls.resolve_poll(GUILD_ID, poll.poll_id, NOW)
    event = await services.events.start_event(GUILD_ID, resolved, 'walrus', NOW)

    custom_ids = [item.custom_id for view in (embeds.build_poll_view(poll), embeds.build_event_view(event)) for item in view.children]

    assert custom_ids
    assert all(len(custom_id) <= 100 for custom_id in custom_ids)
