from datetime import timedelta

import pytest

from src.modules.challenge_tasks.exceptions import ConflictError, NotFoundError, ValidationError
from src.modules.challenge_tasks.models import VoteResult
from src.modules.challenge_tasks.services.poll_service import pick_winner

from tests.helpers import GUILD_ID, NOW


async def open_poll(services, templates):
    return await services.polls.open_poll(GUILD_ID, 'PvM', templates, NOW)


async def test_open_poll_copies_candidates(services, seeded):
    poll = await open_poll(services, seeded)

    assert poll.is_active
    assert [o.template_id for o in poll.options] == ['a', 'b', 'c']
    assert poll.ends_at == NOW + timedelta(hours=24)
    assert (await services.polls.get_active_poll(GUILD_ID, 'PvM')).poll_id == poll.poll_id


async def test_open_poll_without_candidates_is_rejected(services):
    with pytest.raises(ValidationError):
        await services.polls.open_poll(GUILD_ID, 'PvM', [], NOW)


async def test_second_active_poll_conflicts(services, seeded):
    first = await open_poll(services, seeded)

    with pytest.raises(ConflictError) as exc_info:
        await open_poll(services, seeded)

    assert exc_info.value.existing.poll_id == first.poll_id


async def test_publish_poll_stores_message_and_mentions_role(services, seeded):
    poll = await open_poll(services, seeded)

    ref = await services.polls.publish_poll(GUILD_ID, poll)

    stored = await services.polls.get_poll(GUILD_ID, poll.poll_id)
    assert (stored.channel_id, stored.message_id) == (ref.channel_id, ref.message_id)
    assert services.notifier.posts[0]['content'] == '<@&500>'


async def test_publish_failure_keeps_poll(services, seeded):
    poll = await open_poll(services, seeded)
    services.notifier.fail_posts = True

    assert await services.polls.publish_poll(GUILD_ID, poll) is None
    assert (await services.polls.get_poll(GUILD_ID, poll.poll_id)).is_active


async def test_identical_vote_twice_changes_nothing(services, seeded):
    poll = await open_poll(services, seeded)

    first = await services.polls.cast_vote(GUILD_ID, poll.poll_id, 1, 'a')
    second = await services.polls.cast_vote(GUILD_ID, poll.poll_id, 1, 'a')

    assert first.result is VoteResult.FIRST_VOTE
    assert second.result is VoteResult.UNCHANGED
    assert second.poll.tallies() == {'a': 1, 'b': 0, 'c': 0}


async def test_switching_leaves_exactly_one_vote(services, seeded):
    poll = await open_poll(services, seeded)

    for option_id in ('a', 'b', 'c', 'b'):
        outcome = await services.polls.cast_vote(GUILD_ID, poll.poll_id, 7, option_id)

    assert outcome.result is VoteResult.CHANGED
    assert outcome.poll.tallies() == {'a': 0, 'b': 1, 'c': 0}
    assert sum(outcome.poll.tallies().values()) == 1


async def test_first_vote_counts_once_in_user_stats(services, seeded):
    poll = await open_poll(services, seeded)

    for option_id in ('a', 'b', 'b'):
        await services.polls.cast_vote(GUILD_ID, poll.poll_id, 7, option_id)

    stats = await services.db.get_task_user_stats(GUILD_ID, 7)
    assert stats['task_polls_voted'] == 1


async def test_invalid_votes(services, seeded):
    poll = await open_poll(services, seeded)

    with pytest.raises(ValidationError):
        await services.polls.cast_vote(GUILD_ID, poll.poll_id, 1, 'nope')
    with pytest.raises(NotFoundError):
        await services.polls.cast_vote(GUILD_ID, 'missing', 1, 'a')

    await services.polls.resolve_poll(GUILD_ID, poll.poll_id, NOW)
    with pytest.raises(ValidationError):
        await services.polls.cast_vote(GUILD_ID, poll.poll_id, 1, 'a')


async def test_vote_refreshes_published_message(services, seeded):
    poll = await open_poll(services, seeded)
    await services.polls.publish_poll(GUILD_ID, poll)

    await services.polls.cast_vote(GUILD_ID, poll.poll_id, 1, 'a')
    await services.polls.cast_vote(GUILD_ID, poll.poll_id, 1, 'a')

    assert len(services.notifier.edits) == 1


async def test_majority_wins(services, seeded):
    poll = await open_poll(services, seeded)
    for user_id, option_id in {1: 'a', 2: 'b', 3: 'a'}.items():
        await services.polls.cast_vote(GUILD_ID, poll.poll_id, user_id, option_id)

    resolved = await services.polls.resolve_poll(GUILD_ID, poll.poll_id, NOW)

    assert resolved.winning_option_id == 'a'
    assert resolved.tallies()['a'] == 2
    assert not resolved.is_active


async def test_tie_goes_to_earlier_candidate(services, seeded):
    poll = await open_poll(services, seeded)
    await services.polls.cast_vote(GUILD_ID, poll.poll_id, 1, 'a')
    await services.polls.cast_vote(GUILD_ID, poll.poll_id, 2, 'b')

    resolved = await services.polls.resolve_poll(GUILD_ID, poll.poll_id, NOW)

    assert resolved.winning_option_id == 'a'


async def test_tie_break_ignores_vote_order(services, seeded):
    poll = await open_poll(services, seeded)
    await services.polls.cast_vote(GUILD_ID, poll.poll_id, 1, 'c')
    await services.polls.cast_vote(GUILD_ID, poll.poll_id, 2, 'b')

    resolved = await services.polls.resolve_poll(GUILD_ID, poll.poll_id, NOW)

    assert resolved.winning_option_id == 'b'


async def test_poll_without_votes_resolves_to_first_candidate(services, seeded):
    poll = await open_poll(services, seeded)

    resolved = await services.polls.resolve_poll(GUILD_ID, poll.poll_id, NOW)

    assert resolved.winning_option_id == 'a'


async def test_resolving_again_returns_stored_winner(services, seeded):
    poll = await open_poll(services, seeded)
    await services.polls.cast_vote(GUILD_ID, poll.poll_id, 1, 'c')

    first = await services.polls.resolve_poll(GUILD_ID, poll.poll_id, NOW)
    second = await services.polls.resolve_poll(GUILD_ID, poll.poll_id, NOW + timedelta(hours=1))

    assert first.winning_option_id == second.winning_option_id == 'c'
    assert second.closed_at == first.closed_at


async def test_force_close_resolves_active_poll(services, seeded):
    poll = await open_poll(services, seeded)

    closed = await services.polls.force_close(GUILD_ID, 'PvM', NOW)

    assert closed.poll_id == poll.poll_id
    assert await services.polls.get_active_poll(GUILD_ID, 'PvM') is None
    with pytest.raises(NotFoundError):
        await services.polls.force_close(GUILD_ID, 'PvM', NOW)


async def test_new_poll_allowed_after_resolution(services, seeded):
    poll = await open_poll(services, seeded)
    await services.polls.resolve_poll(GUILD_ID, poll.poll_id, NOW)

    second = await services.polls.open_poll(GUILD_ID, 'PvM', seeded, NOW + timedelta(days=7))

    assert second.poll_id != poll.poll_id


def test_pick_winner_is_deterministic():
    options = [{'template_id': 'x'}, {'template_id': 'y'}, {'template_id': 'z'}]
    tallies = {'y': 2, 'z': 2}

    assert {pick_winner(options, tallies) for _ in range(10)} == {'y'}
    assert pick_winner([], {}) is None
