"""
Interleaved handlers: every store mutation runs in one transaction, so
racing votes, reviews and feedback must leave tallies and counters exact.
"""

import asyncio
from datetime import timedelta

from src.modules.challenge_tasks.exceptions import ValidationError
from src.modules.challenge_tasks.models import (
    FeedbackDirection, ReviewDecision, ReviewResult, SubmissionStatus, VoteOutcome,
)
from src.modules.challenge_tasks.services.poll_service import pick_winner

from tests.helpers import GUILD_ID, NOW, start_event_for

REVIEWER = 900


async def test_votes_racing_resolution_are_never_lost(services, seeded):
    poll = await services.polls.open_poll(GUILD_ID, 'PvM', seeded, NOW)
    ballots = [(1, 'b'), (2, 'b'), (3, 'a'), (4, 'c'), (5, 'b'), (6, 'a'), (7, 'c')]

    results = await asyncio.gather(
        *(services.polls.cast_vote(GUILD_ID, poll.poll_id, user, option, NOW) for user, option in ballots[:3]),
        services.polls.resolve_poll(GUILD_ID, poll.poll_id, NOW),
        *(services.polls.cast_vote(GUILD_ID, poll.poll_id, user, option, NOW) for user, option in ballots[3:]),
        return_exceptions=True,
    )
    resolved = results[3]
    vote_results = dict(zip([user for user, _ in ballots], results[:3] + results[4:]))

    # a vote either landed before the close or was refused, nothing else
    accepted = {user for user, result in vote_results.items() if isinstance(result, VoteOutcome)}
    refused = {user for user, result in vote_results.items() if isinstance(result, ValidationError)}
    assert accepted | refused == set(vote_results)

    final = await services.polls.get_poll(GUILD_ID, poll.poll_id)
    assert not final.is_active
    assert final.votes == {user: option for user, option in ballots if user in accepted}
    assert resolved.votes == final.votes
    assert sum(final.tallies().values()) == len(accepted)

    expected = pick_winner([o.to_snapshot() for o in final.options], final.tallies())
    assert resolved.winning_option_id == expected
    again = await services.polls.resolve_poll(GUILD_ID, poll.poll_id, NOW + timedelta(minutes=1))
    assert again.winning_option_id == expected


async def test_one_user_switching_votes_concurrently_holds_one_vote(services, seeded):
    poll = await services.polls.open_poll(GUILD_ID, 'PvM', seeded, NOW)

    await asyncio.gather(*(
        services.polls.cast_vote(GUILD_ID, poll.poll_id, 1, option, NOW) for option in ('a', 'b', 'c', 'a', 'c', 'b')
    ))

    final = await services.polls.get_poll(GUILD_ID, poll.poll_id)
    assert sum(final.tallies().values()) == 1
    stats = await services.db.get_task_user_stats(GUILD_ID, 1)
    assert stats['task_polls_voted'] == 1


async def test_concurrent_bronze_and_gold_approvals_count_once(services, seeded):
    event = await start_event_for(services, seeded)
    bronze = await services.reviews.submit_evidence(GUILD_ID, 1, event.event_id, ['https://cdn.example/b.png'], now=NOW)
    gold = await services.reviews.submit_evidence(GUILD_ID, 1, event.event_id, ['https://cdn.example/g.png'], now=NOW)

    outcomes = await asyncio.gather(
        services.reviews.review_submission(GUILD_ID, bronze.submission_id, ReviewDecision.BRONZE, REVIEWER, now=NOW),
        services.reviews.review_submission(GUILD_ID, gold.submission_id, ReviewDecision.GOLD, REVIEWER + 1, now=NOW),
    )

    # gold always wins; bronze is either superseded or refused as a downgrade
    assert outcomes[1].result is ReviewResult.APPROVED
    assert outcomes[0].result in (ReviewResult.APPROVED, ReviewResult.NOT_UPGRADE)

    reloaded = await services.events.get_event(GUILD_ID, event.event_id)
    assert reloaded.completion_counts() == {'bronze': 0, 'silver': 0, 'gold': 1}
    assert reloaded.completed_user_ids == {1}
    stats = await services.db.get_task_user_stats(GUILD_ID, 1)
    assert (stats['tasks_completed_bronze'], stats['tasks_completed_gold']) == (0, 1)

    draw = await services.prizes.snapshot_draw(GUILD_ID, now=NOW + timedelta(days=1))
    assert draw.participants == {1: 3}
    assert draw.total_entries == 3


async def test_approve_and_reject_race_has_a_single_winner(services, seeded):
    event = await start_event_for(services, seeded)
    submission = await services.reviews.submit_evidence(GUILD_ID, 1, event.event_id, ['https://cdn.example/x.png'], now=NOW)

    approve, reject = await asyncio.gather(
        services.reviews.review_submission(GUILD_ID, submission.submission_id, ReviewDecision.SILVER, REVIEWER, now=NOW),
        services.reviews.review_submission(GUILD_ID, submission.submission_id, ReviewDecision.REJECT, REVIEWER + 1, 'blurry', now=NOW),
    )

    assert {approve.result, reject.result} in (
        {ReviewResult.APPROVED, ReviewResult.ALREADY_REVIEWED},
        {ReviewResult.REJECTED, ReviewResult.ALREADY_REVIEWED},
    )
    final = await services.reviews.get_submission(GUILD_ID, submission.submission_id)
    reloaded = await services.events.get_event(GUILD_ID, event.event_id)
    expected_silver = 1 if final.status is SubmissionStatus.SILVER else 0
    assert reloaded.completion_counts() == {'bronze': 0, 'silver': expected_silver, 'gold': 0}


async def test_concurrent_feedback_from_one_user_moves_weight_once(services, seeded):
    await asyncio.gather(*(
        services.feedback.adjust_feedback(GUILD_ID, 'a', 1, FeedbackDirection.UP) for _ in range(4)
    ))

    template = await services.db.get_task_template(GUILD_ID, 'a')
    assert template['weight'] == 51
