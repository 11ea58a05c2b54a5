import pytest

from src.modules.challenge_tasks.exceptions import NotFoundError, ValidationError
from src.modules.challenge_tasks.models import ReviewDecision, ReviewResult, SubmissionStatus, Tier

from tests.helpers import GUILD_ID, NOW, start_event_for

REVIEWER = 900


async def submit(services, event, user_id=1, count=1):
    urls = [f"https://cdn.example/{user_id}/{i}.png" for i in range(count)]
    return await services.reviews.submit_evidence(GUILD_ID, user_id, event.event_id, urls, notes='done', now=NOW)


async def test_submission_is_pending_and_queued_for_review(services, seeded):
    event = await start_event_for(services, seeded)

    submission = await submit(services, event)

    assert submission.status is SubmissionStatus.PENDING
    assert submission.task_name == event.display_name()
    assert submission.review_channel_id == services.settings.admin_channel_id
    assert [s.submission_id for s in await services.reviews.get_pending_submissions(GUILD_ID)] == [submission.submission_id]


async def test_submission_validation(services, seeded):
    event = await start_event_for(services, seeded)

    with pytest.raises(ValidationError):
        await services.reviews.submit_evidence(GUILD_ID, 1, event.event_id, ['  '], now=NOW)
    with pytest.raises(NotFoundError):
        await services.reviews.submit_evidence(GUILD_ID, 1, 'missing', ['https://cdn.example/x.png'])


async def test_ended_event_refuses_submissions(services, seeded):
    event = await start_event_for(services, seeded)

    with pytest.raises(ValidationError):
        await services.reviews.submit_evidence(GUILD_ID, 1, event.event_id, ['https://cdn.example/x.png'], now=event.end_time)

    assert services.notifier.posts_to(services.settings.admin_channel_id) == []


async def test_evidence_is_capped_at_ten(services, seeded):
    event = await start_event_for(services, seeded)

    submission = await submit(services, event, count=14)

    assert len(submission.evidence) == 10


async def test_approval_updates_counts_and_stats(services, seeded):
    event = await start_event_for(services, seeded)
    submission = await submit(services, event)

    outcome = await services.reviews.review_submission(GUILD_ID, submission.submission_id, ReviewDecision.SILVER, REVIEWER)

    assert outcome.result is ReviewResult.APPROVED
    assert outcome.submission.status is SubmissionStatus.SILVER
    assert outcome.submission.prize_rolls == 2
    assert outcome.submission.reviewed_by == REVIEWER
    reloaded = await services.events.get_event(GUILD_ID, event.event_id)
    assert reloaded.completion_counts() == {'bronze': 0, 'silver': 1, 'gold': 0}
    assert reloaded.completed_user_ids == {1}
    stats = await services.db.get_task_user_stats(GUILD_ID, 1)
    assert stats['tasks_completed_silver'] == 1


async def test_upgrade_moves_counters_instead_of_adding(services, seeded):
    event = await start_event_for(services, seeded)
    bronze = await submit(services, event)
    await services.reviews.review_submission(GUILD_ID, bronze.submission_id, ReviewDecision.BRONZE, REVIEWER)
    gold = await submit(services, event)

    outcome = await services.reviews.review_submission(GUILD_ID, gold.submission_id, ReviewDecision.GOLD, REVIEWER)

    assert outcome.result is ReviewResult.APPROVED
    assert outcome.previous_tier is Tier.BRONZE
    reloaded = await services.events.get_event(GUILD_ID, event.event_id)
    assert reloaded.completion_counts() == {'bronze': 0, 'silver': 0, 'gold': 1}
    stats = await services.db.get_task_user_stats(GUILD_ID, 1)
    assert (stats['tasks_completed_bronze'], stats['tasks_completed_gold']) == (0, 1)


async def test_lower_tier_after_higher_is_not_an_upgrade(services, seeded):
    event = await start_event_for(services, seeded)
    gold = await submit(services, event)
    await services.reviews.review_submission(GUILD_ID, gold.submission_id, ReviewDecision.GOLD, REVIEWER)
    bronze = await submit(services, event)

    outcome = await services.reviews.review_submission(GUILD_ID, bronze.submission_id, ReviewDecision.BRONZE, REVIEWER)

    assert outcome.result is ReviewResult.NOT_UPGRADE
    assert outcome.previous_tier is Tier.GOLD
    assert outcome.submission.status is SubmissionStatus.PENDING
    reloaded = await services.events.get_event(GUILD_ID, event.event_id)
    assert reloaded.completion_counts() == {'bronze': 0, 'silver': 0, 'gold': 1}


async def test_reviewing_twice_reports_already_reviewed(services, seeded):
    event = await start_event_for(services, seeded)
    submission = await submit(services, event)
    await services.reviews.review_submission(GUILD_ID, submission.submission_id, ReviewDecision.BRONZE, REVIEWER)

    again = await services.reviews.review_submission(GUILD_ID, submission.submission_id, ReviewDecision.GOLD, REVIEWER)
    rejected = await services.reviews.review_submission(GUILD_ID, submission.submission_id, ReviewDecision.REJECT, REVIEWER)

    assert again.result is ReviewResult.ALREADY_REVIEWED
    assert rejected.result is ReviewResult.ALREADY_REVIEWED
    assert again.submission.status is SubmissionStatus.BRONZE


async def test_rejection_keeps_counters(services, seeded):
    event = await start_event_for(services, seeded)
    submission = await submit(services, event)

    outcome = await services.reviews.review_submission(
        GUILD_ID, submission.submission_id, ReviewDecision.REJECT, REVIEWER, reason='keyword missing'
    )

    assert outcome.result is ReviewResult.REJECTED
    assert outcome.submission.rejection_reason == 'keyword missing'
    reloaded = await services.events.get_event(GUILD_ID, event.event_id)
    assert reloaded.completion_counts() == {'bronze': 0, 'silver': 0, 'gold': 0}


async def test_review_side_effects(services, seeded):
    event = await start_event_for(services, seeded)
    submission = await submit(services, event)

    await services.reviews.review_submission(GUILD_ID, submission.submission_id, ReviewDecision.GOLD, REVIEWER)

    notifier = services.notifier
    assert notifier.dms[-1]['user_id'] == 1
    assert len(notifier.posts_to(services.settings.archive_channel_id)) == 1
    assert notifier.deletes[-1].message_id == submission.review_message_id
    assert any(edit['ref'].message_id == event.message_id for edit in notifier.edits)


async def test_failed_dm_does_not_undo_review(services, seeded):
    event = await start_event_for(services, seeded)
    submission = await submit(services, event)
    services.notifier.dm_ok = False

    outcome = await services.reviews.review_submission(GUILD_ID, submission.submission_id, ReviewDecision.BRONZE, REVIEWER)

    assert outcome.result is ReviewResult.APPROVED


async def test_unknown_submission(services):
    with pytest.raises(NotFoundError):
        await services.reviews.review_submission(GUILD_ID, 'missing', ReviewDecision.GOLD, REVIEWER)
