"""
Shared fixtures: an in-memory SQLite database with all migrations applied,
a notifier that records what would have been sent to Discord, and the task
services wired together the same way the bot wires them.
"""

from types import SimpleNamespace

import pytest
import pytest_asyncio

from src.core.database import Database
from src.modules.challenge_tasks.config import TaskSettings
from src.modules.challenge_tasks.services.catalog_service import CatalogService
from src.modules.challenge_tasks.services.event_service import EventService
from src.modules.challenge_tasks.services.feedback_service import FeedbackService
from src.modules.challenge_tasks.services.keyword_service import KeywordService
from src.modules.challenge_tasks.services.poll_service import PollService
from src.modules.challenge_tasks.services.prize_draw_service import PrizeDrawService
from src.modules.challenge_tasks.services.review_service import ReviewService
from src.modules.challenge_tasks.services.schedule import TaskSchedule
from src.modules.challenge_tasks.services.scheduler_service import TaskScheduler

from tests.helpers import GUILD_ID, FakeNotifier, make_template


@pytest.fixture
def settings():
    return TaskSettings(
        task_channel_id=100,
        admin_channel_id=200,
        archive_channel_id=300,
        prize_channel_id=400,
        task_role_id=500,
    )


@pytest_asyncio.fixture
async def db():
    database = Database(':memory:')
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def services(db, notifier, settings):
    schedule = TaskSchedule(settings)
    catalog = CatalogService(db)
    keywords = KeywordService(db)
    polls = PollService(db, notifier, settings, schedule)
    events = EventService(db, notifier, settings, schedule)
    reviews = ReviewService(db, notifier, settings, events)
    feedback = FeedbackService(db)
    prizes = PrizeDrawService(db, notifier, settings, schedule)
    scheduler = TaskScheduler(db, settings, catalog, polls, events, keywords, prizes, schedule)
    return SimpleNamespace(
        db=db, notifier=notifier, settings=settings, schedule=schedule, catalog=catalog,
        keywords=keywords, polls=polls, events=events, reviews=reviews, feedback=feedback,
        prizes=prizes, scheduler=scheduler,
    )


@pytest_asyncio.fixture
async def seeded(services):
    """A small PvM catalog stored for GUILD_ID."""
    templates = [make_template('a'), make_template('b'), make_template('c')]
    for template in templates:
        await services.db.upsert_task_template(GUILD_ID, template.to_snapshot())
    return templates
