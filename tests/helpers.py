from datetime import datetime, timezone

from src.modules.challenge_tasks.exceptions import DependencyUnavailable
from src.modules.challenge_tasks.models import ChallengeTemplate, MessageRef

GUILD_ID = 1001
NOW = datetime(2025, 3, 2, 0, 0, tzinfo=timezone.utc)  # Sunday


class FakeNotifier:
    """Records every outgoing message instead of talking to Discord."""

    def __init__(self):
        self.posts = []
        self.edits = []
        self.deletes = []
        self.dms = []
        self.fail_posts = False
        self.dm_ok = True
        self._next_id = 5000

    async def post_announcement(self, channel_id, embed, content=None, view=None):
        if self.fail_posts:
            raise DependencyUnavailable("channel unavailable")
        self._next_id += 1
        self.posts.append({'channel_id': channel_id, 'embed': embed, 'content': content, 'view': view})
        return MessageRef(channel_id=channel_id, message_id=self._next_id)

    async def edit_announcement(self, ref, embed, view=None):
        self.edits.append({'ref': ref, 'embed': embed, 'view': view})

    async def delete_message(self, ref):
        self.deletes.append(ref)

    async def direct_message(self, user_id, content=None, embed=None):
        self.dms.append({'user_id': user_id, 'content': content})
        return self.dm_ok

    def posts_to(self, channel_id):
        return [p for p in self.posts if p['channel_id'] == channel_id]


def make_template(template_id, category='PvM', weight=50, skill=None, amounts=(10, 25, 50), task_type='KC'):
    return ChallengeTemplate(
        template_id=template_id,
        name=f"{template_id} x{{amount}}",
        category=category,
        task_type=task_type,
        amt_bronze=amounts[0],
        amt_silver=amounts[1],
        amt_gold=amounts[2],
        weight=weight,
        skill=skill,
    )


async def start_event_for(services, templates, votes=None, now=NOW, keyword='pineapple'):
    """Open a poll over the templates, cast votes, resolve it and start the event."""
    poll = await services.polls.open_poll(GUILD_ID, templates[0].category, templates, now)
    for user_id, option_id in (votes or {}).items():
        await services.polls.cast_vote(GUILD_ID, poll.poll_id, user_id, option_id, now)
    resolved = await services.polls.resolve_poll(GUILD_ID, poll.poll_id, now)
    return await services.events.start_event(GUILD_ID, resolved, keyword, now)
