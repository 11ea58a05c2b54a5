# src/modules/challenge_tasks/models.py

from dataclasses import dataclass, field, asdict, fields
from datetime import datetime
from enum import Enum
from typing import Optional

from src.core.utils import parse_iso, utcnow


class TaskCategory(str, Enum):
    PVM = 'PvM'
    SKILLING = 'Skilling'
    MINIGAME = 'Minigame'
    MISC = 'Misc'
    LEAGUES = 'Leagues'


class TaskType(str, Enum):
    """任务的完成方式，决定提交截图时的说明文字。"""
    XP = 'XP'
    KC = 'KC'
    DROP = 'Drop'
    INVENTORY = 'Inventory'
    POINTS = 'Points'
    MATERIALS = 'Materials'
    OTHER = 'Other'


class Tier(str, Enum):
    BRONZE = 'Bronze'
    SILVER = 'Silver'
    GOLD = 'Gold'

    @property
    def rolls(self) -> int:
        """该等级在奖池中对应的抽奖券数量。"""
        return TIER_ROLLS[self]

    @property
    def column(self) -> str:
        return self.value.lower()


TIER_ROLLS = {Tier.BRONZE: 1, Tier.SILVER: 2, Tier.GOLD: 3}


class SubmissionStatus(str, Enum):
    PENDING = 'Pending'
    BRONZE = 'Bronze'
    SILVER = 'Silver'
    GOLD = 'Gold'
    REJECTED = 'Rejected'

    @property
    def tier(self) -> Optional[Tier]:
        if self in (SubmissionStatus.BRONZE, SubmissionStatus.SILVER, SubmissionStatus.GOLD):
            return Tier(self.value)
        return None


APPROVED_STATUSES = (SubmissionStatus.BRONZE, SubmissionStatus.SILVER, SubmissionStatus.GOLD)


class ReviewDecision(str, Enum):
    BRONZE = 'bronze'
    SILVER = 'silver'
    GOLD = 'gold'
    REJECT = 'reject'

    @property
    def tier(self) -> Optional[Tier]:
        if self is ReviewDecision.REJECT:
            return None
        return Tier(self.value.capitalize())


class FeedbackDirection(str, Enum):
    UP = 'up'
    DOWN = 'down'

    @property
    def sign(self) -> int:
        return 1 if self is FeedbackDirection.UP else -1


class EventStatus(str, Enum):
    ACTIVE = 'active'
    ENDED = 'ended'


class TriggerName(str, Enum):
    POLL_OPEN = 'poll_open'
    EVENT_START = 'event_start'
    PRIZE_DRAW = 'prize_draw'


# 使用枚举来表达操作结果，调用方据此决定是否需要产生后续副作用
class VoteResult(Enum):
    FIRST_VOTE = 1   # 首次投票
    CHANGED = 2      # 改投其他选项
    UNCHANGED = 3    # 重复投同一个选项，无变化


class ReviewResult(Enum):
    APPROVED = 1
    REJECTED = 2
    ALREADY_REVIEWED = 3  # 该提交已经被处理过
    NOT_UPGRADE = 4       # 用户已持有同级或更高等级


class FeedbackResult(Enum):
    NEW = 1
    UNCHANGED = 2
    REVERSED = 3


DEFAULT_WEIGHT = 50
MIN_WEIGHT = 0
MAX_WEIGHT = 100


@dataclass
class MessageRef:
    """已发送的公告消息的位置，用于之后原地编辑。"""
    channel_id: int
    message_id: int


@dataclass
class ChallengeTemplate:
    """
    任务模板，属于长期存在的任务目录。
    对应数据库中的 'task_templates' 表。
    """
    template_id: str
    name: str
    category: str
    task_type: str = TaskType.OTHER.value
    amt_bronze: int = 0
    amt_silver: int = 0
    amt_gold: int = 0
    weight: int = DEFAULT_WEIGHT
    short_name: Optional[str] = None
    skill: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> 'ChallengeTemplate':
        known = {f.name for f in fields(cls)}
        data = {k: v for k, v in dict(row).items() if k in known}
        if data.get('weight') is None:
            data['weight'] = DEFAULT_WEIGHT
        return cls(**data)

    def to_snapshot(self) -> dict:
        return asdict(self)

    def amount_text(self) -> str:
        return f"{self.amt_bronze}/{self.amt_silver}/{self.amt_gold}"

    def display_name(self) -> str:
        return self.name.replace('{amount}', self.amount_text())


@dataclass
class Poll:
    """
    某个分类的一次任务投票。
    对应 'task_polls' 表，votes 来自 'task_poll_votes' 表 (user_id -> option_id)。
    """
    poll_id: str
    category: str
    options: list[ChallengeTemplate]
    created_at: datetime
    ends_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    is_active: bool = True
    channel_id: Optional[int] = None
    message_id: Optional[int] = None
    winning_option_id: Optional[str] = None
    votes: dict[int, str] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: dict, votes: Optional[dict[int, str]] = None) -> 'Poll':
        return cls(
            poll_id=row['poll_id'],
            category=row['category'],
            options=[ChallengeTemplate.from_row(o) for o in row['options']],
            created_at=parse_iso(row['created_at']),
            ends_at=parse_iso(row.get('ends_at')),
            closed_at=parse_iso(row.get('closed_at')),
            is_active=bool(row['is_active']),
            channel_id=row.get('channel_id'),
            message_id=row.get('message_id'),
            winning_option_id=row.get('winning_option_id'),
            votes=dict(votes or {}),
        )

    def get_option(self, option_id: str) -> Optional[ChallengeTemplate]:
        for option in self.options:
            if option.template_id == option_id:
                return option
        return None

    def tallies(self) -> dict[str, int]:
        """按候选顺序返回每个选项的票数。"""
        counts = {option.template_id: 0 for option in self.options}
        for option_id in self.votes.values():
            if option_id in counts:
                counts[option_id] += 1
        return counts

    @property
    def winning_option(self) -> Optional[ChallengeTemplate]:
        if self.winning_option_id is None:
            return None
        return self.get_option(self.winning_option_id)


@dataclass
class ChallengeEvent:
    """
    一个正在进行（或已结束）的任务活动。
    阈值在创建时从模板复制，之后模板的修改不会影响已开始的活动。
    """
    event_id: str
    category: str
    template: ChallengeTemplate
    keyword: str
    start_time: datetime
    end_time: datetime
    amt_bronze: int
    amt_silver: int
    amt_gold: int
    poll_id: Optional[str] = None
    channel_id: Optional[int] = None
    message_id: Optional[int] = None
    count_bronze: int = 0
    count_silver: int = 0
    count_gold: int = 0
    completed_user_ids: set[int] = field(default_factory=set)

    @classmethod
    def from_row(cls, row: dict, completed_user_ids: Optional[set[int]] = None) -> 'ChallengeEvent':
        return cls(
            event_id=row['event_id'],
            category=row['category'],
            template=ChallengeTemplate.from_row(row['template']),
            keyword=row['keyword'],
            start_time=parse_iso(row['start_time']),
            end_time=parse_iso(row['end_time']),
            amt_bronze=row['amt_bronze'],
            amt_silver=row['amt_silver'],
            amt_gold=row['amt_gold'],
            poll_id=row.get('poll_id'),
            channel_id=row.get('channel_id'),
            message_id=row.get('message_id'),
            count_bronze=row.get('count_bronze') or 0,
            count_silver=row.get('count_silver') or 0,
            count_gold=row.get('count_gold') or 0,
            completed_user_ids=set(completed_user_ids or ()),
        )

    def status(self, now: Optional[datetime] = None) -> EventStatus:
        # 结束时间只是参考，不做任何自动结束的动作
        now = now or utcnow()
        return EventStatus.ACTIVE if now < self.end_time else EventStatus.ENDED

    def threshold_for(self, tier: Tier) -> int:
        return {
            Tier.BRONZE: self.amt_bronze,
            Tier.SILVER: self.amt_silver,
            Tier.GOLD: self.amt_gold,
        }[tier]

    def completion_counts(self) -> dict[str, int]:
        return {'bronze': self.count_bronze, 'silver': self.count_silver, 'gold': self.count_gold}

    def display_name(self) -> str:
        amount = f"{self.amt_bronze}/{self.amt_silver}/{self.amt_gold}"
        return self.template.name.replace('{amount}', amount)


@dataclass
class Submission:
    """
    用户为某个活动提交的截图证据。
    对应 'task_submissions' 表。
    """
    submission_id: str
    user_id: int
    event_id: str
    evidence: list[str]
    status: SubmissionStatus = SubmissionStatus.PENDING
    notes: Optional[str] = None
    task_name: Optional[str] = None
    prize_rolls: int = 0
    reviewed_by: Optional[int] = None
    reviewed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    review_channel_id: Optional[int] = None
    review_message_id: Optional[int] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict) -> 'Submission':
        return cls(
            submission_id=row['submission_id'],
            user_id=row['user_id'],
            event_id=row['event_id'],
            evidence=list(row['evidence']),
            status=SubmissionStatus(row['status']),
            notes=row.get('notes'),
            task_name=row.get('task_name'),
            prize_rolls=row.get('prize_rolls') or 0,
            reviewed_by=row.get('reviewed_by'),
            reviewed_at=parse_iso(row.get('reviewed_at')),
            rejection_reason=row.get('rejection_reason'),
            review_channel_id=row.get('review_channel_id'),
            review_message_id=row.get('review_message_id'),
            created_at=parse_iso(row.get('created_at')),
        )

    @property
    def tier(self) -> Optional[Tier]:
        return self.status.tier


@dataclass
class PrizeDraw:
    """
    一个抽奖窗口的快照。winner_id 一旦写入就不再改变。
    对应 'prize_draws' 表。
    """
    draw_id: str
    window_start: datetime
    window_end: datetime
    snapshot_taken_at: datetime
    participants: dict[int, int] = field(default_factory=dict)
    tickets: list[int] = field(default_factory=list)
    total_entries: int = 0
    tier_counts: dict[str, int] = field(default_factory=dict)
    event_ids: list[str] = field(default_factory=list)
    winner_id: Optional[int] = None
    rolled_at: Optional[datetime] = None
    announced_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict) -> 'PrizeDraw':
        return cls(
            draw_id=row['draw_id'],
            window_start=parse_iso(row['window_start']),
            window_end=parse_iso(row['window_end']),
            snapshot_taken_at=parse_iso(row['snapshot_taken_at']),
            # JSON 的键总是字符串，这里转回用户 ID
            participants={int(k): v for k, v in row['participants'].items()},
            tickets=[int(t) for t in row['tickets']],
            total_entries=row['total_entries'],
            tier_counts=dict(row['tier_counts']),
            event_ids=list(row['event_ids']),
            winner_id=row.get('winner_id'),
            rolled_at=parse_iso(row.get('rolled_at')),
            announced_at=parse_iso(row.get('announced_at')),
        )


@dataclass
class TriggerState:
    category: str
    trigger: TriggerName
    last_fired_at: Optional[datetime] = None
    next_fire_at: Optional[datetime] = None


@dataclass
class VoteOutcome:
    result: VoteResult
    poll: Poll

    @property
    def changed(self) -> bool:
        return self.result is not VoteResult.UNCHANGED


@dataclass
class ReviewOutcome:
    result: ReviewResult
    submission: Submission
    previous_tier: Optional[Tier] = None


@dataclass
class FeedbackOutcome:
    result: FeedbackResult
    template_id: str
    weight: int
