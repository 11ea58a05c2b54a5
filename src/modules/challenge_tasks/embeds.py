# src/modules/challenge_tasks/embeds.py

import discord
from discord import ui
from typing import Optional

from src.modules.challenge_tasks.models import (
    ChallengeEvent, Poll, PrizeDraw, Submission, SubmissionStatus, TaskType, Tier,
)

DEFAULT_COLOR = 0x49989a

# 按钮的 custom_id 前缀，cog 中的 on_interaction 监听器根据前缀分发，重启后旧消息上的按钮依然可用
VOTE_PREFIX = 'task_vote'
SUBMIT_PREFIX = 'task_submit'
REVIEW_PREFIX = 'task_review'
FEEDBACK_PREFIX = 'task_feedback'

TIER_EMOJI = {Tier.BRONZE: '🥉', Tier.SILVER: '🥈', Tier.GOLD: '🥇'}

TASK_INSTRUCTIONS = {
    TaskType.XP: "提交包含 **关键词** 的**前后对比截图**，展示相关技能的经验值。推荐使用 RuneLite 的经验追踪面板。",
    TaskType.KC: "提交包含 **关键词** 的**前后对比截图**，展示相关首领或活动的击杀数。可以使用收藏日志、击杀提示或 KC 面板。",
    TaskType.DROP: "提交包含 **关键词** 的**截图**，展示地上或背包中的相关掉落物。稀有掉落建议每次掉落各截一张。",
    TaskType.INVENTORY: "提交包含 **关键词** 的**截图**，展示背包中所需数量的物品，并通过经验面板或前后截图展示完成任务获得的经验。",
    TaskType.POINTS: "提交包含 **关键词** 的**前后对比截图**，展示相关活动的积分。可以使用游戏内计数或 RuneLite 面板。",
    TaskType.MATERIALS: "开始前提交一张展示材料（可为票据）的**截图**，完成后再提交一张材料消耗完毕的**截图**，两张都需包含 **关键词**，并展示获得的经验。",
    TaskType.OTHER: "按照任务说明提交包含 **关键词** 的**截图**或其他证明。",
}


def instructions_for(task_type: str) -> str:
    try:
        return TASK_INSTRUCTIONS[TaskType(task_type)]
    except ValueError:
        return TASK_INSTRUCTIONS[TaskType.OTHER]


def _timestamp(value) -> str:
    return f"<t:{int(value.timestamp())}:f>"


# --- 投票 ---

def build_poll_embed(poll: Poll, color: int = DEFAULT_COLOR) -> discord.Embed:
    tallies = poll.tallies()
    title = f"🗳️ {poll.category} 任务投票" if poll.is_active else f"🗳️ {poll.category} 任务投票 (已结束)"
    embed = discord.Embed(
        title=title,
        description="为下一轮任务投票！每人一票，可以随时改投。",
        color=color
    )
    for index, option in enumerate(poll.options, start=1):
        marker = ' 🏆' if option.template_id == poll.winning_option_id else ''
        embed.add_field(
            name=f"{index}. {option.display_name()}{marker}",
            value=f"票数: **{tallies.get(option.template_id, 0)}**",
            inline=False
        )
    if poll.is_active and poll.ends_at:
        embed.set_footer(text="投票结束时间见下方")
        embed.add_field(name="截止", value=_timestamp(poll.ends_at), inline=False)
    return embed


def build_poll_view(poll: Poll) -> ui.View:
    view = ui.View(timeout=None)
    for index, option in enumerate(poll.options, start=1):
        view.add_item(ui.Button(
            label=f"{index}. {(option.short_name or option.display_name())[:70]}",
            style=discord.ButtonStyle.primary,
            custom_id=f"{VOTE_PREFIX}:{poll.poll_id}:{option.template_id}",
            disabled=not poll.is_active,
        ))
    return view


# --- 活动 ---

def build_event_embed(event: ChallengeEvent, color: int = DEFAULT_COLOR) -> discord.Embed:
    embed = discord.Embed(
        title=f"📋 本轮 {event.category} 任务",
        description=(
            f"**{event.display_name()}**\n\n"
            f"请在截图中包含关键词 **{event.keyword}**。\n\n"
            f"{instructions_for(event.template.task_type)}"
        ),
        color=color
    )
    counts = event.completion_counts()
    for tier in Tier:
        embed.add_field(
            name=f"{TIER_EMOJI[tier]} {tier.value}",
            value=f"目标: **{event.threshold_for(tier)}**\n完成: **{counts[tier.column]}** 人",
            inline=True
        )
    embed.add_field(name="结束时间", value=_timestamp(event.end_time), inline=False)
    embed.set_footer(text=f"活动 ID: {event.event_id}")
    return embed


def build_event_view(event: ChallengeEvent) -> ui.View:
    view = ui.View(timeout=None)
    view.add_item(ui.Button(
        label="📤 提交截图", style=discord.ButtonStyle.primary,
        custom_id=f"{SUBMIT_PREFIX}:{event.event_id}",
    ))
    view.add_item(ui.Button(
        label="👍", style=discord.ButtonStyle.secondary,
        custom_id=f"{FEEDBACK_PREFIX}:{event.event_id}:up",
    ))
    view.add_item(ui.Button(
        label="👎", style=discord.ButtonStyle.secondary,
        custom_id=f"{FEEDBACK_PREFIX}:{event.event_id}:down",
    ))
    return view


# --- 审核 ---

def build_submission_embed(submission: Submission, task_name: str, color: int = DEFAULT_COLOR) -> discord.Embed:
    embed = discord.Embed(title="📥 任务提交", color=color)
    embed.add_field(name="用户", value=f"<@{submission.user_id}>", inline=True)
    embed.add_field(name="任务", value=task_name, inline=True)
    embed.add_field(name="留言", value=submission.notes or "未填写留言", inline=False)
    if len(submission.evidence) > 1:
        links = "\n".join(f"[截图 {i}]({url})" for i, url in enumerate(submission.evidence, start=1))
        embed.add_field(name="全部截图", value=links[:1024], inline=False)
    if submission.evidence:
        embed.set_image(url=submission.evidence[0])
    embed.set_footer(text=f"提交 ID: {submission.submission_id}")
    if submission.created_at:
        embed.timestamp = submission.created_at
    return embed


def build_review_view(submission_id: str) -> ui.View:
    view = ui.View(timeout=None)
    for decision, label, style in (
        ('bronze', '🥉 Bronze', discord.ButtonStyle.secondary),
        ('silver', '🥈 Silver', discord.ButtonStyle.secondary),
        ('gold', '🥇 Gold', discord.ButtonStyle.success),
        ('reject', '❌ 驳回', discord.ButtonStyle.danger),
    ):
        view.add_item(ui.Button(label=label, style=style, custom_id=f"{REVIEW_PREFIX}:{submission_id}:{decision}"))
    return view


def build_archive_embed(submission: Submission, task_name: str, color: int = DEFAULT_COLOR) -> discord.Embed:
    embed = discord.Embed(title=f"🗂️ 任务提交 ({submission.status.value})", color=color)
    embed.add_field(name="用户", value=f"<@{submission.user_id}>", inline=True)
    embed.add_field(name="任务", value=task_name, inline=True)
    embed.add_field(name="留言", value=submission.notes or "未填写留言", inline=False)
    if submission.rejection_reason:
        embed.add_field(name="驳回原因", value=submission.rejection_reason, inline=False)
    if submission.reviewed_by:
        embed.add_field(name="审核人", value=f"<@{submission.reviewed_by}>", inline=True)
    if submission.evidence:
        embed.set_image(url=submission.evidence[0])
    if submission.reviewed_at:
        embed.timestamp = submission.reviewed_at
    return embed


def review_dm_text(submission: Submission, task_name: str) -> str:
    if submission.status is SubmissionStatus.REJECTED:
        reason = f"\n原因: {submission.rejection_reason}" if submission.rejection_reason else ""
        return f"❌ 你提交的任务 **{task_name}** 未通过审核。{reason}\n你可以重新提交。"
    tier = submission.tier
    return (
        f"✅ 你提交的任务 **{task_name}** 已通过审核，等级 {TIER_EMOJI[tier]} **{tier.value}**，"
        f"获得 **{submission.prize_rolls}** 张抽奖券！"
    )


# --- 抽奖 ---

def build_prize_embed(draw: PrizeDraw, color: int = DEFAULT_COLOR) -> discord.Embed:
    embed = discord.Embed(
        title="🎉 任务抽奖结果",
        description=(
            f"恭喜 <@{draw.winner_id}> 获得本期任务大奖！\n"
            f"统计区间: {draw.window_start:%Y-%m-%d} 至 {draw.window_end:%Y-%m-%d}"
        ),
        color=color
    )
    embed.add_field(name="参与人数", value=str(len(draw.participants)), inline=True)
    embed.add_field(name="抽奖券总数", value=str(draw.total_entries), inline=True)
    breakdown = "\n".join(
        f"{TIER_EMOJI[tier]} {tier.value}: {draw.tier_counts.get(tier.column, 0)}" for tier in Tier
    )
    embed.add_field(name="完成等级分布", value=breakdown, inline=False)
    embed.set_footer(text=f"抽奖 ID: {draw.draw_id}")
    return embed


def parse_custom_id(custom_id: Optional[str]) -> Optional[tuple[str, list[str]]]:
    """把 'prefix:a:b' 拆成 ('prefix', ['a', 'b'])；不是任务按钮时返回 None。"""
    if not custom_id:
        return None
    prefix, _, rest = custom_id.partition(':')
    if prefix not in (VOTE_PREFIX, SUBMIT_PREFIX, REVIEW_PREFIX, FEEDBACK_PREFIX) or not rest:
        return None
    return prefix, rest.split(':')
