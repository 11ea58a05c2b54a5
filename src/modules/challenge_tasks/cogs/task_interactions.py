# src/modules/challenge_tasks/cogs/task_interactions.py

import discord
from discord import app_commands, ui
from discord.ext import commands
import json
import logging
import re
from typing import Optional

from src.modules.challenge_tasks import embeds
from src.modules.challenge_tasks.exceptions import TaskEngineError, ValidationError
from src.modules.challenge_tasks.models import (
    FeedbackDirection, FeedbackResult, ReviewDecision, ReviewResult, VoteResult,
)
from src.modules.challenge_tasks.services.prize_draw_service import make_draw_id
from src.modules.challenge_tasks.services.scheduler_service import ALL_CATEGORIES

logger = logging.getLogger(__name__)


class RejectionModal(ui.Modal, title="驳回提交"):
    reason = ui.TextInput(label="驳回原因 (会私信给提交者)", style=discord.TextStyle.paragraph, required=False, max_length=500)

    def __init__(self, cog: 'TaskInteractions', submission_id: str):
        super().__init__()
        self.cog = cog
        self.submission_id = submission_id

    async def on_submit(self, interaction: discord.Interaction):
        await interaction.response.defer(ephemeral=True)
        await self.cog.apply_review(interaction, self.submission_id, ReviewDecision.REJECT, self.reason.value.strip() or None)


class TaskInteractions(commands.Cog):
    """
    任务循环的所有 Discord 交互入口。
    按钮使用固定格式的 custom_id，由 on_interaction 统一分发，机器人重启后旧消息上的按钮依然有效。
    """

    def __init__(self, bot: commands.Bot):
        self.bot = bot
        self.settings = bot.task_settings
        self.poll_service = bot.poll_service
        self.event_service = bot.event_service
        self.review_service = bot.review_service
        self.feedback_service = bot.feedback_service
        self.prize_draw_service = bot.prize_draw_service
        self.catalog_service = bot.catalog_service
        self.keyword_service = bot.keyword_service
        self.scheduler = bot.task_scheduler

    # ----------------------------------------------------------------
    # 按钮分发
    # ----------------------------------------------------------------

    @commands.Cog.listener()
    async def on_interaction(self, interaction: discord.Interaction):
        if interaction.type is not discord.InteractionType.component or interaction.guild_id is None:
            return
        parsed = embeds.parse_custom_id((interaction.data or {}).get('custom_id'))
        if parsed is None:
            return
        prefix, parts = parsed

        log_context = {'user_id': interaction.user.id, 'guild_id': interaction.guild_id, 'custom_id': interaction.data.get('custom_id')}
        try:
            if prefix == embeds.VOTE_PREFIX and len(parts) == 2:
                await self.handle_vote(interaction, *parts)
            elif prefix == embeds.SUBMIT_PREFIX and len(parts) == 1:
                await self.handle_submit_button(interaction, parts[0])
            elif prefix == embeds.REVIEW_PREFIX and len(parts) == 2:
                await self.handle_review_button(interaction, *parts)
            elif prefix == embeds.FEEDBACK_PREFIX and len(parts) == 2:
                await self.handle_feedback(interaction, *parts)
        except TaskEngineError as e:
            await self._reply(interaction, f"❌ {e.message}")
        except Exception:
            logger.error("处理任务按钮时发生错误", extra=log_context, exc_info=True)
            await self._reply(interaction, "⚙️ **发生未知错误**，请稍后再试或联系管理员。")

    async def _reply(self, interaction: discord.Interaction, content: str):
        if interaction.response.is_done():
            await interaction.followup.send(content, ephemeral=True)
        else:
            await interaction.response.send_message(content, ephemeral=True)

    async def handle_vote(self, interaction: discord.Interaction, poll_id: str, option_id: str):
        await interaction.response.defer(ephemeral=True)
        outcome = await self.poll_service.cast_vote(interaction.guild_id, poll_id, interaction.user.id, option_id)
        option = outcome.poll.get_option(option_id)
        name = option.display_name() if option else option_id
        messages = {
            VoteResult.FIRST_VOTE: f"✅ 已投票给 **{name}**！",
            VoteResult.CHANGED: f"🔄 已改投 **{name}**。",
            VoteResult.UNCHANGED: f"🤔 你已经投给 **{name}** 了。",
        }
        await interaction.followup.send(messages[outcome.result], ephemeral=True)

    async def handle_submit_button(self, interaction: discord.Interaction, event_id: str):
        event = await self.event_service.get_event(interaction.guild_id, event_id)
        if event is None:
            await self._reply(interaction, "❌ 找不到该任务活动。")
            return
        await self._reply(
            interaction,
            f"📤 请使用 `/任务提交` 命令并附上截图来提交 **{event.display_name()}**。\n"
            f"截图中需要包含关键词 **{event.keyword}**。\n\n{embeds.instructions_for(event.template.task_type)}"
        )

    async def handle_review_button(self, interaction: discord.Interaction, submission_id: str, decision: str):
        if not interaction.permissions.manage_messages:
            await self._reply(interaction, "❌ 只有任务管理员可以审核提交。")
            return
        decision = ReviewDecision(decision)
        if decision is ReviewDecision.REJECT:
            await interaction.response.send_modal(RejectionModal(self, submission_id))
            return
        await interaction.response.defer(ephemeral=True)
        await self.apply_review(interaction, submission_id, decision, None)

    async def apply_review(self, interaction: discord.Interaction, submission_id: str, decision: ReviewDecision, reason: Optional[str]):
        try:
            outcome = await self.review_service.review_submission(
                interaction.guild_id, submission_id, decision, interaction.user.id, reason
            )
        except TaskEngineError as e:
            await interaction.followup.send(f"❌ {e.message}", ephemeral=True)
            return

        if outcome.result is ReviewResult.APPROVED:
            content = f"✅ 已批准为 **{outcome.submission.status.value}**。"
        elif outcome.result is ReviewResult.REJECTED:
            content = "✅ 已驳回该提交。"
        elif outcome.result is ReviewResult.NOT_UPGRADE:
            content = f"🤔 该用户在本活动中已持有 **{outcome.previous_tier.value}** 或更高等级，审核未生效。"
        else:
            content = f"🤔 该提交已经被审核过了 (当前状态: {outcome.submission.status.value})。"
        await interaction.followup.send(content, ephemeral=True)

    async def handle_feedback(self, interaction: discord.Interaction, event_id: str, direction: str):
        await interaction.response.defer(ephemeral=True)
        event = await self.event_service.get_event(interaction.guild_id, event_id)
        if event is None:
            await interaction.followup.send("❌ 找不到该任务活动。", ephemeral=True)
            return
        outcome = await self.feedback_service.adjust_feedback(
            interaction.guild_id, event.template.template_id, interaction.user.id, FeedbackDirection(direction), event_id
        )
        messages = {
            FeedbackResult.NEW: "✅ 感谢你的反馈！",
            FeedbackResult.REVERSED: "🔄 已更新你的反馈。",
            FeedbackResult.UNCHANGED: "🤔 你已经提交过相同的反馈了。",
        }
        await interaction.followup.send(messages[outcome.result], ephemeral=True)

    # ----------------------------------------------------------------
    # 斜杠命令
    # ----------------------------------------------------------------

    async def event_autocomplete(self, interaction: discord.Interaction, current: str) -> list[app_commands.Choice[str]]:
        events = await self.event_service.get_active_events(interaction.guild_id)
        choices = []
        for event in events:
            label = f"[{event.category}] {event.display_name()}"
            if current.lower() in label.lower():
                choices.append(app_commands.Choice(name=label[:100], value=event.event_id))
        return choices[:25]

    @app_commands.command(name="任务提交", description="为当前的任务活动提交截图")
    @app_commands.rename(event_id='任务', screenshot='截图', screenshot2='截图2', screenshot3='截图3', notes='留言')
    @app_commands.autocomplete(event_id=event_autocomplete)
    async def submit_task(
        self,
        interaction: discord.Interaction,
        event_id: str,
        screenshot: discord.Attachment,
        screenshot2: Optional[discord.Attachment] = None,
        screenshot3: Optional[discord.Attachment] = None,
        notes: Optional[str] = None,
    ):
        await interaction.response.defer(ephemeral=True)
        attachments = [a for a in (screenshot, screenshot2, screenshot3) if a is not None]
        if any(a.content_type and not a.content_type.startswith('image/') for a in attachments):
            await interaction.followup.send("❌ 只能上传图片作为截图。", ephemeral=True)
            return
        try:
            submission = await self.review_service.submit_evidence(
                interaction.guild_id, interaction.user.id, event_id, [a.url for a in attachments], notes
            )
        except TaskEngineError as e:
            await interaction.followup.send(f"❌ {e.message}", ephemeral=True)
            return
        await interaction.followup.send(
            f"✅ **提交成功**！提交 ID: `{submission.submission_id}`，审核结果会通过私信通知你。", ephemeral=True
        )

    @app_commands.command(name="任务统计", description="查看你的任务参与统计")
    async def task_stats(self, interaction: discord.Interaction):
        stats = await self.bot.db.get_task_user_stats(interaction.guild_id, interaction.user.id) or {}
        embed = discord.Embed(title=f"📊 {interaction.user.display_name} 的任务统计", color=self.settings.theme_color)
        embed.add_field(name="参与投票", value=str(stats.get('task_polls_voted', 0)), inline=True)
        embed.add_field(name="🥉 Bronze", value=str(stats.get('tasks_completed_bronze', 0)), inline=True)
        embed.add_field(name="🥈 Silver", value=str(stats.get('tasks_completed_silver', 0)), inline=True)
        embed.add_field(name="🥇 Gold", value=str(stats.get('tasks_completed_gold', 0)), inline=True)
        embed.add_field(name="🏆 中奖次数", value=str(stats.get('task_prizes_won', 0)), inline=True)
        await interaction.response.send_message(embed=embed, ephemeral=True)

    # --- 管理员命令 ---

    async def category_autocomplete(self, interaction: discord.Interaction, current: str) -> list[app_commands.Choice[str]]:
        options = [*self.settings.enabled_categories, ALL_CATEGORIES]
        return [app_commands.Choice(name=c, value=c) for c in options if current.lower() in c.lower()]

    def _target_categories(self, category: str) -> list[str]:
        if category == ALL_CATEGORIES:
            return list(self.settings.enabled_categories)
        if category not in self.settings.enabled_categories:
            raise ValidationError(f"未启用的分类: {category}")
        return [category]

    @app_commands.command(name="任务开启投票", description="[管理员] 立即为某个分类 (或全部分类) 开启任务投票")
    @app_commands.rename(category='分类')
    @app_commands.autocomplete(category=category_autocomplete)
    @app_commands.default_permissions(manage_guild=True)
    async def open_poll_now(self, interaction: discord.Interaction, category: str):
        await interaction.response.defer(ephemeral=True)
        try:
            categories = self._target_categories(category)
        except TaskEngineError as e:
            await interaction.followup.send(f"❌ {e.message}", ephemeral=True)
            return

        lines = []
        for target in categories:
            try:
                poll = await self.scheduler.open_poll_now(interaction.guild_id, target)
            except TaskEngineError as e:
                lines.append(f"❌ **{target}**: {e.message}")
                continue
            lines.append(f"✅ **{target}**: 投票已开启 (`{poll.poll_id}`)")
        logger.info("管理员手动开启投票", extra={'user_id': interaction.user.id, 'guild_id': interaction.guild_id, 'categories': categories})
        await interaction.followup.send("\n".join(lines), ephemeral=True)

    @app_commands.command(name="任务开始活动", description="[管理员] 立即结算投票并开始任务活动")
    @app_commands.rename(category='分类')
    @app_commands.autocomplete(category=category_autocomplete)
    @app_commands.default_permissions(manage_guild=True)
    async def start_event_now(self, interaction: discord.Interaction, category: str):
        await interaction.response.defer(ephemeral=True)
        await self._start_events(interaction, category, self.scheduler.start_event_now, "管理员手动开始活动")

    @app_commands.command(name="任务结束投票", description="[管理员] 提前结束某个分类当前的投票并开始活动")
    @app_commands.rename(category='分类')
    @app_commands.autocomplete(category=category_autocomplete)
    @app_commands.default_permissions(manage_guild=True)
    async def force_close_poll(self, interaction: discord.Interaction, category: str):
        await interaction.response.defer(ephemeral=True)
        await self._start_events(interaction, category, self.scheduler.force_close_poll, "管理员手动结算投票")

    async def _start_events(self, interaction: discord.Interaction, category: str, starter, log_message: str):
        try:
            categories = self._target_categories(category)
        except TaskEngineError as e:
            await interaction.followup.send(f"❌ {e.message}", ephemeral=True)
            return

        # 同一次操作开始的活动共用一个关键词
        keyword = None
        lines = []
        for target in categories:
            try:
                event = await starter(interaction.guild_id, target, keyword=keyword)
            except TaskEngineError as e:
                lines.append(f"❌ **{target}**: {e.message}")
                continue
            keyword = event.keyword
            lines.append(f"✅ **{target}**: 活动 **{event.display_name()}** 已开始，关键词 `{event.keyword}`")
        logger.info(log_message, extra={'user_id': interaction.user.id, 'guild_id': interaction.guild_id, 'categories': categories})
        await interaction.followup.send("\n".join(lines), ephemeral=True)

    @app_commands.command(name="任务抽奖", description="[管理员] 执行抽奖的完整流程或其中某一步")
    @app_commands.rename(action='操作', draw_id='抽奖id')
    @app_commands.describe(draw_id="格式 YYYY-MM-DD_to_YYYY-MM-DD，留空则为当前统计区间")
    @app_commands.choices(action=[
        app_commands.Choice(name="完整流程", value='run'),
        app_commands.Choice(name="生成快照", value='snapshot'),
        app_commands.Choice(name="抽取获奖者", value='roll'),
        app_commands.Choice(name="公布结果", value='announce'),
    ])
    @app_commands.default_permissions(manage_guild=True)
    async def prize_draw(self, interaction: discord.Interaction, action: app_commands.Choice[str], draw_id: Optional[str] = None):
        await interaction.response.defer(ephemeral=True)
        service = self.prize_draw_service
        guild_id = interaction.guild_id
        try:
            window_start, window_end = service.resolve_window(draw_id)
            draw_id = make_draw_id(window_start, window_end)
            if action.value == 'run':
                draw = await service.run_draw(guild_id, window_start=window_start, window_end=window_end)
                if draw.winner_id is None:
                    content = f"🤔 区间 `{draw_id}` 内没有任何抽奖券，本期不产生获奖者。"
                else:
                    content = f"✅ 抽奖 `{draw_id}` 的获奖者是 <@{draw.winner_id}>。"
            elif action.value == 'snapshot':
                draw = await service.snapshot_draw(guild_id, window_start, window_end)
                content = f"📸 已生成快照 `{draw_id}`: {len(draw.participants)} 名参与者，共 {draw.total_entries} 张抽奖券。"
            elif action.value == 'roll':
                winner_id = await service.roll_draw(guild_id, draw_id)
                if winner_id is None:
                    content = f"🤔 抽奖 `{draw_id}` 没有任何抽奖券，不产生获奖者。"
                else:
                    content = f"🎲 抽奖 `{draw_id}` 的获奖者是 <@{winner_id}>，可以使用「公布结果」发布公告。"
            else:
                if await service.announce_draw(guild_id, draw_id):
                    content = f"✅ 抽奖 `{draw_id}` 的结果已公布。"
                else:
                    content = f"🤔 抽奖 `{draw_id}` 的结果之前已经公布过了。"
        except TaskEngineError as e:
            await interaction.followup.send(f"❌ {e.message}", ephemeral=True)
            return
        logger.info("管理员执行抽奖操作", extra={'user_id': interaction.user.id, 'guild_id': guild_id, 'action': action.value, 'draw_id': draw_id})
        await interaction.followup.send(content, ephemeral=True)

    @app_commands.command(name="任务添加关键词", description="[管理员] 向关键词库添加验证关键词，多个关键词用逗号或空格分隔")
    @app_commands.rename(words='关键词')
    @app_commands.default_permissions(manage_guild=True)
    async def add_keywords(self, interaction: discord.Interaction, words: str):
        await interaction.response.defer(ephemeral=True)
        parsed = [w for w in re.split(r'[,，\s]+', words) if w]
        if not parsed:
            await interaction.followup.send("❌ 请至少输入一个关键词。", ephemeral=True)
            return
        added = await self.keyword_service.add_keywords(interaction.guild_id, parsed)
        logger.info("管理员添加关键词", extra={'user_id': interaction.user.id, 'guild_id': interaction.guild_id, 'added': added})
        await interaction.followup.send(f"✅ 已添加 **{added}** 个新关键词 (已存在的关键词会被忽略)。", ephemeral=True)

    @app_commands.command(name="任务导入", description="[管理员] 从 JSON 文件导入或更新任务目录")
    @app_commands.rename(file='文件')
    @app_commands.default_permissions(manage_guild=True)
    async def import_catalog(self, interaction: discord.Interaction, file: discord.Attachment):
        await interaction.response.defer(ephemeral=True)
        try:
            data = json.loads(await file.read())
        except (json.JSONDecodeError, UnicodeDecodeError):
            await interaction.followup.send("❌ 文件不是有效的 JSON。", ephemeral=True)
            return
        if not isinstance(data, list):
            await interaction.followup.send("❌ 任务目录必须是一个 JSON 数组。", ephemeral=True)
            return
        imported = await self.catalog_service.import_templates(interaction.guild_id, data)
        await interaction.followup.send(f"✅ 已导入 **{imported}** 个任务模板。", ephemeral=True)


async def setup(bot: commands.Bot):
    if getattr(bot, 'poll_service', None) and getattr(bot, 'task_scheduler', None):
        await bot.add_cog(TaskInteractions(bot))
    else:
        logger.error("任务服务未在机器人实例上初始化，无法加载 TaskInteractions。")
