# src/modules/challenge_tasks/services/notification_service.py

import discord
import logging
from typing import Optional

from src.core.utils import retry_on_discord_error
from src.modules.challenge_tasks.exceptions import DependencyUnavailable
from src.modules.challenge_tasks.models import MessageRef

logger = logging.getLogger(__name__)


class DiscordNotifier:
    """
    任务引擎与 Discord 之间唯一的出口。
    发帖、编辑、删除失败时抛出 DependencyUnavailable，由调用方决定是否忽略；
    私信失败只返回 False，不会抛出异常。
    """

    def __init__(self, bot: discord.Client):
        self.bot = bot

    async def _get_channel(self, channel_id: Optional[int]) -> discord.abc.Messageable:
        if not channel_id:
            raise DependencyUnavailable("未配置目标频道。")
        channel = self.bot.get_channel(channel_id)
        if channel is None:
            try:
                channel = await retry_on_discord_error(
                    lambda: self.bot.fetch_channel(channel_id),
                    f"获取频道 (ID: {channel_id})"
                )
            except discord.HTTPException as e:
                raise DependencyUnavailable(f"无法访问频道 {channel_id}: {e}") from e
        return channel

    async def post_announcement(
        self,
        channel_id: Optional[int],
        embed: discord.Embed,
        content: Optional[str] = None,
        view: Optional[discord.ui.View] = None,
    ) -> MessageRef:
        channel = await self._get_channel(channel_id)
        kwargs = {'embed': embed, 'allowed_mentions': discord.AllowedMentions(roles=True, users=True)}
        if content:
            kwargs['content'] = content
        if view is not None:
            kwargs['view'] = view
        try:
            message = await retry_on_discord_error(
                lambda: channel.send(**kwargs),
                f"在频道 {channel_id} 发送公告"
            )
        except discord.HTTPException as e:
            logger.error(f"在频道 {channel_id} 发送公告失败", exc_info=True)
            raise DependencyUnavailable(f"发送公告失败: {e}") from e
        return MessageRef(channel_id=message.channel.id, message_id=message.id)

    async def edit_announcement(self, ref: MessageRef, embed: discord.Embed, view: Optional[discord.ui.View] = None):
        channel = await self._get_channel(ref.channel_id)
        kwargs = {'embed': embed}
        if view is not None:
            kwargs['view'] = view
        try:
            message = channel.get_partial_message(ref.message_id)
            await retry_on_discord_error(
                lambda: message.edit(**kwargs),
                f"编辑公告消息 {ref.message_id}"
            )
        except discord.HTTPException as e:
            raise DependencyUnavailable(f"编辑公告失败: {e}") from e

    async def delete_message(self, ref: MessageRef):
        channel = await self._get_channel(ref.channel_id)
        try:
            await retry_on_discord_error(
                lambda: channel.get_partial_message(ref.message_id).delete(),
                f"删除消息 {ref.message_id}"
            )
        except discord.NotFound:
            logger.debug(f"消息 {ref.message_id} 已不存在，无需删除。")
        except discord.HTTPException as e:
            raise DependencyUnavailable(f"删除消息失败: {e}") from e

    async def direct_message(self, user_id: int, content: Optional[str] = None, embed: Optional[discord.Embed] = None) -> bool:
        try:
            user = self.bot.get_user(user_id) or await retry_on_discord_error(
                lambda: self.bot.fetch_user(user_id),
                f"获取用户 (ID: {user_id})"
            )
            await retry_on_discord_error(
                lambda: user.send(content=content, embed=embed),
                f"向用户 {user_id} 发送私信"
            )
            return True
        except discord.Forbidden:
            logger.warning(f"无法向用户 {user_id} 发送私信。他们可能关闭了私信权限。")
        except discord.HTTPException:
            logger.error(f"向用户 {user_id} 发送私信最终失败。", exc_info=True)
        return False
