# src/modules/challenge_tasks/cogs/task_scheduler.py

import logging
import os
from discord.ext import commands, tasks

from src.modules.challenge_tasks.services.scheduler_service import TaskScheduler

logger = logging.getLogger(__name__)


class TaskSchedulerCog(commands.Cog):
    """周期性地为每个服务器执行一次调度检查。真正的触发时间保存在数据库中。"""

    def __init__(self, bot: commands.Bot, scheduler: TaskScheduler):
        self.bot = bot
        self.scheduler = scheduler
        self.scheduler_tick.change_interval(seconds=scheduler.settings.scheduler_tick_seconds)
        self.scheduler_tick.start()

    def cog_unload(self):
        self.scheduler_tick.cancel()

    @tasks.loop(seconds=float(os.getenv('TASK_SCHEDULER_TICK_SECONDS', '30')))
    async def scheduler_tick(self):
        for guild in self.bot.guilds:
            try:
                fired = await self.scheduler.tick(guild.id)
            except Exception:
                # 单个服务器出错不影响其他服务器，也不能让循环停止
                logger.error("调度检查失败", extra={'guild_id': guild.id}, exc_info=True)
                continue
            if fired:
                logger.info(
                    "本次调度执行了触发器",
                    extra={'guild_id': guild.id, 'fired': [f"{c}:{t.value}" for c, t in fired]}
                )

    @scheduler_tick.before_loop
    async def before_scheduler_tick(self):
        """在任务循环开始前，等待机器人准备好。"""
        await self.bot.wait_until_ready()
        logger.info("任务调度循环已准备就绪。")


async def setup(bot: commands.Bot):
    if getattr(bot, 'task_scheduler', None):
        await bot.add_cog(TaskSchedulerCog(bot, bot.task_scheduler))
    else:
        logger.error("TaskScheduler 未在机器人实例上初始化，无法加载 TaskSchedulerCog。")
