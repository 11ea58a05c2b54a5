
import discord
from discord.ext import commands
import os
import asyncio
import pathlib
from dotenv import load_dotenv, find_dotenv
from src.core.database import Database
from src.modules.challenge_tasks.config import TaskSettings
from src.modules.challenge_tasks.services.catalog_service import CatalogService
from src.modules.challenge_tasks.services.event_service import EventService
from src.modules.challenge_tasks.services.feedback_service import FeedbackService
from src.modules.challenge_tasks.services.keyword_service import KeywordService
from src.modules.challenge_tasks.services.notification_service import DiscordNotifier
from src.modules.challenge_tasks.services.poll_service import PollService
from src.modules.challenge_tasks.services.prize_draw_service import PrizeDrawService
from src.modules.challenge_tasks.services.review_service import ReviewService
from src.modules.challenge_tasks.services.schedule import TaskSchedule
from src.modules.challenge_tasks.services.scheduler_service import TaskScheduler
import logging
from src.core.logging_setup import setup_logging

# 使用 find_dotenv() 确保总能找到 .env 文件
load_dotenv(find_dotenv())
TOKEN = os.getenv('DISCORD_TOKEN')

logger = logging.getLogger(__name__)

class TaskBot(commands.Bot):
    def __init__(self):
        logger.info("--- ⌛ 0. 环境与配置加载 ---")
        GUILD_ID = os.getenv("GUILD_ID")

        # 支持一个或多个用逗号分隔的 GUILD ID
        if GUILD_ID:
            self.guild_ids = [int(gid.strip()) for gid in GUILD_ID.split(',') if gid.strip()]
            logger.info(f"已加载 {len(self.guild_ids)} 个目标服务器 ID。")
        else:
            self.guild_ids = []
            logger.info("未在 .env 文件中指定 GUILD_ID，将进行全局同步。")

        self.task_settings = TaskSettings.from_env()
        if not self.task_settings.task_channel_id:
            logger.warning("警告：未配置 TASK_CHANNEL_ID！投票和活动公告将无法发布。")
        if self.task_settings.test_mode:
            logger.warning(f"任务循环运行在测试模式，周期为 {self.task_settings.test_interval_minutes} 分钟。")

        intents = discord.Intents.default()
        intents.members = True  # 私信和统计需要获取成员信息
        super().__init__(command_prefix="!", intents=intents)

        self.db: Database | None = None
        self.notifier: DiscordNotifier | None = None
        self.catalog_service: CatalogService | None = None
        self.keyword_service: KeywordService | None = None
        self.poll_service: PollService | None = None
        self.event_service: EventService | None = None
        self.review_service: ReviewService | None = None
        self.feedback_service: FeedbackService | None = None
        self.prize_draw_service: PrizeDrawService | None = None
        self.task_scheduler: TaskScheduler | None = None
        self.db_backup_task: asyncio.Task | None = None

    async def setup_hook(self) -> None:
        """
        Bot 启动时执行的异步初始化。
        这里只做最核心、最快的初始化。
        """
        logger.info("--- 🚀 1. 初始化核心服务 ---")
        self.db = Database()
        await self.db.connect()

        settings = self.task_settings
        schedule = TaskSchedule(settings)
        self.notifier = DiscordNotifier(self)
        self.catalog_service = CatalogService(self.db)
        self.keyword_service = KeywordService(self.db)
        self.poll_service = PollService(self.db, self.notifier, settings, schedule)
        self.event_service = EventService(self.db, self.notifier, settings, schedule)
        self.review_service = ReviewService(self.db, self.notifier, settings, self.event_service)
        self.feedback_service = FeedbackService(self.db)
        self.prize_draw_service = PrizeDrawService(self.db, self.notifier, settings, schedule)
        self.task_scheduler = TaskScheduler(
            self.db, settings, self.catalog_service, self.poll_service, self.event_service,
            self.keyword_service, self.prize_draw_service, schedule,
        )
        logger.info("✅ 核心服务初始化完成。")

        logger.info("--- 🧩 2. 加载功能模块 (Cogs) ---")
        await self.load_all_cogs()

        logger.info("--- 🛰️ 3. 同步应用命令 ---")
        if self.guild_ids:
            for guild_id in self.guild_ids:
                guild = discord.Object(id=guild_id)
                self.tree.copy_global_to(guild=guild)
                await self.tree.sync(guild=guild)
                logger.info(f"✅ 命令已同步到服务器: {guild_id}")
        else:
            await self.tree.sync()
            logger.info("✅ 命令已全局同步。")

        self.list_loaded_commands()
        logger.info(f"--- 🎉 机器人核心已就绪,等待 Discord 连接成功...---")

    async def on_ready(self):
        """当机器人成功连接到 Discord 后准备每个服务器的任务数据并启动后台任务。"""
        logger.info(f"--- ✅ 已成功连接到 Discord ---,以 {self.user} (ID: {self.user.id}) 的身份登录-")

        logger.info("--- 📚 4. 准备任务目录与关键词 ---")
        catalog_file = os.getenv('TASK_CATALOG_FILE')
        for guild in self.guilds:
            try:
                await self.keyword_service.ensure_seeded(guild.id)
                if catalog_file:
                    await self.catalog_service.import_file(guild.id, catalog_file)
            except Exception:
                logger.error("准备任务数据失败", extra={'guild_id': guild.id}, exc_info=True)

        logger.info("--- 🚀 5. 启动所有后台服务 ---")
        self.start_background_tasks()
        logger.info("======================== 机器人完全就绪 ========================")

    def start_background_tasks(self):
        """统一启动所有后台任务。任务调度由 TaskSchedulerCog 自行启动。"""
        if self.db_backup_task and not self.db_backup_task.done():
            # on_ready 在重连后可能被多次调用
            return
        backup_interval_hours_str = os.getenv('BACKUP_INTERVAL_HOURS')
        if backup_interval_hours_str and backup_interval_hours_str.isdigit() and int(backup_interval_hours_str) > 0:
            interval_hours = int(backup_interval_hours_str)
            self.db_backup_task = self.loop.create_task(self.db.start_backup_loop(interval_hours * 3600))
            logger.info("  - [启动] 数据库自动备份任务。")
        else:
            logger.warning("  - [跳过] 数据库自动备份已禁用。")

    async def close(self):
        """在机器人关闭时，优雅地清理资源。"""
        logger.info("正在关闭机器人并清理资源...")

        # 先断开与 Discord 的连接并停止内部任务，再清理数据库
        await super().close()
        logger.info("Discord 客户端已成功关闭。")

        if self.db_backup_task and not self.db_backup_task.done():
            self.db_backup_task.cancel()
            logger.info("数据库备份任务已取消。")

        if self.db and self.db.conn:
            await self.db.close()
            logger.info("数据库连接已关闭。")

        logger.info("所有自定义资源已成功清理，机器人已完全关闭。")

    async def load_all_cogs(self):
        """查找并加载 modules 目录下所有 cogs 子文件夹中的扩展。"""
        project_root = pathlib.Path(__file__).parent.parent
        modules_root = project_root / "src" / "modules"

        for path in modules_root.rglob("cogs/*.py"):
            if path.name == "__init__.py" or path.name == "views.py":
                continue

            # 例如: .../src/modules/challenge_tasks/cogs/task_scheduler.py -> src.modules.challenge_tasks.cogs.task_scheduler
            module_path = ".".join(path.relative_to(project_root).parts).removesuffix(".py")
            try:
                await self.load_extension(module_path)
                logger.info(f"✅ 已加载: {module_path}")
            except Exception as e:
                logger.error(f"❌ 加载 {module_path} 失败: {e}", exc_info=True)

    def list_loaded_commands(self):
        logger.info("--- 📋 已加载的应用命令 ---")
        commands = self.tree.get_commands()
        if not commands:
            logger.info("  未找到任何应用命令。")
        else:
            for command in commands:
                logger.info(f"  - /{command.name}")


async def main():
    # 在启动bot前先配置好日志
    setup_logging()

    if not TOKEN:
        logger.critical("错误：未在 .env 文件中找到 DISCORD_TOKEN。机器人无法启动。")
        return

    bot = TaskBot()

    try:
        await bot.start(TOKEN)
    except discord.errors.LoginFailure:
        logger.critical("错误：提供的 DISCORD_TOKEN 无效。请检查 .env 文件。")
    except Exception as e:
        logger.critical(f"机器人启动时发生致命错误: {e}", exc_info=True)
    finally:
        if not bot.is_closed():
            logger.info("检测到程序即将退出，正在优雅地关闭机器人...")
            await bot.close()

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("程序已干净地退出。")
