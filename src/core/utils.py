# src/core/utils.py
import asyncio
import logging
import discord
from datetime import datetime, timezone
from typing import Coroutine, Any, TypeVar, Callable, Optional

logger = logging.getLogger(__name__)

T = TypeVar('T')

async def retry_on_discord_error(
    coro_func: Callable[[], Coroutine[Any, Any, T]],
    operation_name: str,
    max_retries: int = 3,
    initial_delay: float = 2.0,
    backoff_factor: float = 2.0
) -> T:
    """
    当发生 DiscordServerError 时，使用指数退避策略重试一个协程。
    传入的是一个返回协程的函数，这样每次重试都能拿到新的协程对象。

    :param coro_func: 返回需要执行的协程的函数 (例如: lambda: channel.fetch_message(id))
    :param operation_name: 操作的描述性名称，用于日志记录
    :param max_retries: 最大重试次数
    :param initial_delay: 初始延迟秒数
    :param backoff_factor: 每次重试后延迟时间增加的倍数
    :return: 如果成功，返回协程的结果
    :raises: 如果所有重试都失败，则抛出最后一个异常
    """
    delay = initial_delay
    logger.debug(f"开始执行操作: '{operation_name}'，最多重试 {max_retries} 次。")

    for i in range(max_retries):
        try:
            result = await coro_func()
            logger.debug(f"操作 '{operation_name}' 成功。")
            return result
        except discord.errors.DiscordServerError as e:
            if i == max_retries - 1:
                logger.error(
                    f"操作 '{operation_name}' 在 {max_retries} 次重试后最终失败。最后一次错误: {e}",
                    exc_info=True
                )
                raise

            logger.warning(
                f"操作 '{operation_name}' 失败 (尝试 {i + 1}/{max_retries})，状态码: {e.status}。将在 {delay:.2f} 秒后重试..."
            )
            await asyncio.sleep(delay)
            delay *= backoff_factor

    raise RuntimeError(f"操作 '{operation_name}' 的重试逻辑出现意外错误。")


# --- 时间工具 ---
# 数据库中统一存储带时区的 UTC ISO 字符串

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """把任意 datetime 规范化为 UTC；天真时间视为 UTC。"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return to_utc(value).isoformat()


def parse_iso(value: Any) -> Optional[datetime]:
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    return to_utc(datetime.fromisoformat(value))
