import logging
import sys
import os
import pathlib
from logging.handlers import TimedRotatingFileHandler
from pythonjsonlogger import jsonlogger

# 这些第三方库的日志过于频繁，只保留警告及以上
NOISY_LOGGERS = ('discord', 'discord.http', 'discord.gateway', 'aiosqlite')


def _get_int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def setup_logging(log_file: str | None = None):
    """
    配置日志系统：控制台输出可读文本，文件输出 JSON。
    logger 调用时传入的 extra 字段 (guild_id、poll_id 等) 会作为独立的键写入 JSON。
    重复调用不会重复添加处理器。
    """
    root_logger = logging.getLogger()
    if root_logger.hasHandlers():
        return

    log_level_str = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_level = getattr(logging, log_level_str, logging.INFO)

    # 根logger放行所有级别，由各处理器自行过滤
    root_logger.setLevel(logging.DEBUG)

    console_formatter = logging.Formatter(
        '%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    json_formatter = jsonlogger.JsonFormatter(
        '%(asctime)s %(levelname)s %(name)s %(message)s',
        rename_fields={
            'asctime': 'timestamp',
            'levelname': 'level',
            'name': 'logger',
        },
        json_ensure_ascii=False
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(console_formatter)
    console_handler.setLevel(log_level)
    root_logger.addHandler(console_handler)

    log_path = pathlib.Path(log_file or os.getenv('LOG_FILE', 'logs/task_bot.log'))
    log_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = TimedRotatingFileHandler(
        log_path,
        when='midnight',
        interval=_get_int_env('LOG_ROTATION_INTERVAL_DAYS', 1),
        backupCount=_get_int_env('LOG_BACKUP_COUNT', 7),
        encoding='utf-8',
        utc=True,
    )
    file_handler.setFormatter(json_formatter)
    file_handler.setLevel(logging.DEBUG)
    root_logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root_logger.info("日志系统初始化完成", extra={'console_level': log_level_str, 'log_file': str(log_path)})
