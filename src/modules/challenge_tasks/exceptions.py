# src/modules/challenge_tasks/exceptions.py

from typing import Any, Optional


class TaskEngineError(Exception):
    """任务引擎所有业务异常的基类。message 可以直接展示给用户。"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(TaskEngineError):
    """输入不合法：缺少选项、投票已关闭、证据为空等。不重试。"""


class NotFoundError(TaskEngineError):
    """投票、活动、提交或任务模板不存在。"""


class ConflictError(TaskEngineError):
    """与现有状态冲突。existing 携带当前权威状态，调用方通常直接使用它。"""

    def __init__(self, message: str, existing: Optional[Any] = None):
        super().__init__(message)
        self.existing = existing


class DependencyUnavailable(TaskEngineError):
    """存储或 Discord 通知通道不可用。"""
