#!filepath: harness/__init__.py

from .utils.logger import Logging, logs
from .utils.retry import Retry
from .utils.filesystem import FileSystem
from .config.app_config import AppConfig

# alias 简化调用
retry = Retry
fs = FileSystem

__all__ = [
    "logs", "Logging",
    "retry",
    "fs",
    "AppConfig",
]
