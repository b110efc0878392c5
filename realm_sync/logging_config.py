"""結構化日誌設定（structlog over stdlib logging）。

CLI 面向使用者的訊息仍用 print；函式庫內部診斷一律走 structlog。
"""

import logging
import sys

import structlog

_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """設定全域 structlog。json_output=True 時輸出 JSON（給 log 收集器）。"""
    level_name = (level or "INFO").upper()
    if level_name not in _LEVELS:
        level_name = "INFO"
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level_name),
        force=True,
    )

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        # ConsoleRenderer 自行處理 exc_info
        processors.append(structlog.dev.ConsoleRenderer(colors=False))
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = "realm_sync"):
    return structlog.get_logger(name)
