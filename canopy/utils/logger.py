"""canopy 日志配置

两种输出：人类可读文本（终端）与每行一个 JSON 对象（CI / 日志采集）。
编排层通过 logging 的 extra 传入 workspace_id / operation / repo / attempt，
JSON 模式下这些字段会原样出现在输出中。
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

# 从 LogRecord 提升到 JSON 顶层的 extra 字段
CONTEXT_FIELDS = ("workspace_id", "operation", "repo", "attempt", "delay")

TEXT_FORMAT = "%(asctime)s [%(levelname)-7s] %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """结构化 JSON 日志格式器

    输出示例:
        {"timestamp": "...", "level": "INFO", "logger": "canopy.core.retry",
         "message": "...", "line": 88, "operation": "git clone", "attempt": 2}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "function": record.funcName,
            "line": record.lineno,
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def _clear_root_handlers() -> logging.Logger:
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    return root


def setup_logging(level: str = "INFO", json_output: bool = False) -> None:
    """配置根日志器，输出到 stderr

    重复调用会先移除已有 handler，不会产生重复输出。
    """
    root = _clear_root_handlers()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if json_output else logging.Formatter(TEXT_FORMAT))
    root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def reset_logging() -> None:
    """移除根日志器的全部 handler（测试用）"""
    _clear_root_handlers()
