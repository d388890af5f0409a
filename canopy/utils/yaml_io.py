"""YAML 文件读写

工作空间元数据、别名注册表、配置文件共用的序列化入口：
统一 UTF-8、空文件保护、父目录自动创建、临时文件 + rename 原子落盘。
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

# 元数据文件都很小，超过 4MB 视为异常文件
MAX_YAML_SIZE = 4 * 1024 * 1024


def atomic_write(path: Path, content: str) -> None:
    """同目录写临时文件后 os.replace，读者只会看到旧内容或新内容"""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, str(path))
    except Exception:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


def load_yaml(path: str | Path) -> dict[str, Any]:
    """读取 YAML 字典

    文件不存在、为空、或顶层不是字典时返回 {}。

    异常:
        yaml.YAMLError: 内容无法解析
        ValueError: 文件超过 MAX_YAML_SIZE
        OSError: 读取失败
    """
    p = Path(path)
    if not p.exists():
        return {}

    size = p.stat().st_size
    if size > MAX_YAML_SIZE:
        raise ValueError(f"YAML 文件过大: {p} ({size} 字节)")

    try:
        with open(p, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        logger.error("解析 YAML 失败: %s: %s", p, e)
        raise

    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning("%s 顶层不是字典 (%s)，按空处理", p, type(data).__name__)
        return {}
    return data


def save_yaml(path: str | Path, data: Any) -> None:
    """原子写入 YAML，保持键顺序"""
    content = yaml.safe_dump(
        data, default_flow_style=False, allow_unicode=True, sort_keys=False,
    )
    try:
        atomic_write(Path(path), content)
    except OSError as e:
        logger.error("写入 YAML 失败: %s: %s", path, e)
        raise
