"""YAML 注册表基类

单文件、单 section 的键值注册表（如代码仓别名表）共享的加载、保存、增删改查逻辑。
子类只需指定 section_key。写操作持有进程内锁并原子落盘。
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

from canopy.utils.yaml_io import load_yaml, save_yaml

logger = logging.getLogger(__name__)


class YamlRegistry:
    """YAML 文件注册表基类

    子类用法:
        class AliasRegistry(YamlRegistry):
            section_key = "aliases"
    """

    section_key: str = "entries"

    def __init__(self, registry_file: str) -> None:
        self.registry_file = Path(registry_file)
        self._lock = threading.Lock()
        self._data: dict[str, Any] = load_yaml(self.registry_file)

    def _section(self) -> dict[str, Any]:
        """当前 section 字典（自动创建）"""
        section = self._data.setdefault(self.section_key, {})
        if not isinstance(section, dict):
            logger.warning("%s 的 %s 不是字典，已重置", self.registry_file, self.section_key)
            section = self._data[self.section_key] = {}
        return section

    def _put(self, name: str, entry: Any) -> Any:
        with self._lock:
            self._section()[name] = entry
            save_yaml(self.registry_file, self._data)
        return entry

    def _get_raw(self, name: str) -> Any | None:
        with self._lock:
            return self._section().get(name)

    def _items(self) -> dict[str, Any]:
        with self._lock:
            return dict(self._section())

    def _remove(self, name: str) -> bool:
        with self._lock:
            section = self._section()
            if name not in section:
                return False
            del section[name]
            save_yaml(self.registry_file, self._data)
            return True
