"""代码仓别名注册表

职责：
- 维护 别名 → clone 地址 的映射（data/repos.yml 的 repos 段）
- add-canonical 时登记别名，remove 时注销
"""

from __future__ import annotations

import logging

from canopy.core.exceptions import InvalidArgument, RepoAlreadyExists
from canopy.core.registry import YamlRegistry

logger = logging.getLogger(__name__)


class RepoRegistry(YamlRegistry):
    """代码仓别名注册表"""

    section_key = "repos"

    def __init__(self, registry_file: str = "") -> None:
        if not registry_file:
            from canopy.core.config import get_config
            registry_file = get_config().registry_file
        super().__init__(registry_file)

    def register(self, alias: str, url: str, *, force: bool = False) -> None:
        if not alias or not url:
            raise InvalidArgument("别名与地址均为必填")
        existing = self._get_raw(alias)
        if existing is not None and existing != url and not force:
            raise RepoAlreadyExists(f"别名已存在: {alias} -> {existing}", repo=alias)
        self._put(alias, url)
        logger.info("别名已登记: %s -> %s", alias, url)

    def unregister(self, alias: str) -> bool:
        if not self._remove(alias):
            return False
        logger.info("别名已注销: %s", alias)
        return True

    def resolve(self, alias: str) -> str | None:
        url = self._get_raw(alias)
        return str(url) if url else None

    def aliases(self) -> dict[str, str]:
        return {k: str(v) for k, v in self._items().items()}
