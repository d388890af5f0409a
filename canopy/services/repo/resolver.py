"""代码仓引用解析

new / add-repo 接受的仓库引用按以下顺序解析：
1. 完整地址（https:// ssh:// git:// file:// 或 git@host:path）
2. 已登记的别名
3. GitHub owner/repo 简写
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from canopy.core.exceptions import InvalidArgument, RepoNotFound
from canopy.core.models import Repo

if TYPE_CHECKING:
    from canopy.services.repo.registry import RepoRegistry

_URL_PREFIXES = ("https://", "http://", "ssh://", "git://", "file://")
_SCP_RE = re.compile(r"^[\w.-]+@[\w.-]+:.+")
_SHORTHAND_RE = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")


def is_url(ref: str) -> bool:
    return ref.startswith(_URL_PREFIXES) or bool(_SCP_RE.match(ref)) or ref.startswith("/")


def repo_name_from_url(url: str) -> str:
    """地址最后一段去掉 .git 作为仓库名"""
    tail = url.rstrip("/").replace(":", "/").split("/")[-1]
    name = tail.removesuffix(".git")
    if not name:
        raise InvalidArgument(f"无法从地址推断仓库名: {url}")
    return name


class RepoResolver:
    """把用户输入的仓库引用解析为 Repo"""

    def __init__(self, registry: RepoRegistry | None = None) -> None:
        self._registry = registry

    def resolve_one(self, ref: str) -> Repo:
        ref = ref.strip()
        if not ref:
            raise InvalidArgument("仓库引用为空")
        if is_url(ref):
            return Repo(name=repo_name_from_url(ref), url=ref)
        if self._registry is not None:
            url = self._registry.resolve(ref)
            if url:
                return Repo(name=ref, url=url)
        if _SHORTHAND_RE.match(ref):
            return Repo(name=ref.split("/")[-1], url=f"https://github.com/{ref}.git")
        raise RepoNotFound(f"无法解析仓库引用: {ref}", repo=ref)

    def resolve(self, refs: list[str]) -> list[Repo]:
        """批量解析，仓库名重复抛 InvalidArgument"""
        repos: list[Repo] = []
        seen: set[str] = set()
        for ref in refs:
            repo = self.resolve_one(ref)
            if repo.name in seen:
                raise InvalidArgument(f"仓库重复: {repo.name}", repo=repo.name)
            seen.add(repo.name)
            repos.append(repo)
        return repos
