"""代码仓适配层

- git.py: git 命令行适配器（canonical 仓库 + worktree）
- registry.py: 别名注册表
- resolver.py: 仓库引用解析
"""

from canopy.services.repo.git import GitCli
from canopy.services.repo.registry import RepoRegistry
from canopy.services.repo.resolver import RepoResolver

__all__ = [
    "GitCli",
    "RepoRegistry",
    "RepoResolver",
]
