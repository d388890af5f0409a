"""集中配置管理

池大小、重试参数、锁超时、缓存 TTL 等都在服务构造时一次性读取，
运行中修改配置不会被已构造的服务感知。
支持从 YAML 文件加载 + 编程式覆盖。
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

import yaml

from canopy.core.exceptions import ConfigError, InvalidArgument
from canopy.core.models import Template
from canopy.utils.yaml_io import load_yaml

if TYPE_CHECKING:
    from canopy.core.retry import RetryConfig

logger = logging.getLogger(__name__)

MIN_PARALLEL_WORKERS = 1
MAX_PARALLEL_WORKERS = 10

_BRANCH_RE = re.compile(r"^[a-zA-Z0-9_./@\-]+$")


@dataclass
class Config:
    """canopy 全局配置"""

    # 目录
    workspaces_root: str = "data/workspaces"
    closed_root: str = "data/closed"
    projects_root: str = "data/projects"
    locks_dir: str = "data/locks"
    registry_file: str = "data/repos.yml"

    # 并行
    parallel_workers: int = 4

    # 锁（秒）
    lock_timeout: float = 30.0
    lock_stale_threshold: float = 300.0

    # 缓存 TTL（秒）
    cache_ttl: float = 30.0
    disk_usage_ttl: float = 60.0

    # 默认超时（秒）：网络类 git 操作 / 本地 git 元数据操作
    network_timeout: float = 300.0
    local_timeout: float = 30.0

    # 模板 setup 命令单条超时（秒）
    setup_timeout: float = 600.0

    # 重试
    retry_max_attempts: int = 3
    retry_initial_delay: float = 1.0
    retry_max_delay: float = 30.0
    retry_multiplier: float = 2.0
    retry_jitter: float = 0.25

    # new 未指定 --repos 时使用的仓库
    default_repos: list[str] = field(default_factory=list)

    # 生命周期钩子: {"post_create": [...], "pre_close": [...]}
    hooks: dict[str, list[dict[str, Any]]] = field(default_factory=dict)

    # 工作空间模板: {"backend": {"repos": [...], "default_branch": "", "setup_commands": [...]}}
    templates: dict[str, dict[str, Any]] = field(default_factory=dict)

    # 自定义扩展 (放不到字段里的配置项)
    extra: dict = field(default_factory=dict)

    @classmethod
    def from_file(cls, path: str = "canopy.yml") -> Config:
        """从 YAML 文件加载配置，不存在则返回默认"""
        try:
            data = load_yaml(path)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise ConfigError(f"读取配置失败: {path}", cause=e) from e
        if not data:
            return cls()
        known = {f.name for f in cls.__dataclass_fields__.values()}
        matched = {k: v for k, v in data.items() if k in known and k != "extra"}
        extra = {k: v for k, v in data.items() if k not in known}
        cfg = cls(**matched)
        cfg.extra = extra
        cfg.validate()
        return cfg

    def validate(self) -> None:
        """校验数值约束，不满足抛 ConfigError"""
        problems: list[str] = []
        if self.retry_max_attempts < 1:
            problems.append("retry_max_attempts 必须 >= 1")
        if self.retry_initial_delay < 0 or self.retry_initial_delay > self.retry_max_delay:
            problems.append("retry_initial_delay 必须在 [0, retry_max_delay] 内")
        if self.retry_multiplier < 1.0:
            problems.append("retry_multiplier 必须 >= 1.0")
        if not 0.0 <= self.retry_jitter <= 1.0:
            problems.append("retry_jitter 必须在 [0, 1] 内")
        for name in (
            "lock_timeout", "lock_stale_threshold", "network_timeout", "local_timeout", "setup_timeout",
        ):
            if getattr(self, name) <= 0:
                problems.append(f"{name} 必须 > 0")
        for name in ("cache_ttl", "disk_usage_ttl"):
            if getattr(self, name) < 0:
                problems.append(f"{name} 不能为负")
        unknown_hooks = set(self.hooks) - {"post_create", "pre_close"}
        if unknown_hooks:
            problems.append(f"未知的钩子类型: {', '.join(sorted(unknown_hooks))}")
        problems.extend(self._template_problems())
        if problems:
            raise ConfigError("配置无效: " + "; ".join(problems))

    def _template_problems(self) -> list[str]:
        problems: list[str] = []
        for name, data in self.templates.items():
            prefix = f"templates.{name}"
            if not name or name.strip() != name:
                problems.append(f"模板名不能为空或带首尾空白: {name!r}")
                continue
            if not isinstance(data, dict):
                problems.append(f"{prefix} 必须是字典")
                continue
            repos = data.get("repos") or []
            if not repos:
                problems.append(f"{prefix}.repos 至少需要一个仓库")
            problems.extend(
                f"{prefix}.repos[{i}] 为空" for i, r in enumerate(repos) if not str(r).strip()
            )
            branch = str(data.get("default_branch") or "")
            if branch and (not _BRANCH_RE.match(branch) or branch.startswith("-") or ".." in branch):
                problems.append(f"{prefix}.default_branch 非法: {branch!r}")
            problems.extend(
                f"{prefix}.setup_commands[{i}] 为空"
                for i, c in enumerate(data.get("setup_commands") or []) if not str(c).strip()
            )
        return problems

    def template(self, name: str) -> Template:
        """按名称取模板，不存在时列出可用模板"""
        if not name:
            raise InvalidArgument("模板名不能为空")
        data = self.templates.get(name)
        if data is None:
            available = ", ".join(sorted(self.templates)) or "无"
            raise InvalidArgument(f"未知模板: {name} (可用: {available})", template=name)
        return Template.from_dict(name, data)

    @property
    def workers(self) -> int:
        """并行池大小，限制在 [1, 10]"""
        return max(MIN_PARALLEL_WORKERS, min(MAX_PARALLEL_WORKERS, int(self.parallel_workers)))

    def retry_config(self) -> RetryConfig:
        from canopy.core.retry import RetryConfig
        return RetryConfig(
            max_attempts=self.retry_max_attempts,
            initial_delay=self.retry_initial_delay,
            max_delay=self.retry_max_delay,
            multiplier=self.retry_multiplier,
            jitter=self.retry_jitter,
        )

    def to_dict(self) -> dict:
        return asdict(self)


# 全局单例，import 时不加载文件；由 CLI 入口显式初始化
_current: Config | None = None


def get_config() -> Config:
    """获取当前配置（未初始化则返回默认值）"""
    global _current  # noqa: PLW0603
    if _current is None:
        _current = Config()
    return _current


def init_config(path: str = "canopy.yml") -> Config:
    """从文件初始化全局配置"""
    global _current  # noqa: PLW0603
    _current = Config.from_file(path)
    logger.info("配置已加载: %s", path)
    return _current
