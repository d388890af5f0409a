"""工作空间生命周期编排

拆分说明：
- runtime.py: 共享依赖与公共步骤（缓存读写、加锁、钩子上下文、并行分发）
- create.py / close.py / restore.py / rename.py: 生命周期状态迁移
- repos.py: 工作空间内代码仓增删
- git_ops.py: 跨仓 git 操作（run_git / switch_branch / sync / push）
- status.py: 只读查询
- canonical.py: canonical 仓库与别名
- bulk.py: 按 ID 模式批量关闭 / 同步
- orphans.py: 孤儿 worktree 检测与 worktree prune
- export.py: 工作空间导出 / 导入

对外统一入口为 canopy.services.workspace_service.WorkspaceService。
"""

from canopy.services.workspace.bulk import WorkspaceBulk
from canopy.services.workspace.canonical import CanonicalRepos
from canopy.services.workspace.close import WorkspaceCloser
from canopy.services.workspace.create import WorkspaceCreator
from canopy.services.workspace.export import WorkspaceExporter
from canopy.services.workspace.git_ops import WorkspaceGitOps
from canopy.services.workspace.orphans import OrphanDetector
from canopy.services.workspace.rename import WorkspaceRenamer
from canopy.services.workspace.repos import WorkspaceRepoEditor
from canopy.services.workspace.restore import WorkspaceRestorer
from canopy.services.workspace.runtime import WorkspaceRuntime
from canopy.services.workspace.status import WorkspaceQuery

__all__ = [
    "WorkspaceRuntime",
    "WorkspaceCreator",
    "WorkspaceCloser",
    "WorkspaceRestorer",
    "WorkspaceRenamer",
    "WorkspaceRepoEditor",
    "WorkspaceGitOps",
    "WorkspaceQuery",
    "CanonicalRepos",
    "WorkspaceBulk",
    "OrphanDetector",
    "WorkspaceExporter",
]
