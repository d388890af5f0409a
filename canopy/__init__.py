"""canopy - 基于 git worktree 的多仓工作空间编排"""

__version__ = "0.1.0"
