"""工作空间恢复（closed-archived → active）

- 同名 active 工作空间已存在时拒绝；force=True 则先强制关闭删除现有工作空间
- 基于最新归档记录走创建流程重建，成功后删除归档记录
"""

from __future__ import annotations

import copy
import logging
from typing import TYPE_CHECKING

from canopy.core.cancel import ensure_token
from canopy.core.exceptions import WorkspaceExists, WorkspaceNotFound

if TYPE_CHECKING:
    from canopy.core.cancel import CancelToken
    from canopy.services.workspace.close import WorkspaceCloser
    from canopy.services.workspace.create import WorkspaceCreator
    from canopy.services.workspace.runtime import WorkspaceRuntime

logger = logging.getLogger(__name__)


class WorkspaceRestorer:
    """从归档记录恢复工作空间"""

    def __init__(
        self, runtime: WorkspaceRuntime, creator: WorkspaceCreator, closer: WorkspaceCloser,
    ) -> None:
        self.rt = runtime
        self._creator = creator
        self._closer = closer

    def restore(
        self, workspace_id: str, *, force: bool = False, cancel: CancelToken | None = None,
    ) -> str:
        token = ensure_token(cancel)
        with self.rt.locked(workspace_id, token):
            entry = self.rt.storage.latest_closed(workspace_id)
            if entry is None:
                raise WorkspaceNotFound(workspace_id, operation="restore", closed=True)

            if self.rt.exists(workspace_id):
                if not force:
                    raise WorkspaceExists(workspace_id, operation="restore")
                logger.info("强制恢复，先删除现有工作空间: %s", workspace_id)
                self._closer.close_locked(
                    workspace_id, keep=False, force=True,
                    continue_on_hook_error=True, token=token,
                )

            ws = copy.deepcopy(entry.workspace)
            ws.closed_at = None
            ws.dir_name = ""
            self._creator.create_locked(ws, token)
            self.rt.storage.delete_closed(entry)
            self._creator.run_post_create(ws, token)

        logger.info("工作空间已恢复: %s", workspace_id, extra={"workspace_id": workspace_id})
        return str(self.rt.workspace_dir(ws))
