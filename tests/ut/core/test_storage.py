"""YamlWorkspaceStorage 单元测试"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from canopy.core.exceptions import (
    InvalidArgument,
    WorkspaceExists,
    WorkspaceMetadataError,
    WorkspaceNotFound,
)
from canopy.core.models import Repo, Workspace
from canopy.core.storage import META_FILE, YamlWorkspaceStorage, validate_workspace_id


@pytest.fixture()
def storage(tmp_path: Path) -> YamlWorkspaceStorage:
    return YamlWorkspaceStorage(str(tmp_path / "ws"), str(tmp_path / "closed"))


def _ws(wid: str = "PROJ-1") -> Workspace:
    return Workspace(id=wid, branch_name=wid, repos=[Repo("api", "https://e.com/api.git")])


class TestValidateId:
    @pytest.mark.parametrize("wid", ["PROJ-1", "a", "feature.x_y", "9lives"])
    def test_valid(self, wid: str) -> None:
        validate_workspace_id(wid)

    @pytest.mark.parametrize("wid", ["", "-x", ".hidden", "a/b", "a b", "..", "ä"])
    def test_invalid(self, wid: str) -> None:
        with pytest.raises(InvalidArgument):
            validate_workspace_id(wid)


class TestActive:
    def test_create_and_load(self, storage: YamlWorkspaceStorage) -> None:
        assert storage.create(_ws()) == "PROJ-1"
        ws = storage.load("PROJ-1")
        assert ws.id == "PROJ-1"
        assert ws.repos == [Repo("api", "https://e.com/api.git")]
        assert ws.dir_name == "PROJ-1"
        assert ws.last_modified is not None

    def test_create_twice(self, storage: YamlWorkspaceStorage) -> None:
        storage.create(_ws())
        with pytest.raises(WorkspaceExists):
            storage.create(_ws())

    def test_load_missing(self, storage: YamlWorkspaceStorage) -> None:
        with pytest.raises(WorkspaceNotFound):
            storage.load("nope")

    def test_load_by_id_scans_mismatched_dir(self, storage: YamlWorkspaceStorage) -> None:
        """目录名与 ID 不一致时 load_by_id 回退到全量扫描"""
        ws = _ws("PROJ-2")
        ws.dir_name = "legacy-dir"
        (storage.workspaces_root / "legacy-dir").mkdir(parents=True)
        storage.save(ws)
        found, dir_name = storage.load_by_id("PROJ-2")
        assert found.id == "PROJ-2"
        assert dir_name == "legacy-dir"

    def test_save_updates(self, storage: YamlWorkspaceStorage) -> None:
        storage.create(_ws())
        ws = storage.load("PROJ-1")
        ws.branch_name = "feature"
        storage.save(ws)
        assert storage.load("PROJ-1").branch_name == "feature"

    def test_delete_idempotent(self, storage: YamlWorkspaceStorage) -> None:
        storage.create(_ws())
        storage.delete("PROJ-1")
        storage.delete("PROJ-1")
        assert not (storage.workspaces_root / "PROJ-1").exists()

    def test_list_skips_corrupt(self, storage: YamlWorkspaceStorage) -> None:
        storage.create(_ws("A"))
        bad = storage.workspaces_root / "B"
        bad.mkdir()
        (bad / META_FILE).write_text("id: [unclosed", encoding="utf-8")
        assert [w.id for w in storage.list()] == ["A"]

    def test_corrupt_raises(self, storage: YamlWorkspaceStorage) -> None:
        bad = storage.workspaces_root / "B"
        bad.mkdir(parents=True)
        (bad / META_FILE).write_text("", encoding="utf-8")
        with pytest.raises(WorkspaceMetadataError):
            storage.load("B")

    def test_rename(self, storage: YamlWorkspaceStorage) -> None:
        storage.create(_ws())
        storage.rename("PROJ-1", "PROJ-9")
        assert (storage.workspaces_root / "PROJ-9" / META_FILE).exists()
        assert not (storage.workspaces_root / "PROJ-1").exists()

    def test_rename_target_exists(self, storage: YamlWorkspaceStorage) -> None:
        storage.create(_ws("A"))
        storage.create(_ws("B"))
        with pytest.raises(WorkspaceExists):
            storage.rename("A", "B")


class TestClosed:
    def test_close_and_list(self, storage: YamlWorkspaceStorage) -> None:
        storage.create(_ws())
        t = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        entry = storage.close("PROJ-1", t)
        assert Path(entry.path).name == "20260102T030405Z"
        closed = storage.list_closed()
        assert len(closed) == 1
        assert closed[0].workspace.closed_at == t

    def test_newest_first(self, storage: YamlWorkspaceStorage) -> None:
        storage.create(_ws())
        t = datetime(2026, 1, 1, tzinfo=timezone.utc)
        storage.close("PROJ-1", t)
        storage.close("PROJ-1", t + timedelta(hours=1))
        closed = storage.list_closed()
        assert closed[0].closed_at > closed[1].closed_at
        assert storage.latest_closed("PROJ-1").closed_at == t + timedelta(hours=1)
        assert storage.latest_closed("other") is None

    def test_delete_closed_removes_empty_parent(self, storage: YamlWorkspaceStorage) -> None:
        storage.create(_ws())
        entry = storage.close("PROJ-1", datetime.now(timezone.utc))
        storage.delete_closed(entry)
        assert storage.list_closed() == []
        assert not (storage.closed_root / "PROJ-1").exists()
