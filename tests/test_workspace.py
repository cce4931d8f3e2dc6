"""Tests for per-request scratch directories."""

from __future__ import annotations

from pathlib import Path

import pytest

from service.workspace import WorkspaceArena, delete_artifact, delete_frames


def test_allocate_creates_isolated_directories(tmp_path: Path) -> None:
    arena = WorkspaceArena(tmp_path)
    first = arena.allocate()
    second = arena.allocate()

    assert first.scope_id != second.scope_id
    assert first.frames_dir.is_dir() and first.output_dir.is_dir()
    assert first.root_dir.parent == tmp_path / "requests"
    assert first.frames_dir != second.frames_dir


def test_allocate_refuses_reused_scope_id(tmp_path: Path) -> None:
    arena = WorkspaceArena(tmp_path, id_factory=lambda: "same")
    arena.allocate()
    with pytest.raises(FileExistsError):
        arena.allocate()


def test_scope_releases_on_error(tmp_path: Path) -> None:
    arena = WorkspaceArena(tmp_path)
    with pytest.raises(RuntimeError):
        with arena.scope() as scope:
            (scope.frames_dir / "frame0000.png").write_bytes(b"x")
            raise RuntimeError("render failed")
    assert not scope.root_dir.exists()


def test_release_is_idempotent(tmp_path: Path) -> None:
    arena = WorkspaceArena(tmp_path)
    scope = arena.allocate()
    assert arena.release(scope) is True
    assert arena.release(scope) is True


def test_delete_frames_counts_failures_and_continues(tmp_path: Path) -> None:
    (tmp_path / "frame0000.png").write_bytes(b"a")
    (tmp_path / "frame0001.png").write_bytes(b"b")
    (tmp_path / "nested").mkdir()

    failures = delete_frames(tmp_path)

    assert failures == 1
    assert [path.name for path in tmp_path.iterdir()] == ["nested"]


def test_delete_frames_missing_directory(tmp_path: Path) -> None:
    assert delete_frames(tmp_path / "absent") == 1


def test_delete_artifact_tolerates_missing_file(tmp_path: Path) -> None:
    assert delete_artifact(tmp_path / "video.mp4") is True
