"""Per-request scratch storage for frames and the encoded artifact."""

from __future__ import annotations

import contextlib
from dataclasses import dataclass
import logging
from pathlib import Path
import shutil
from typing import Callable, Iterator
import uuid

from domain.verse_video import CLEANUP_CODE, CleanupError

LOGGER = logging.getLogger("verse_video.workspace")

REQUESTS_DIR_NAME = "requests"
FRAMES_DIR_NAME = "frames"
OUTPUT_DIR_NAME = "output"


@dataclass(frozen=True)
class RequestScope:
    """Isolated directories owned by a single request."""

    scope_id: str
    root_dir: Path
    frames_dir: Path
    output_dir: Path


class WorkspaceArena:
    """Allocates one directory per request and releases it afterwards."""

    def __init__(
        self,
        root_dir: Path,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        self.root_dir = root_dir
        self._id_factory = id_factory

    def allocate(self) -> RequestScope:
        scope_id = self._id_factory()
        scope_root = self.root_dir / REQUESTS_DIR_NAME / scope_id
        frames_dir = scope_root / FRAMES_DIR_NAME
        output_dir = scope_root / OUTPUT_DIR_NAME
        # exist_ok=False: a reused id would mix two requests' frames
        scope_root.mkdir(parents=True, exist_ok=False)
        frames_dir.mkdir()
        output_dir.mkdir()
        return RequestScope(
            scope_id=scope_id,
            root_dir=scope_root,
            frames_dir=frames_dir,
            output_dir=output_dir,
        )

    def release(self, scope: RequestScope) -> bool:
        """Remove the scope; failures are logged, never raised."""
        if not scope.root_dir.exists():
            return True
        try:
            shutil.rmtree(scope.root_dir)
        except OSError as exc:
            log_cleanup_error(
                CleanupError(CLEANUP_CODE, f"failed to remove {scope.root_dir}: {exc}")
            )
            return False
        return True

    @contextlib.contextmanager
    def scope(self) -> Iterator[RequestScope]:
        request_scope = self.allocate()
        try:
            yield request_scope
        finally:
            self.release(request_scope)


def log_cleanup_error(error: CleanupError) -> None:
    LOGGER.warning("%s: %s", error.code, str(error).strip())


def delete_artifact(path: Path) -> bool:
    """Delete a single file; a failure is logged and reported as False."""
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        log_cleanup_error(CleanupError(CLEANUP_CODE, f"failed to delete {path}: {exc}"))
        return False
    return True


def delete_frames(frames_dir: Path) -> int:
    """Delete every file in the frames directory; returns the failure count."""
    failures = 0
    try:
        entries = list(frames_dir.iterdir())
    except OSError as exc:
        log_cleanup_error(
            CleanupError(CLEANUP_CODE, f"failed to list {frames_dir}: {exc}")
        )
        return 1
    for entry in entries:
        if not delete_artifact(entry):
            failures += 1
    return failures
