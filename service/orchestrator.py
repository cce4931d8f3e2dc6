"""Per-request control flow: select, render, encode, deliver, clean up."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
from pathlib import Path
import random
import time
from typing import Callable, Protocol, Sequence

from domain.verse_video import (
    BACKGROUND_MISSING_CODE,
    DELIVERY_CODE,
    INPUT_EMPTY_CODE,
    AssetLoadError,
    DeliveryError,
    InputFetchError,
    TextItem,
    VideoPipelineError,
    VideoSettings,
    wrap_text,
)
from service.frame_render import (
    DirectoryFrameSink,
    FrameComposer,
    generate_frames,
    load_background_image,
)
from service.video_encoder import EncodeJob
from service.workspace import WorkspaceArena, delete_artifact, delete_frames

LOGGER = logging.getLogger("verse_video.orchestrator")

DEFAULT_ENCODE_TIMEOUT_SECONDS = 300.0
OUTPUT_PREFIX = "bible-video"


class PipelineStage(str, Enum):
    """Stages of one video request."""

    SELECT_INPUTS = "select_inputs"
    LAYOUT_AND_RENDER_FRAMES = "layout_and_render_frames"
    ENCODE = "encode"
    DELIVER_AND_CLEANUP = "deliver_and_cleanup"
    FAILED = "failed"


class VerseSource(Protocol):
    def load(self) -> Sequence[TextItem]: ...


class VideoEncoder(Protocol):
    def encode(self, frame_pattern: Path, fps: int, output_path: Path) -> EncodeJob: ...


@dataclass(frozen=True)
class PipelineResult:
    """Outcome of a request that reached delivery."""

    scope_id: str
    item: TextItem
    background_path: Path
    lines: tuple[str, ...]
    frame_count: int
    video_name: str
    delivered: bool
    cleanup_failures: int


class VerseVideoOrchestrator:
    """Runs the linear pipeline for one request at a time per call."""

    def __init__(
        self,
        settings: VideoSettings,
        verse_source: VerseSource,
        background_paths: Sequence[Path],
        composer: FrameComposer,
        encoder: VideoEncoder,
        arena: WorkspaceArena,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.time,
        render_workers: int = 1,
        encode_timeout_seconds: float | None = DEFAULT_ENCODE_TIMEOUT_SECONDS,
    ) -> None:
        self.settings = settings
        self.verse_source = verse_source
        self.background_paths = tuple(background_paths)
        self.composer = composer
        self.encoder = encoder
        self.arena = arena
        self.rng = rng if rng is not None else random.Random()
        self.clock = clock
        self.render_workers = render_workers
        self.encode_timeout_seconds = encode_timeout_seconds

    def select_inputs(self) -> tuple[TextItem, Path]:
        """Draw one verse and one background, independently."""
        items = tuple(self.verse_source.load())
        if not items:
            raise InputFetchError(INPUT_EMPTY_CODE, "verse feed contains no items")
        if not self.background_paths:
            raise AssetLoadError(BACKGROUND_MISSING_CODE, "no background images configured")
        item = items[self.rng.randrange(len(items))]
        background_path = self.background_paths[self.rng.randrange(len(self.background_paths))]
        return item, background_path

    def layout(self, item: TextItem) -> tuple[str, ...]:
        return wrap_text(
            item.display_text, self.settings.max_line_width, self.composer.measure
        )

    def output_name(self) -> str:
        return f"{OUTPUT_PREFIX}-{int(self.clock() * 1000)}.mp4"

    def run(self, deliver: Callable[[Path], None]) -> PipelineResult:
        """Produce one video and hand it to ``deliver``.

        Pipeline errors are logged and re-raised; the request scope is
        released on every exit path.
        """
        stage = PipelineStage.SELECT_INPUTS
        with self.arena.scope() as scope:
            try:
                LOGGER.info("verse_video.stage stage=%s scope=%s", stage.value, scope.scope_id)
                item, background_path = self.select_inputs()

                stage = PipelineStage.LAYOUT_AND_RENDER_FRAMES
                LOGGER.info(
                    "verse_video.stage stage=%s scope=%s reference=%r background=%s",
                    stage.value,
                    scope.scope_id,
                    item.reference,
                    background_path.name,
                )
                background = load_background_image(background_path)
                lines = self.layout(item)
                frame_count = self.settings.total_frames
                sink = DirectoryFrameSink(scope.frames_dir, frame_count)
                generate_frames(
                    self.composer,
                    background,
                    lines,
                    frame_count,
                    sink,
                    max_workers=self.render_workers,
                )

                stage = PipelineStage.ENCODE
                video_name = self.output_name()
                output_path = scope.output_dir / video_name
                LOGGER.info(
                    "verse_video.stage stage=%s scope=%s frames=%s",
                    stage.value,
                    scope.scope_id,
                    frame_count,
                )
                job = self.encoder.encode(sink.pattern_path, self.settings.fps, output_path)
                video_path = job.wait(self.encode_timeout_seconds)
                cleanup_failures = delete_frames(scope.frames_dir)
            except VideoPipelineError as exc:
                LOGGER.error(
                    "%s: %s stage=%s scope=%s",
                    exc.code,
                    str(exc).strip(),
                    stage.value,
                    scope.scope_id,
                )
                LOGGER.info(
                    "verse_video.stage stage=%s scope=%s",
                    PipelineStage.FAILED.value,
                    scope.scope_id,
                )
                raise

            stage = PipelineStage.DELIVER_AND_CLEANUP
            LOGGER.info("verse_video.stage stage=%s scope=%s", stage.value, scope.scope_id)
            delivered = True
            try:
                deliver(video_path)
            except DeliveryError as exc:
                delivered = False
                LOGGER.error("%s: %s scope=%s", exc.code, str(exc).strip(), scope.scope_id)
            except OSError as exc:
                delivered = False
                LOGGER.error("%s: %s scope=%s", DELIVERY_CODE, str(exc).strip(), scope.scope_id)
            if not delete_artifact(video_path):
                cleanup_failures += 1

        return PipelineResult(
            scope_id=scope.scope_id,
            item=item,
            background_path=background_path,
            lines=lines,
            frame_count=frame_count,
            video_name=video_name,
            delivered=delivered,
            cleanup_failures=cleanup_failures,
        )
