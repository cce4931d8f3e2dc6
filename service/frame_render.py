"""Frame composition and numbered frame sequence output for verse_video."""

from __future__ import annotations

from concurrent import futures
from dataclasses import dataclass
import logging
import os
from pathlib import Path
from typing import Protocol, Sequence

from PIL import Image, ImageDraw, ImageFilter, ImageFont

from domain.verse_video import (
    BACKGROUND_LOAD_CODE,
    BACKGROUND_MISSING_CODE,
    FONT_LOAD_CODE,
    FRAME_COMPOSE_CODE,
    FRAME_WRITE_CODE,
    AssetLoadError,
    RenderError,
    VideoSettings,
    compute_frame_pad_width,
    frame_filename,
    frame_pattern,
)

LOGGER = logging.getLogger("verse_video.frame_render")

BACKGROUND_SUFFIXES = (".jpg", ".jpeg", ".png", ".webp")
TEXT_ANCHOR = "ms"


@dataclass(frozen=True)
class Frame:
    """One rendered still of the output video."""

    index: int
    image: Image.Image


class FrameSink(Protocol):
    """Durable, index-keyed storage for frames."""

    def write(self, frame: Frame) -> None: ...


def list_background_files(backgrounds_dir: str | os.PathLike[str]) -> list[Path]:
    """List background images from the backgrounds directory."""
    directory = Path(backgrounds_dir)
    if not directory.is_dir():
        raise AssetLoadError(
            BACKGROUND_MISSING_CODE,
            f"backgrounds directory does not exist: {directory}",
        )

    background_files = [
        entry
        for entry in sorted(directory.iterdir())
        if entry.is_file() and entry.suffix.lower() in BACKGROUND_SUFFIXES
    ]
    if not background_files:
        raise AssetLoadError(
            BACKGROUND_MISSING_CODE,
            f"no background images found in {directory}",
        )
    return background_files


def load_background_image(image_path: str | os.PathLike[str]) -> Image.Image:
    """Load a background image as RGBA."""
    try:
        with Image.open(image_path) as opened:
            image = opened.convert("RGBA")
    except FileNotFoundError as exc:
        raise AssetLoadError(
            BACKGROUND_MISSING_CODE, f"background image not found: {image_path}"
        ) from exc
    except Exception as exc:
        raise AssetLoadError(
            BACKGROUND_LOAD_CODE, f"failed to read background image: {image_path}"
        ) from exc
    return image


def load_font(settings: VideoSettings) -> ImageFont.FreeTypeFont:
    """Load the card font; None selects Pillow's bundled font."""
    try:
        if settings.font_path is None:
            return ImageFont.load_default(size=settings.font_size)
        return ImageFont.truetype(settings.font_path, size=settings.font_size)
    except Exception as exc:
        raise RenderError(
            FONT_LOAD_CODE,
            f"failed to load font {settings.font_path} at size {settings.font_size}",
        ) from exc


class FrameComposer:
    """Draws wrapped text with a drop shadow over a stretched background."""

    def __init__(self, settings: VideoSettings, font: ImageFont.FreeTypeFont) -> None:
        self.settings = settings
        self.font = font
        self._measure_draw = ImageDraw.Draw(Image.new("RGBA", (1, 1)))

    def measure(self, text_value: str) -> float:
        """Measure text width using font metrics."""
        if not text_value:
            return 0.0
        try:
            return float(self._measure_draw.textlength(text_value, font=self.font))
        except Exception as exc:
            raise RenderError(
                FRAME_COMPOSE_CODE, f"failed to measure text {text_value[:40]!r}: {exc}"
            ) from exc

    def line_positions(self, line_count: int) -> list[tuple[float, int]]:
        """Baseline anchor for each line, centred horizontally."""
        center_x = self.settings.width / 2.0
        return [
            (center_x, self.settings.text_top + index * self.settings.line_pitch)
            for index in range(line_count)
        ]

    def compose(self, background: Image.Image, lines: Sequence[str]) -> Image.Image:
        """Render one frame; the background is stretched to the canvas."""
        size = (self.settings.width, self.settings.height)
        try:
            canvas = background.convert("RGBA").resize(size, Image.Resampling.BILINEAR)
            positions = self.line_positions(len(lines))

            if self.settings.shadow_blur > 0 and self.settings.shadow_rgba[3] > 0:
                shadow = Image.new("RGBA", size, (0, 0, 0, 0))
                shadow_draw = ImageDraw.Draw(shadow)
                for line, position in zip(lines, positions):
                    shadow_draw.text(
                        position,
                        line,
                        font=self.font,
                        fill=self.settings.shadow_rgba,
                        anchor=TEXT_ANCHOR,
                    )
                # canvas shadowBlur is twice the gaussian sigma
                shadow = shadow.filter(
                    ImageFilter.GaussianBlur(radius=self.settings.shadow_blur / 2.0)
                )
                canvas = Image.alpha_composite(canvas, shadow)

            text_draw = ImageDraw.Draw(canvas)
            for line, position in zip(lines, positions):
                text_draw.text(
                    position,
                    line,
                    font=self.font,
                    fill=self.settings.text_rgba,
                    anchor=TEXT_ANCHOR,
                )
        except Exception as exc:
            raise RenderError(FRAME_COMPOSE_CODE, f"frame composition failed: {exc}") from exc
        return canvas.convert("RGB")


class DirectoryFrameSink:
    """Writes frames as zero-padded PNG files into one directory."""

    def __init__(self, directory: Path, frame_count: int) -> None:
        self.directory = directory
        self.pad_width = compute_frame_pad_width(frame_count)

    @property
    def pattern_path(self) -> Path:
        return self.directory / frame_pattern(self.pad_width)

    def path_for(self, index: int) -> Path:
        return self.directory / frame_filename(index, self.pad_width)

    def write(self, frame: Frame) -> None:
        target_path = self.path_for(frame.index)
        try:
            frame.image.save(target_path, format="PNG")
        except OSError as exc:
            raise RenderError(
                FRAME_WRITE_CODE, f"failed to write frame {target_path}: {exc}"
            ) from exc


def render_frame(
    composer: FrameComposer,
    background: Image.Image,
    lines: Sequence[str],
    index: int,
    sink: FrameSink,
) -> None:
    """Compose and store a single frame."""
    sink.write(Frame(index=index, image=composer.compose(background, lines)))


def generate_frames(
    composer: FrameComposer,
    background: Image.Image,
    lines: Sequence[str],
    frame_count: int,
    sink: FrameSink,
    max_workers: int = 1,
) -> int:
    """Render frames 0..frame_count-1 into the sink.

    Any failed frame aborts the whole sequence; frames already written are
    left for the caller's scope cleanup.
    """
    if frame_count <= 0:
        raise RenderError(FRAME_COMPOSE_CODE, "frame_count must be positive")

    if max_workers <= 1:
        for index in range(frame_count):
            render_frame(composer, background, lines, index, sink)
        return frame_count

    with futures.ThreadPoolExecutor(
        max_workers=max_workers, thread_name_prefix="frame-render"
    ) as executor:
        pending = [
            executor.submit(render_frame, composer, background, lines, index, sink)
            for index in range(frame_count)
        ]
        try:
            for future in futures.as_completed(pending):
                future.result()
        except Exception:
            for future in pending:
                future.cancel()
            raise
    return frame_count
