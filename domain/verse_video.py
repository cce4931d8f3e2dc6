"""Domain types, error codes and text layout for verse_video."""

from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Callable, Tuple

INVALID_SETTINGS_CODE = "verse_video.settings.invalid"
INVALID_COLOR_CODE = "verse_video.settings.invalid_color"
INVALID_TEXT_ITEM_CODE = "verse_video.input.invalid_text_item"
INPUT_FETCH_CODE = "verse_video.input.fetch_failed"
INPUT_PARSE_CODE = "verse_video.input.malformed"
INPUT_EMPTY_CODE = "verse_video.input.empty"
BACKGROUND_MISSING_CODE = "verse_video.asset.background_missing"
BACKGROUND_LOAD_CODE = "verse_video.asset.background_unreadable"
FONT_LOAD_CODE = "verse_video.render.font_unloadable"
FRAME_COMPOSE_CODE = "verse_video.render.compose_failed"
FRAME_WRITE_CODE = "verse_video.render.frame_write_failed"
FFMPEG_NOT_FOUND_CODE = "verse_video.encode.ffmpeg_not_found"
FFMPEG_UNSUPPORTED_CODE = "verse_video.encode.ffmpeg_unsupported"
ENCODE_FAILED_CODE = "verse_video.encode.failed"
ENCODE_TIMEOUT_CODE = "verse_video.encode.timeout"
ENCODE_CANCELLED_CODE = "verse_video.encode.cancelled"
ENCODE_OUTPUT_MISSING_CODE = "verse_video.encode.output_missing"
DELIVERY_CODE = "verse_video.delivery.failed"
CLEANUP_CODE = "verse_video.cleanup.failed"
UNHANDLED_CODE = "verse_video.unhandled_error"

REFERENCE_SEPARATOR = " \u2014 "
WORD_SEPARATOR = " "
# line breaks and tabs in feed text become word breaks; NBSP stays inside a word
WORD_BREAK_PATTERN = re.compile(r"[ \t\n\r\f\v]+")
FRAME_PREFIX = "frame"
FRAME_EXTENSION = "png"
MIN_FRAME_PAD_WIDTH = 4


class SettingsValidationError(ValueError):
    """Validation error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class VideoPipelineError(RuntimeError):
    """Runtime error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class InputFetchError(VideoPipelineError):
    """The text source was unreachable or malformed."""


class AssetLoadError(VideoPipelineError):
    """A background image was missing or unreadable."""


class RenderError(VideoPipelineError):
    """A frame could not be composed or stored."""


class EncodeError(VideoPipelineError):
    """The encoder reported a failure or never completed."""


class DeliveryError(VideoPipelineError):
    """The encoded artifact could not be streamed to the caller."""


class CleanupError(VideoPipelineError):
    """A request artifact could not be removed."""


@dataclass(frozen=True)
class TextItem:
    """A single verse: its reference and its body text."""

    reference: str
    body: str

    def __post_init__(self) -> None:
        if not isinstance(self.reference, str) or not self.reference.strip():
            raise SettingsValidationError(
                INVALID_TEXT_ITEM_CODE, "reference must be a non-empty string"
            )
        if not isinstance(self.body, str) or not self.body.strip():
            raise SettingsValidationError(
                INVALID_TEXT_ITEM_CODE, "body must be a non-empty string"
            )

    @property
    def display_text(self) -> str:
        """Text drawn on the card: reference, separator, body."""
        return f"{self.reference}{REFERENCE_SEPARATOR}{self.body}"


@dataclass(frozen=True)
class VideoSettings:
    """Validated render and encode constants for one video."""

    width: int = 720
    height: int = 1280
    fps: int = 15
    duration_seconds: float = 10.0
    font_path: str | None = "DejaVuSans-Bold.ttf"
    font_size: int = 50
    text_rgba: Tuple[int, int, int, int] = (255, 255, 255, 255)
    shadow_rgba: Tuple[int, int, int, int] = (0, 0, 0, 179)
    shadow_blur: float = 8.0
    text_top: int = 450
    line_pitch: int = 70
    side_margin: int = 30

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise SettingsValidationError(
                INVALID_SETTINGS_CODE, "width and height must be positive"
            )
        if self.fps <= 0:
            raise SettingsValidationError(INVALID_SETTINGS_CODE, "fps must be positive")
        if self.duration_seconds <= 0:
            raise SettingsValidationError(
                INVALID_SETTINGS_CODE, "duration_seconds must be positive"
            )
        if self.font_path is not None and not self.font_path.strip():
            raise SettingsValidationError(
                INVALID_SETTINGS_CODE, "font_path must be non-empty"
            )
        if self.font_size <= 0:
            raise SettingsValidationError(
                INVALID_SETTINGS_CODE, "font_size must be positive"
            )
        if self.shadow_blur < 0:
            raise SettingsValidationError(
                INVALID_SETTINGS_CODE, "shadow_blur must be non-negative"
            )
        if self.line_pitch <= 0:
            raise SettingsValidationError(
                INVALID_SETTINGS_CODE, "line_pitch must be positive"
            )
        if self.side_margin < 0 or self.side_margin * 2 >= self.width:
            raise SettingsValidationError(
                INVALID_SETTINGS_CODE, "side_margin leaves no room for text"
            )
        for color in (self.text_rgba, self.shadow_rgba):
            if len(color) != 4 or any(channel < 0 or channel > 255 for channel in color):
                raise SettingsValidationError(
                    INVALID_COLOR_CODE, f"color channel out of range: {color!r}"
                )

    @property
    def max_line_width(self) -> int:
        return self.width - 2 * self.side_margin

    @property
    def total_frames(self) -> int:
        return compute_total_frames(self.fps, self.duration_seconds)


def parse_hex_color_to_rgba(color_value: str) -> Tuple[int, int, int, int]:
    """Parse #RRGGBB or #RRGGBBAA into an RGBA tuple."""
    normalized = color_value.strip()
    match_value = re.fullmatch(r"#([0-9a-fA-F]{6})([0-9a-fA-F]{2})?", normalized)
    if not match_value:
        raise SettingsValidationError(
            INVALID_COLOR_CODE,
            f"invalid color value: {color_value!r}",
        )

    rgb_hex = match_value.group(1)
    alpha_hex = match_value.group(2) or "ff"
    return (
        int(rgb_hex[0:2], 16),
        int(rgb_hex[2:4], 16),
        int(rgb_hex[4:6], 16),
        int(alpha_hex, 16),
    )


def compute_total_frames(fps: int, duration_seconds: float) -> int:
    """Compute total frames for a video duration."""
    total_frames = int(round(duration_seconds * fps))
    if total_frames <= 0:
        raise SettingsValidationError(
            INVALID_SETTINGS_CODE, "duration and fps produce zero frames"
        )
    return total_frames


def compute_frame_pad_width(frame_count: int) -> int:
    """Digits needed so lexical frame order equals numeric order."""
    if frame_count <= 0:
        raise SettingsValidationError(
            INVALID_SETTINGS_CODE, "frame_count must be positive"
        )
    return max(MIN_FRAME_PAD_WIDTH, len(str(frame_count - 1)))


def frame_filename(index: int, pad_width: int) -> str:
    """Return the file name for a frame index, e.g. frame0007.png."""
    if index < 0:
        raise SettingsValidationError(
            INVALID_SETTINGS_CODE, "frame index must be non-negative"
        )
    return f"{FRAME_PREFIX}{index:0{pad_width}d}.{FRAME_EXTENSION}"


def frame_pattern(pad_width: int) -> str:
    """Return the printf-style pattern ffmpeg uses to read the frames."""
    return f"{FRAME_PREFIX}%0{pad_width}d.{FRAME_EXTENSION}"


def split_words(text_value: str) -> Tuple[str, ...]:
    """Split text on ASCII whitespace, dropping empty tokens."""
    return tuple(word for word in WORD_BREAK_PATTERN.split(text_value) if word)


def wrap_text(
    text_value: str,
    max_width: float,
    measure: Callable[[str], float],
) -> Tuple[str, ...]:
    """Greedy word wrap; every line keeps its trailing separator.

    The accumulated line is always emitted at the end, so empty input
    yields a single empty line. A word wider than ``max_width`` is never
    split and overflows on its own line.
    """
    lines: list[str] = []
    line = ""
    for word in split_words(text_value):
        candidate = f"{line}{word}{WORD_SEPARATOR}"
        if measure(candidate) > max_width and line:
            lines.append(line)
            line = f"{word}{WORD_SEPARATOR}"
        else:
            line = candidate
    lines.append(line)
    return tuple(lines)
