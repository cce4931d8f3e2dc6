"""ffmpeg encoding of numbered PNG frame sequences into H.264 MP4."""

from __future__ import annotations

from concurrent import futures
import logging
from pathlib import Path
import shutil
import subprocess
import threading
from typing import Callable, Sequence

from domain.verse_video import (
    ENCODE_CANCELLED_CODE,
    ENCODE_FAILED_CODE,
    ENCODE_OUTPUT_MISSING_CODE,
    ENCODE_TIMEOUT_CODE,
    FFMPEG_NOT_FOUND_CODE,
    FFMPEG_UNSUPPORTED_CODE,
    EncodeError,
)

LOGGER = logging.getLogger("verse_video.video_encoder")

H264_CODEC = "libx264"
H264_PIXEL_FORMAT = "yuv420p"
STDERR_TAIL_CHARS = 2000


def build_encode_command(
    ffmpeg_path: str,
    frame_pattern: Path,
    fps: int,
    output_path: Path,
) -> list[str]:
    """Build the ffmpeg command for an image sequence at a fixed rate."""
    return [
        ffmpeg_path,
        "-y",
        "-hide_banner",
        "-loglevel",
        "error",
        "-framerate",
        str(fps),
        "-start_number",
        "0",
        "-i",
        str(frame_pattern),
        "-c:v",
        H264_CODEC,
        "-pix_fmt",
        H264_PIXEL_FORMAT,
        "-r",
        str(fps),
        "-movflags",
        "+faststart",
        str(output_path),
    ]


def validate_ffmpeg_capabilities(ffmpeg_path: str) -> None:
    """Ensure ffmpeg runs and supports libx264 with yuv420p."""
    resolved = shutil.which(ffmpeg_path)
    if not resolved:
        raise EncodeError(FFMPEG_NOT_FOUND_CODE, f"ffmpeg not found: {ffmpeg_path}")

    def query(args: Sequence[str]) -> str:
        try:
            result = subprocess.run(
                [resolved, "-hide_banner", *args],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                check=True,
            )
        except (OSError, subprocess.CalledProcessError) as exc:
            raise EncodeError(
                FFMPEG_NOT_FOUND_CODE, f"ffmpeg could not be executed: {exc}"
            ) from exc
        return result.stdout

    if H264_CODEC not in query(["-encoders"]):
        raise EncodeError(
            FFMPEG_UNSUPPORTED_CODE, f"ffmpeg does not support {H264_CODEC} encoder"
        )
    if H264_PIXEL_FORMAT not in query(["-pix_fmts"]):
        raise EncodeError(
            FFMPEG_UNSUPPORTED_CODE,
            f"ffmpeg does not support {H264_PIXEL_FORMAT} pixel format",
        )


class EncodeJob:
    """Handle on a running encode; its future settles exactly once."""

    def __init__(
        self,
        future: futures.Future[Path],
        canceller: Callable[[], None] | None = None,
    ) -> None:
        self.future = future
        self._canceller = canceller

    def cancel(self) -> None:
        if self._canceller is not None:
            self._canceller()
        self.future.cancel()

    def wait(self, timeout_seconds: float | None) -> Path:
        """Block until the encode settles; cancel it on timeout."""
        try:
            return self.future.result(timeout=timeout_seconds)
        except futures.TimeoutError as exc:
            self.cancel()
            raise EncodeError(
                ENCODE_TIMEOUT_CODE,
                f"encoder did not finish within {timeout_seconds} seconds",
            ) from exc
        except futures.CancelledError as exc:
            raise EncodeError(ENCODE_CANCELLED_CODE, "encode was cancelled") from exc
        except EncodeError:
            raise
        except Exception as exc:
            raise EncodeError(ENCODE_FAILED_CODE, f"encoder failed: {exc}") from exc


class _ProcessHandle:
    """Tracks the ffmpeg process so a waiter can kill it."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._process: subprocess.Popen[bytes] | None = None
        self.cancelled = False

    def start(self, command: Sequence[str]) -> subprocess.Popen[bytes]:
        with self._lock:
            if self.cancelled:
                raise EncodeError(ENCODE_CANCELLED_CODE, "encode was cancelled")
            self._process = subprocess.Popen(
                list(command),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
            return self._process

    def cancel(self) -> None:
        with self._lock:
            self.cancelled = True
            process = self._process
        if process is not None and process.poll() is None:
            LOGGER.warning("%s: killing ffmpeg pid=%s", ENCODE_CANCELLED_CODE, process.pid)
            process.kill()


class FfmpegVideoEncoder:
    """Runs ffmpeg on a bounded worker pool."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", max_workers: int = 2) -> None:
        self.ffmpeg_path = ffmpeg_path
        self._executor = futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="ffmpeg"
        )

    def encode(self, frame_pattern: Path, fps: int, output_path: Path) -> EncodeJob:
        """Start encoding; returns immediately."""
        command = build_encode_command(self.ffmpeg_path, frame_pattern, fps, output_path)
        handle = _ProcessHandle()
        future = self._executor.submit(self._run, command, output_path, handle)
        return EncodeJob(future, handle.cancel)

    def _run(
        self,
        command: Sequence[str],
        output_path: Path,
        handle: _ProcessHandle,
    ) -> Path:
        LOGGER.info("verse_video.encode.started output=%s", output_path)
        try:
            process = handle.start(command)
        except OSError as exc:
            raise EncodeError(
                FFMPEG_NOT_FOUND_CODE, f"ffmpeg could not be started: {exc}"
            ) from exc

        _, stderr_bytes = process.communicate()
        if handle.cancelled:
            raise EncodeError(ENCODE_CANCELLED_CODE, "encode was cancelled")
        if process.returncode != 0:
            stderr_text = stderr_bytes.decode("utf-8", errors="replace").strip()
            raise EncodeError(
                ENCODE_FAILED_CODE,
                f"ffmpeg failed with exit code {process.returncode}. "
                f"{stderr_text[-STDERR_TAIL_CHARS:]}",
            )
        if not output_path.is_file():
            raise EncodeError(
                ENCODE_OUTPUT_MISSING_CODE, f"ffmpeg produced no output: {output_path}"
            )
        LOGGER.info("verse_video.encode.completed output=%s", output_path)
        return output_path

    def close(self) -> None:
        self._executor.shutdown(wait=True, cancel_futures=True)
