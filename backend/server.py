"""HTTP backend that renders a random verse card into an MP4 download."""

from __future__ import annotations

import argparse
import dataclasses
import logging
import os
from pathlib import Path
import random
import shutil
import sys
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Sequence
from urllib.parse import urlparse

from domain.verse_video import (
    DELIVERY_CODE,
    UNHANDLED_CODE,
    DeliveryError,
    SettingsValidationError,
    VideoPipelineError,
    VideoSettings,
    parse_hex_color_to_rgba,
)
from service.frame_render import FrameComposer, list_background_files, load_font
from service.orchestrator import VerseVideoOrchestrator
from service.verse_source import (
    DEFAULT_FETCH_TIMEOUT_SECONDS,
    DEFAULT_VERSES_URL,
    HttpVerseSource,
)
from service.video_encoder import FfmpegVideoEncoder, validate_ffmpeg_capabilities
from service.workspace import WorkspaceArena

LOGGER = logging.getLogger("verse_video.backend")

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3000
DEFAULT_DATA_DIR = "data/verse_video"
DEFAULT_BACKGROUNDS_DIR = "backgrounds"
DEFAULT_FFMPEG_PATH = "ffmpeg"
DEFAULT_ENCODE_TIMEOUT_SECONDS = 300.0
DEFAULT_ENCODER_WORKERS = 2
DEFAULT_RENDER_WORKERS = 1
DEFAULT_FONT_PATH = "DejaVuSans-Bold.ttf"
DEFAULT_TEXT_COLOR = "#ffffff"
DEFAULT_SHADOW_COLOR = "#000000b3"

HOST_ENV = "VERSE_VIDEO_HOST"
PORT_ENV = "VERSE_VIDEO_PORT"
PLATFORM_PORT_ENV = "PORT"
DATA_DIR_ENV = "VERSE_VIDEO_DATA_DIR"
BACKGROUNDS_DIR_ENV = "VERSE_VIDEO_BACKGROUNDS_DIR"
VERSES_URL_ENV = "VERSE_VIDEO_VERSES_URL"
FETCH_TIMEOUT_ENV = "VERSE_VIDEO_FETCH_TIMEOUT_SECONDS"
FFMPEG_PATH_ENV = "VERSE_VIDEO_FFMPEG_PATH"
ENCODE_TIMEOUT_ENV = "VERSE_VIDEO_ENCODE_TIMEOUT_SECONDS"
ENCODER_WORKERS_ENV = "VERSE_VIDEO_ENCODER_WORKERS"
RENDER_WORKERS_ENV = "VERSE_VIDEO_RENDER_WORKERS"
FONT_PATH_ENV = "VERSE_VIDEO_FONT_PATH"
TEXT_COLOR_ENV = "VERSE_VIDEO_TEXT_COLOR"
SHADOW_COLOR_ENV = "VERSE_VIDEO_SHADOW_COLOR"
LOG_LEVEL_ENV = "VERSE_VIDEO_LOG_LEVEL"

BACKEND_CONFIG_CODE = "verse_video.config.invalid"
BACKEND_NOT_FOUND_CODE = "verse_video.path.not_found"

GENERATE_PATH = "/generate-video"
PING_PATH = "/ping"
DOWNLOAD_FILENAME = "bible-verse-video.mp4"
FAILURE_MESSAGE = "Video generation failed"
COPY_CHUNK_BYTES = 64 * 1024


@dataclasses.dataclass(frozen=True)
class BackendConfig:
    """Backend configuration."""

    host: str
    port: int
    data_dir: Path
    backgrounds_dir: Path
    verses_url: str
    fetch_timeout_seconds: float
    ffmpeg_path: str
    encode_timeout_seconds: float
    encoder_workers: int
    render_workers: int
    settings: VideoSettings

    def __post_init__(self) -> None:
        if not self.host.strip():
            raise ValueError("host must be non-empty")
        if self.port <= 0 or self.port > 65535:
            raise ValueError("port must be between 1 and 65535")
        if not self.verses_url.strip():
            raise ValueError("verses-url must be non-empty")
        if self.fetch_timeout_seconds <= 0:
            raise ValueError("fetch-timeout-seconds must be positive")
        if not self.ffmpeg_path.strip():
            raise ValueError("ffmpeg-path must be non-empty")
        if self.encode_timeout_seconds <= 0:
            raise ValueError("encode-timeout-seconds must be positive")
        if self.encoder_workers <= 0:
            raise ValueError("encoder-workers must be positive")
        if self.render_workers <= 0:
            raise ValueError("render-workers must be positive")


def parse_positive_int(raw_value: str, label: str) -> int:
    """Parse a positive integer from a string."""
    try:
        value = int(raw_value)
    except ValueError as exc:
        raise ValueError(f"{label} must be an integer") from exc
    if value <= 0:
        raise ValueError(f"{label} must be positive")
    return value


def parse_positive_float(raw_value: str, label: str) -> float:
    """Parse a positive float from a string."""
    try:
        value = float(raw_value)
    except ValueError as exc:
        raise ValueError(f"{label} must be a number") from exc
    if value <= 0:
        raise ValueError(f"{label} must be positive")
    return value


def read_env_int(env: dict[str, str], key: str, label: str, fallback: int) -> int:
    """Read a positive integer from the environment."""
    raw_value = env.get(key, "").strip()
    if not raw_value:
        return fallback
    return parse_positive_int(raw_value, label)


def read_env_float(
    env: dict[str, str], key: str, label: str, fallback: float
) -> float:
    """Read a positive float from the environment."""
    raw_value = env.get(key, "").strip()
    if not raw_value:
        return fallback
    return parse_positive_float(raw_value, label)


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    """Parse backend CLI arguments."""
    parser = argparse.ArgumentParser(prog="render_verse_video.py", add_help=True)
    parser.add_argument("--host", default=None)
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--data-dir", default=None)
    parser.add_argument("--backgrounds-dir", default=None)
    parser.add_argument("--verses-url", default=None)
    parser.add_argument("--fetch-timeout-seconds", type=float, default=None)
    parser.add_argument("--ffmpeg-path", default=None)
    parser.add_argument("--encode-timeout-seconds", type=float, default=None)
    parser.add_argument("--encoder-workers", type=int, default=None)
    parser.add_argument("--render-workers", type=int, default=None)
    parser.add_argument("--font-path", default=None)
    return parser.parse_args(list(argv))


def configure_logging(env: dict[str, str]) -> None:
    """Configure logging from environment."""
    level_name = env.get(LOG_LEVEL_ENV, "INFO").strip().upper()
    level = logging.INFO
    if level_name == "DEBUG":
        level = logging.DEBUG
    elif level_name == "WARNING":
        level = logging.WARNING
    elif level_name == "ERROR":
        level = logging.ERROR
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def load_config(args: argparse.Namespace, env: dict[str, str]) -> BackendConfig:
    """Load backend configuration from args and environment."""
    host = env.get(HOST_ENV, DEFAULT_HOST)
    if args.host:
        host = args.host
    port = read_env_int(env, PLATFORM_PORT_ENV, "port", DEFAULT_PORT)
    port = read_env_int(env, PORT_ENV, "port", port)
    if args.port is not None:
        port = args.port
    data_dir = Path(env.get(DATA_DIR_ENV, DEFAULT_DATA_DIR))
    if args.data_dir:
        data_dir = Path(args.data_dir)
    backgrounds_dir = Path(env.get(BACKGROUNDS_DIR_ENV, DEFAULT_BACKGROUNDS_DIR))
    if args.backgrounds_dir:
        backgrounds_dir = Path(args.backgrounds_dir)
    verses_url = env.get(VERSES_URL_ENV, "").strip() or DEFAULT_VERSES_URL
    if args.verses_url:
        verses_url = args.verses_url
    fetch_timeout = read_env_float(
        env, FETCH_TIMEOUT_ENV, "fetch-timeout-seconds", DEFAULT_FETCH_TIMEOUT_SECONDS
    )
    if args.fetch_timeout_seconds is not None:
        fetch_timeout = args.fetch_timeout_seconds
    ffmpeg_path = env.get(FFMPEG_PATH_ENV, DEFAULT_FFMPEG_PATH)
    if args.ffmpeg_path is not None:
        ffmpeg_path = args.ffmpeg_path
    encode_timeout = read_env_float(
        env,
        ENCODE_TIMEOUT_ENV,
        "encode-timeout-seconds",
        DEFAULT_ENCODE_TIMEOUT_SECONDS,
    )
    if args.encode_timeout_seconds is not None:
        encode_timeout = args.encode_timeout_seconds
    encoder_workers = read_env_int(
        env, ENCODER_WORKERS_ENV, "encoder-workers", DEFAULT_ENCODER_WORKERS
    )
    if args.encoder_workers is not None:
        encoder_workers = args.encoder_workers
    render_workers = read_env_int(
        env, RENDER_WORKERS_ENV, "render-workers", DEFAULT_RENDER_WORKERS
    )
    if args.render_workers is not None:
        render_workers = args.render_workers
    font_path = env.get(FONT_PATH_ENV, "").strip() or DEFAULT_FONT_PATH
    if args.font_path:
        font_path = args.font_path
    try:
        settings = VideoSettings(
            font_path=font_path,
            text_rgba=parse_hex_color_to_rgba(
                env.get(TEXT_COLOR_ENV, "").strip() or DEFAULT_TEXT_COLOR
            ),
            shadow_rgba=parse_hex_color_to_rgba(
                env.get(SHADOW_COLOR_ENV, "").strip() or DEFAULT_SHADOW_COLOR
            ),
        )
    except SettingsValidationError as exc:
        raise ValueError(f"{exc.code}: {exc}") from exc
    return BackendConfig(
        host=str(host),
        port=int(port),
        data_dir=data_dir,
        backgrounds_dir=backgrounds_dir,
        verses_url=str(verses_url),
        fetch_timeout_seconds=float(fetch_timeout),
        ffmpeg_path=str(ffmpeg_path),
        encode_timeout_seconds=float(encode_timeout),
        encoder_workers=int(encoder_workers),
        render_workers=int(render_workers),
        settings=settings,
    )


def build_handler(orchestrator: VerseVideoOrchestrator) -> type[BaseHTTPRequestHandler]:
    """Build the request handler bound to an orchestrator."""

    class VerseVideoHandler(BaseHTTPRequestHandler):
        """HTTP request handler for the verse video service."""

        protocol_version = "HTTP/1.1"
        video_started = False

        def log_message(self, format: str, *args: object) -> None:
            LOGGER.info("%s - %s", self.client_address[0], format % args)

        def send_text(self, status: HTTPStatus, message: str) -> None:
            body = message.encode("utf-8")
            self.send_response(status)
            self.send_header("Content-Type", "text/plain; charset=utf-8")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def send_video(self, video_path: Path) -> None:
            try:
                size = video_path.stat().st_size
                with video_path.open("rb") as handle:
                    self.send_response(HTTPStatus.OK)
                    self.video_started = True
                    self.send_header("Content-Type", "video/mp4")
                    self.send_header(
                        "Content-Disposition",
                        f'attachment; filename="{DOWNLOAD_FILENAME}"',
                    )
                    self.send_header("Content-Length", str(size))
                    self.end_headers()
                    shutil.copyfileobj(handle, self.wfile, COPY_CHUNK_BYTES)
                    self.wfile.flush()
            except OSError as exc:
                self.close_connection = True
                raise DeliveryError(
                    DELIVERY_CODE, f"failed to stream {video_path.name}: {exc}"
                ) from exc

        def do_GET(self) -> None:
            parsed = urlparse(self.path)
            if parsed.path == PING_PATH:
                self.send_text(HTTPStatus.OK, "pong")
                return
            if parsed.path == GENERATE_PATH:
                self.generate_video()
                return
            self.send_text(HTTPStatus.NOT_FOUND, f"{BACKEND_NOT_FOUND_CODE}: not found")

        def generate_video(self) -> None:
            self.video_started = False
            try:
                result = orchestrator.run(self.send_video)
            except VideoPipelineError as exc:
                self.send_text(
                    HTTPStatus.INTERNAL_SERVER_ERROR, f"{exc.code}: {FAILURE_MESSAGE}"
                )
                return
            except Exception as exc:
                LOGGER.exception("%s: %s", UNHANDLED_CODE, str(exc).strip())
                self.send_text(
                    HTTPStatus.INTERNAL_SERVER_ERROR, f"{UNHANDLED_CODE}: {FAILURE_MESSAGE}"
                )
                return
            if not result.delivered and not self.video_started:
                self.send_text(
                    HTTPStatus.INTERNAL_SERVER_ERROR, f"{DELIVERY_CODE}: {FAILURE_MESSAGE}"
                )

    return VerseVideoHandler


def build_server(
    host: str, port: int, orchestrator: VerseVideoOrchestrator
) -> ThreadingHTTPServer:
    """Bind the HTTP server without starting it."""
    return ThreadingHTTPServer((host, port), build_handler(orchestrator))


def serve(config: BackendConfig) -> None:
    """Run the backend HTTP server."""
    validate_ffmpeg_capabilities(config.ffmpeg_path)
    background_paths = list_background_files(config.backgrounds_dir)
    config.data_dir.mkdir(parents=True, exist_ok=True)
    encoder = FfmpegVideoEncoder(
        ffmpeg_path=config.ffmpeg_path, max_workers=config.encoder_workers
    )
    orchestrator = VerseVideoOrchestrator(
        settings=config.settings,
        verse_source=HttpVerseSource(config.verses_url, config.fetch_timeout_seconds),
        background_paths=background_paths,
        composer=FrameComposer(config.settings, load_font(config.settings)),
        encoder=encoder,
        arena=WorkspaceArena(config.data_dir),
        rng=random.Random(),
        render_workers=config.render_workers,
        encode_timeout_seconds=config.encode_timeout_seconds,
    )
    server = build_server(config.host, config.port, orchestrator)
    LOGGER.info(
        "verse_video.server.started address=%s:%s backgrounds=%s",
        config.host,
        config.port,
        len(background_paths),
    )
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        LOGGER.info("verse_video.server.shutdown: received interrupt")
    finally:
        server.server_close()
        encoder.close()


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entrypoint for the backend server."""
    env = dict(os.environ)
    configure_logging(env)
    try:
        args = parse_args(list(argv) if argv is not None else sys.argv[1:])
        config = load_config(args, env)
    except ValueError as exc:
        LOGGER.error("%s: %s", BACKEND_CONFIG_CODE, exc)
        return 1
    try:
        serve(config)
    except VideoPipelineError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
