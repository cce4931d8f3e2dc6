"""Integration tests for the verse video HTTP backend."""

from __future__ import annotations

from concurrent import futures
import os
from pathlib import Path
import subprocess
import sys
import threading
from typing import Iterator
from urllib.error import HTTPError
from urllib.request import urlopen

import pytest
from PIL import Image

from backend.server import (
    BACKEND_CONFIG_CODE,
    BACKEND_NOT_FOUND_CODE,
    DOWNLOAD_FILENAME,
    FAILURE_MESSAGE,
    build_server,
    load_config,
    parse_args,
)
from domain.verse_video import (
    DELIVERY_CODE,
    ENCODE_FAILED_CODE,
    FFMPEG_NOT_FOUND_CODE,
    EncodeError,
    TextItem,
    VideoSettings,
)
from service.frame_render import FrameComposer, load_font
from service.orchestrator import VerseVideoOrchestrator
from service.verse_source import DEFAULT_VERSES_URL
from service.video_encoder import EncodeJob
from service.workspace import WorkspaceArena

REPO_ROOT = Path(__file__).resolve().parents[1]
VIDEO_BYTES = b"\x00\x00\x00\x18ftypmp42fake"


class StaticVerseSource:
    def load(self) -> tuple[TextItem, ...]:
        return (TextItem(reference="Psalm 23:1", body="The Lord is my shepherd"),)


class FakeEncoder:
    """Settles immediately: writes the video, fails, or reports a file it never wrote."""

    def __init__(self, mode: str = "ok") -> None:
        self.mode = mode

    def encode(self, frame_pattern: Path, fps: int, output_path: Path) -> EncodeJob:
        future: futures.Future[Path] = futures.Future()
        if self.mode == "fail":
            future.set_exception(EncodeError(ENCODE_FAILED_CODE, "ffmpeg exited with code 1"))
        elif self.mode == "missing":
            future.set_result(output_path)
        else:
            output_path.write_bytes(VIDEO_BYTES)
            future.set_result(output_path)
        return EncodeJob(future)


def build_orchestrator(tmp_path: Path, encoder: FakeEncoder) -> VerseVideoOrchestrator:
    settings = VideoSettings(
        width=72,
        height=128,
        fps=2,
        duration_seconds=1.0,
        font_path=None,
        font_size=12,
        text_top=40,
        line_pitch=16,
        side_margin=6,
        shadow_blur=2.0,
    )
    background_path = tmp_path / "bg.png"
    Image.new("RGB", (8, 8), (30, 30, 30)).save(background_path)
    return VerseVideoOrchestrator(
        settings=settings,
        verse_source=StaticVerseSource(),
        background_paths=[background_path],
        composer=FrameComposer(settings, load_font(settings)),
        encoder=encoder,
        arena=WorkspaceArena(tmp_path / "data"),
    )


@pytest.fixture
def running_server(tmp_path: Path, request: pytest.FixtureRequest) -> Iterator[str]:
    """Serve an in-process backend on an ephemeral port."""
    encoder = FakeEncoder(getattr(request, "param", "ok"))
    server = build_server("127.0.0.1", 0, build_orchestrator(tmp_path, encoder))
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{server.server_address[1]}"
    finally:
        server.shutdown()
        server.server_close()
        thread.join(timeout=5)


def test_load_config_defaults() -> None:
    config = load_config(parse_args([]), {})
    assert config.port == 3000
    assert config.host == "0.0.0.0"
    assert config.verses_url == DEFAULT_VERSES_URL
    assert config.settings.max_line_width == 660
    assert config.settings.shadow_rgba == (0, 0, 0, 179)


def test_load_config_port_precedence() -> None:
    assert load_config(parse_args([]), {"PORT": "8080"}).port == 8080
    env = {"PORT": "8080", "VERSE_VIDEO_PORT": "9090"}
    assert load_config(parse_args([]), env).port == 9090
    assert load_config(parse_args(["--port", "7070"]), env).port == 7070


def test_load_config_reads_environment(tmp_path: Path) -> None:
    env = {
        "VERSE_VIDEO_DATA_DIR": str(tmp_path / "data"),
        "VERSE_VIDEO_BACKGROUNDS_DIR": str(tmp_path / "bg"),
        "VERSE_VIDEO_VERSES_URL": "https://example.test/verses.json",
        "VERSE_VIDEO_ENCODE_TIMEOUT_SECONDS": "45",
        "VERSE_VIDEO_RENDER_WORKERS": "4",
        "VERSE_VIDEO_TEXT_COLOR": "#ffff00",
    }
    config = load_config(parse_args(["--render-workers", "2"]), env)
    assert config.data_dir == tmp_path / "data"
    assert config.backgrounds_dir == tmp_path / "bg"
    assert config.verses_url == "https://example.test/verses.json"
    assert config.encode_timeout_seconds == 45.0
    assert config.render_workers == 2
    assert config.settings.text_rgba == (255, 255, 0, 255)


@pytest.mark.parametrize(
    "env",
    [
        {"VERSE_VIDEO_PORT": "not-a-port"},
        {"VERSE_VIDEO_PORT": "70000"},
        {"VERSE_VIDEO_ENCODER_WORKERS": "0"},
        {"VERSE_VIDEO_SHADOW_COLOR": "black"},
    ],
)
def test_load_config_rejects_invalid_values(env: dict[str, str]) -> None:
    with pytest.raises(ValueError):
        load_config(parse_args([]), env)


def test_ping(running_server: str) -> None:
    with urlopen(f"{running_server}/ping", timeout=10) as response:
        assert response.status == 200
        assert response.read() == b"pong"


def test_generate_video_streams_attachment(running_server: str) -> None:
    with urlopen(f"{running_server}/generate-video", timeout=60) as response:
        assert response.status == 200
        assert response.headers["Content-Type"] == "video/mp4"
        assert (
            response.headers["Content-Disposition"]
            == f'attachment; filename="{DOWNLOAD_FILENAME}"'
        )
        assert response.read() == VIDEO_BYTES


def test_generate_video_cleans_up_after_delivery(
    running_server: str, tmp_path: Path
) -> None:
    with urlopen(f"{running_server}/generate-video", timeout=60) as response:
        response.read()
    assert list((tmp_path / "data" / "requests").iterdir()) == []


@pytest.mark.parametrize("running_server", ["fail"], indirect=True)
def test_generate_video_reports_failure_code(running_server: str) -> None:
    with pytest.raises(HTTPError) as exc_info:
        urlopen(f"{running_server}/generate-video", timeout=60)
    assert exc_info.value.code == 500
    body = exc_info.value.read().decode("utf-8")
    assert body == f"{ENCODE_FAILED_CODE}: {FAILURE_MESSAGE}"


@pytest.mark.parametrize("running_server", ["missing"], indirect=True)
def test_generate_video_reports_delivery_failure_before_headers(
    running_server: str, tmp_path: Path
) -> None:
    with pytest.raises(HTTPError) as exc_info:
        urlopen(f"{running_server}/generate-video", timeout=60)
    assert exc_info.value.code == 500
    body = exc_info.value.read().decode("utf-8")
    assert body == f"{DELIVERY_CODE}: {FAILURE_MESSAGE}"
    assert list((tmp_path / "data" / "requests").iterdir()) == []


def test_unknown_path_returns_404(running_server: str) -> None:
    with pytest.raises(HTTPError) as exc_info:
        urlopen(f"{running_server}/nope", timeout=10)
    assert exc_info.value.code == 404
    assert exc_info.value.read().decode("utf-8").startswith(BACKEND_NOT_FOUND_CODE)


def run_backend(args: list[str], env_overrides: dict[str, str]) -> subprocess.CompletedProcess[str]:
    """Run the backend entrypoint as a subprocess."""
    env = os.environ.copy()
    env.update(env_overrides)
    return subprocess.run(
        [sys.executable, "-m", "backend.server", *args],
        cwd=REPO_ROOT,
        env=env,
        text=True,
        capture_output=True,
        timeout=60,
        check=False,
    )


def test_backend_exits_on_invalid_config() -> None:
    result = run_backend([], {"VERSE_VIDEO_PORT": "zero"})
    assert result.returncode == 1
    assert BACKEND_CONFIG_CODE in result.stderr


def test_backend_exits_without_ffmpeg(tmp_path: Path) -> None:
    result = run_backend(
        ["--ffmpeg-path", str(tmp_path / "no-ffmpeg"), "--port", "1"],
        {},
    )
    assert result.returncode == 1
    assert FFMPEG_NOT_FOUND_CODE in result.stderr
