from __future__ import annotations

import json
import subprocess
from pathlib import Path
from types import SimpleNamespace

import pytest

from lms.errors import MediaToolError
from lms.services import media_tools
from lms.services.media_tools import FFmpegMediaTool, parse_progress_line, trim_tail


class FakeProcess:
    def __init__(self, command, *, stdout_lines, stderr_lines, returncode=0, hang=False, write_output=True):
        self.command = command
        self.stdout = list(stdout_lines)
        self.stderr = list(stderr_lines)
        self.returncode = returncode
        self.hang = hang
        self.killed = False
        if write_output:
            Path(command[-1]).write_bytes(b"encoded")

    def wait(self, timeout=None):
        if self.hang and not self.killed:
            raise subprocess.TimeoutExpired(self.command, timeout)
        return self.returncode

    def kill(self):
        self.killed = True


def _probe_output(**format_overrides):
    fmt = {"duration": "12.5", "format_name": "mov,mp4,m4a"}
    fmt.update(format_overrides)
    return json.dumps(
        {
            "format": fmt,
            "streams": [
                {"codec_type": "audio", "codec_name": "aac"},
                {"codec_type": "video", "codec_name": "h264", "width": 1280, "height": 720},
            ],
        }
    )


@pytest.fixture()
def source(tmp_path: Path) -> Path:
    path = tmp_path / "original.mp4"
    path.write_bytes(b"raw video")
    return path


def test_parse_progress_line() -> None:
    assert parse_progress_line("out_time_ms=6000000\n", 12.0) == 50
    assert parse_progress_line("out_time_ms=99000000", 12.0) == 99
    assert parse_progress_line("frame=10", 12.0) is None
    assert parse_progress_line("out_time_ms=1000000", 0) is None


def test_trim_tail_keeps_the_end() -> None:
    assert trim_tail("") == ""
    assert trim_tail("abcdef", limit=3) == "def"


def test_extract_metadata(monkeypatch, source) -> None:
    captured = {}

    def fake_run(command, **kwargs):
        captured["command"] = command
        return SimpleNamespace(returncode=0, stdout=_probe_output(), stderr="")

    monkeypatch.setattr(media_tools.subprocess, "run", fake_run)

    metadata = FFmpegMediaTool(ffprobe_binary="/opt/ffprobe").extract_metadata(source)

    assert captured["command"][0] == "/opt/ffprobe"
    assert metadata.duration == 12.5
    assert metadata.resolution == "1280x720"
    assert metadata.codec == "h264"
    assert metadata.format == "mov,mp4,m4a"


def test_extract_metadata_failures(monkeypatch, source, tmp_path) -> None:
    tool = FFmpegMediaTool()

    with pytest.raises(MediaToolError):
        tool.extract_metadata(tmp_path / "missing.mp4")

    monkeypatch.setattr(
        media_tools.subprocess,
        "run",
        lambda command, **kwargs: SimpleNamespace(returncode=1, stdout="", stderr="moov atom not found"),
    )
    with pytest.raises(MediaToolError) as excinfo:
        tool.extract_metadata(source)
    assert excinfo.value.diagnostic_output == "moov atom not found"

    monkeypatch.setattr(
        media_tools.subprocess,
        "run",
        lambda command, **kwargs: SimpleNamespace(returncode=0, stdout="not json", stderr=""),
    )
    with pytest.raises(MediaToolError) as excinfo:
        tool.extract_metadata(source)
    assert excinfo.value.message == "Invalid metadata returned from ffprobe"

    def missing_binary(command, **kwargs):
        raise FileNotFoundError(command[0])

    monkeypatch.setattr(media_tools.subprocess, "run", missing_binary)
    with pytest.raises(MediaToolError) as excinfo:
        tool.extract_metadata(source)
    assert "not installed" in excinfo.value.message


def test_transcode_reports_increasing_progress(monkeypatch, source, tmp_path) -> None:
    processes = []

    def fake_popen(command, **kwargs):
        process = FakeProcess(
            command,
            stdout_lines=[
                "out_time_ms=3000000\n",
                "out_time_ms=6000000\n",
                "out_time_ms=6000000\n",
                "progress=end\n",
            ],
            stderr_lines=["frame=1\n"],
        )
        processes.append(process)
        return process

    monkeypatch.setattr(media_tools.subprocess, "Popen", fake_popen)
    reported = []
    output = tmp_path / "out" / "720p.mp4"

    FFmpegMediaTool().transcode(source, output, "720p", reported.append, duration=12.0)

    assert reported == [25, 50]
    assert output.read_bytes() == b"encoded"
    assert not (tmp_path / "out" / "720p.part.mp4").exists()
    command = processes[0].command
    assert "scale=1280:720" in command
    assert "2800k" in command


def test_transcode_failure_keeps_stderr_and_removes_partial(monkeypatch, source, tmp_path) -> None:
    monkeypatch.setattr(
        media_tools.subprocess,
        "Popen",
        lambda command, **kwargs: FakeProcess(
            command, stdout_lines=[], stderr_lines=["Unknown encoder\n"], returncode=1
        ),
    )
    output = tmp_path / "out" / "480p.mp4"

    with pytest.raises(MediaToolError) as excinfo:
        FFmpegMediaTool().transcode(source, output, "480p", duration=12.0)

    assert excinfo.value.message == "Failed to transcode video to 480p"
    assert "Unknown encoder" in excinfo.value.diagnostic_output
    assert list((tmp_path / "out").iterdir()) == []


def test_transcode_timeout_kills_process(monkeypatch, source, tmp_path) -> None:
    processes = []

    def fake_popen(command, **kwargs):
        process = FakeProcess(command, stdout_lines=[], stderr_lines=[], hang=True)
        processes.append(process)
        return process

    monkeypatch.setattr(media_tools.subprocess, "Popen", fake_popen)

    with pytest.raises(MediaToolError) as excinfo:
        FFmpegMediaTool().transcode(source, tmp_path / "360p.mp4", "360p", duration=12.0, timeout=5)

    assert "timed out" in excinfo.value.message
    assert processes[0].killed


def test_unknown_quality_is_rejected(source, tmp_path) -> None:
    with pytest.raises(MediaToolError):
        FFmpegMediaTool().transcode(source, tmp_path / "4k.mp4", "4k", duration=12.0)


def test_generate_thumbnail(monkeypatch, source, tmp_path) -> None:
    captured = {}

    def fake_run(command, **kwargs):
        captured["command"] = command
        Path(command[-1]).write_bytes(b"jpeg")
        return SimpleNamespace(returncode=0, stdout="", stderr="")

    monkeypatch.setattr(media_tools.subprocess, "run", fake_run)
    output = tmp_path / "thumb" / "thumbnail.jpg"

    FFmpegMediaTool().generate_thumbnail(source, output, 5.0)

    assert output.read_bytes() == b"jpeg"
    assert captured["command"][captured["command"].index("-ss") + 1] == "5.000"
