"""External media tool abstractions used for frame grabs and video assembly."""
from __future__ import annotations

import asyncio
import logging
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

from .config import RecorderSettings, redact_url

logger = logging.getLogger(__name__)

_STDERR_TAIL_CHARS = 400


class MediaToolError(RuntimeError):
    """Raised when a media backend cannot be used at all."""


@dataclass(frozen=True, slots=True)
class MediaResult:
    """Outcome of a single capture or encode invocation."""

    ok: bool
    reason: str | None = None

    @classmethod
    def success(cls) -> "MediaResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, reason: str) -> "MediaResult":
        return cls(ok=False, reason=reason or "unknown error")


class MediaTool(ABC):
    """Black-box media processor able to grab stills and assemble videos."""

    @abstractmethod
    async def capture_frame(self, destination: Path) -> MediaResult:  # pragma: no cover - interface only
        raise NotImplementedError

    @abstractmethod
    async def encode_video(self, manifest: Path, destination: Path) -> MediaResult:  # pragma: no cover - interface only
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover - optional override
        return None


def _quote_concat_path(path: Path) -> str:
    # concat demuxer quoting: close the quote, emit an escaped quote, reopen.
    return "'" + path.as_posix().replace("'", "'\\''") + "'"


def write_manifest(path: Path, frames: Iterable[Path]) -> Path:
    """Write an FFmpeg concat list naming *frames* in order."""

    lines = [f"file {_quote_concat_path(frame.resolve())}" for frame in frames]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def read_manifest(path: Path) -> list[Path]:
    """Return the frame paths listed in an FFmpeg concat manifest."""

    entries: list[Path] = []
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or not line.startswith("file "):
            continue
        value = line[len("file ") :].strip()
        if len(value) >= 2 and value[0] == "'" and value[-1] == "'":
            value = value[1:-1].replace("'\\''", "'")
        entries.append(Path(value))
    return entries


def build_capture_command(
    binary: str,
    stream_url: str,
    destination: Path,
    *,
    rtsp_transport: str | None = "tcp",
) -> list[str]:
    command = [binary, "-hide_banner", "-loglevel", "error", "-y"]
    if rtsp_transport:
        command += ["-rtsp_transport", rtsp_transport]
    command += ["-i", stream_url, "-frames:v", "1", str(destination)]
    return command


def build_encode_command(
    binary: str,
    manifest: Path,
    destination: Path,
    *,
    pixel_format: str = "yuv420p",
    frame_rate: int = 12,
) -> list[str]:
    # The rate must apply to the concat input: as an output option ffmpeg
    # would resample the stills' default timing and drop most of them.
    return [
        binary,
        "-hide_banner",
        "-loglevel",
        "error",
        "-y",
        "-f",
        "concat",
        "-safe",
        "0",
        "-r",
        str(int(frame_rate)),
        "-i",
        str(manifest),
        "-pix_fmt",
        pixel_format,
        str(destination),
    ]


def _summarise_stderr(stderr: bytes | None) -> str:
    if not stderr:
        return ""
    text = stderr.decode("utf-8", errors="replace").strip()
    if len(text) > _STDERR_TAIL_CHARS:
        text = "..." + text[-_STDERR_TAIL_CHARS:]
    return text


def _remove_partial(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError:  # pragma: no cover - best effort cleanup
        logger.debug("Unable to remove partial output %s", path, exc_info=True)


class FFmpegMediaTool(MediaTool):
    """Run the ``ffmpeg`` binary once per capture or encode request."""

    def __init__(
        self,
        stream_url: str,
        *,
        binary: str = "ffmpeg",
        rtsp_transport: str | None = "tcp",
        pixel_format: str = "yuv420p",
        frame_rate: int = 12,
        timeout_s: float | None = None,
    ) -> None:
        self._stream_url = stream_url
        self._binary = binary
        self._rtsp_transport = rtsp_transport
        self._pixel_format = pixel_format
        self._frame_rate = int(frame_rate)
        self._timeout_s = timeout_s

    @classmethod
    def from_settings(cls, settings: RecorderSettings) -> "FFmpegMediaTool":
        return cls(
            settings.stream_url,
            binary=settings.ffmpeg_binary,
            rtsp_transport=settings.rtsp_transport,
            pixel_format=settings.pixel_format,
            frame_rate=settings.frame_rate,
            timeout_s=settings.process_timeout_s,
        )

    async def capture_frame(self, destination: Path) -> MediaResult:
        command = build_capture_command(
            self._binary,
            self._stream_url,
            destination,
            rtsp_transport=self._rtsp_transport,
        )
        return await self._run(command, destination)

    async def encode_video(self, manifest: Path, destination: Path) -> MediaResult:
        command = build_encode_command(
            self._binary,
            manifest,
            destination,
            pixel_format=self._pixel_format,
            frame_rate=self._frame_rate,
        )
        logger.info("Spawned ffmpeg with command: %s", " ".join(command))
        return await self._run(command, destination)

    # ------------------------------------------------------------------
    def _resolve_binary(self) -> str:
        binary = shutil.which(self._binary)
        if binary is None:
            raise MediaToolError(f"{self._binary} command not found")
        return binary

    async def _run(self, command: Sequence[str], destination: Path) -> MediaResult:
        try:
            binary = self._resolve_binary()
        except MediaToolError as exc:
            return MediaResult.failure(str(exc))
        try:
            process = await asyncio.create_subprocess_exec(
                binary,
                *command[1:],
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            return MediaResult.failure(f"failed to launch {self._binary}: {exc}")

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self._timeout_s)
        except asyncio.TimeoutError:
            await self._terminate(process)
            _remove_partial(destination)
            return MediaResult.failure(f"{self._binary} timed out after {self._timeout_s:g}s")
        except asyncio.CancelledError:
            await self._terminate(process)
            _remove_partial(destination)
            raise

        if process.returncode != 0:
            _remove_partial(destination)
            detail = _summarise_stderr(stderr) or "no error output"
            detail = detail.replace(self._stream_url, redact_url(self._stream_url))
            return MediaResult.failure(f"{self._binary} exited with code {process.returncode}: {detail}")
        if not destination.exists():
            return MediaResult.failure(f"{self._binary} produced no output at {destination}")
        return MediaResult.success()

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:  # pragma: no cover - process exited meanwhile
            return
        await process.wait()


def create_media_tool(settings: RecorderSettings) -> MediaTool:
    """Instantiate the media backend selected in *settings*."""

    if settings.backend == "pyav":
        from .video import PyAVMediaTool

        return PyAVMediaTool.from_settings(settings)
    return FFmpegMediaTool.from_settings(settings)


__all__ = [
    "FFmpegMediaTool",
    "MediaResult",
    "MediaTool",
    "MediaToolError",
    "build_capture_command",
    "build_encode_command",
    "create_media_tool",
    "read_manifest",
    "write_manifest",
]
