"""In-process media backend built on PyAV."""
from __future__ import annotations

import asyncio
import logging
from fractions import Fraction
from pathlib import Path

import av
import numpy as np
import simplejpeg

from .config import RecorderSettings, redact_url
from .media import MediaResult, MediaTool, MediaToolError, read_manifest

logger = logging.getLogger(__name__)

# Tried in order; mpeg4 ships with every FFmpeg build.
MP4_CODECS: tuple[str, ...] = ("libx264", "h264", "mpeg4")


def to_rgb(frame: np.ndarray) -> np.ndarray:
    """Return *frame* as a contiguous ``uint8`` array with three channels."""

    array = np.asarray(frame)
    if array.ndim == 2:
        array = np.stack([array] * 3, axis=2)
    elif array.ndim != 3:
        raise ValueError("Expected a 2D or 3D frame")
    elif array.shape[2] == 1:
        array = np.repeat(array, 3, axis=2)
    elif array.shape[2] != 3:
        array = array[:, :, :3]
    if array.dtype != np.uint8:
        array = np.clip(array, 0, 255).astype(np.uint8)
    return np.ascontiguousarray(array)


def even_size(width: int, height: int) -> tuple[int, int]:
    """yuv420p needs even dimensions; round each one down."""

    return width - width % 2, height - height % 2


class Mp4Writer:
    """Append equally sized RGB stills to an MP4 at a constant frame rate.

    Frame *i* is stamped ``pts = i`` on a ``1/frame_rate`` time base, so every
    still becomes exactly one video frame.
    """

    def __init__(
        self,
        path: Path,
        *,
        size: tuple[int, int],
        frame_rate: int = 12,
        pixel_format: str = "yuv420p",
    ) -> None:
        if frame_rate < 1:
            raise ValueError("frame_rate must be positive")
        width, height = even_size(*size)
        if width < 2 or height < 2:
            raise ValueError(f"Frame size {size[0]}x{size[1]} is too small to encode")
        self.path = Path(path)
        self.size = (width, height)
        self.frames_written = 0
        self._container = av.open(self.path.as_posix(), mode="w")
        self._stream = self._add_stream(frame_rate, pixel_format)

    def _add_stream(self, frame_rate: int, pixel_format: str):
        for codec in MP4_CODECS:
            try:
                stream = self._container.add_stream(codec, rate=frame_rate)
            except (av.FFmpegError, ValueError):
                logger.debug("Codec %s unavailable", codec)
                continue
            stream.width, stream.height = self.size
            stream.pix_fmt = pixel_format
            stream.time_base = Fraction(1, frame_rate)
            return stream
        self._container.close()
        raise MediaToolError("No MP4 encoder available in this FFmpeg build")

    def write(self, frame: np.ndarray, *, name: str = "frame") -> None:
        rgb = to_rgb(frame)
        height, width = rgb.shape[:2]
        if even_size(width, height) != self.size:
            raise ValueError(f"{name} is {width}x{height}, expected {self.size[0]}x{self.size[1]}")
        rgb = np.ascontiguousarray(rgb[: self.size[1], : self.size[0]])
        video_frame = av.VideoFrame.from_ndarray(rgb, format="rgb24")
        video_frame.pts = self.frames_written
        self._container.mux(self._stream.encode(video_frame))
        self.frames_written += 1

    def close(self) -> None:
        if self._container is None:
            return
        try:
            self._container.mux(self._stream.encode(None))
        finally:
            self._container.close()
            self._container = None

    def __enter__(self) -> "Mp4Writer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def grab_frame(url: str, *, rtsp_transport: str | None = "tcp", timeout_s: float | None = None) -> np.ndarray:
    """Open *url* and return the first decodable video frame as RGB."""

    options: dict[str, str] = {}
    if rtsp_transport and url.lower().startswith("rtsp"):
        options["rtsp_transport"] = rtsp_transport
    container = av.open(url, options=options, timeout=timeout_s)
    try:
        for decoded in container.decode(video=0):
            return decoded.to_ndarray(format="rgb24")
    finally:
        container.close()
    raise MediaToolError("Stream ended before a frame could be decoded")


def write_jpeg(path: Path, frame: np.ndarray, *, quality: int = 90) -> None:
    """Persist *frame* as a JPEG still."""

    payload = simplejpeg.encode_jpeg(to_rgb(frame), quality=quality, colorspace="RGB")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(payload)


def read_jpeg(path: Path) -> np.ndarray:
    return simplejpeg.decode_jpeg(path.read_bytes(), colorspace="RGB")


def encode_manifest_to_mp4(
    manifest: Path,
    destination: Path,
    *,
    frame_rate: int = 12,
    pixel_format: str = "yuv420p",
) -> int:
    """Encode the JPEG stills listed in *manifest* into *destination*.

    Returns the number of frames written. Every still must share the size of
    the first one.
    """

    paths = read_manifest(manifest)
    if not paths:
        raise ValueError("Manifest lists no frames")
    first = read_jpeg(paths[0])
    destination.parent.mkdir(parents=True, exist_ok=True)
    size = (first.shape[1], first.shape[0])
    with Mp4Writer(destination, size=size, frame_rate=frame_rate, pixel_format=pixel_format) as writer:
        writer.write(first, name=paths[0].name)
        for path in paths[1:]:
            writer.write(read_jpeg(path), name=path.name)
        return writer.frames_written


class PyAVMediaTool(MediaTool):
    """Grab stills and assemble videos in-process through PyAV."""

    def __init__(
        self,
        stream_url: str,
        *,
        rtsp_transport: str | None = "tcp",
        pixel_format: str = "yuv420p",
        frame_rate: int = 12,
        timeout_s: float | None = None,
        jpeg_quality: int = 90,
    ) -> None:
        if not (1 <= jpeg_quality <= 100):
            raise ValueError("jpeg_quality must be between 1 and 100")
        self._stream_url = stream_url
        self._rtsp_transport = rtsp_transport
        self._pixel_format = pixel_format
        self._frame_rate = int(frame_rate)
        self._timeout_s = timeout_s
        self._jpeg_quality = jpeg_quality

    @classmethod
    def from_settings(cls, settings: RecorderSettings) -> "PyAVMediaTool":
        return cls(
            settings.stream_url,
            rtsp_transport=settings.rtsp_transport,
            pixel_format=settings.pixel_format,
            frame_rate=settings.frame_rate,
            timeout_s=settings.process_timeout_s,
        )

    async def capture_frame(self, destination: Path) -> MediaResult:
        try:
            await asyncio.to_thread(self._capture_sync, destination)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            destination.unlink(missing_ok=True)
            detail = str(exc).strip() or type(exc).__name__
            return MediaResult.failure(detail.replace(self._stream_url, redact_url(self._stream_url)))
        return MediaResult.success()

    async def encode_video(self, manifest: Path, destination: Path) -> MediaResult:
        try:
            count = await asyncio.to_thread(
                encode_manifest_to_mp4,
                manifest,
                destination,
                frame_rate=self._frame_rate,
                pixel_format=self._pixel_format,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            destination.unlink(missing_ok=True)
            return MediaResult.failure(str(exc).strip() or type(exc).__name__)
        logger.debug("Encoded %d frames into %s", count, destination)
        return MediaResult.success()

    def _capture_sync(self, destination: Path) -> None:
        frame = grab_frame(
            self._stream_url,
            rtsp_transport=self._rtsp_transport,
            timeout_s=self._timeout_s,
        )
        write_jpeg(destination, frame, quality=self._jpeg_quality)


__all__ = [
    "PyAVMediaTool",
    "MP4_CODECS",
    "Mp4Writer",
    "encode_manifest_to_mp4",
    "even_size",
    "grab_frame",
    "read_jpeg",
    "to_rgb",
    "write_jpeg",
]
