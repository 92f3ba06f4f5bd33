"""Orchestration of the external yt-dlp/ffmpeg tools.

Metadata comes from the yt-dlp library, with YouTube's oEmbed endpoint as a
single best-effort fallback. Downloads shell out to the yt-dlp binary, which
writes a finished (merged or converted) file into a private temp directory
that is streamed back and removed afterwards.
"""
from __future__ import annotations

import http.client
import json
import logging
import os
import re
import shutil
import subprocess
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import quote
from urllib.request import Request, urlopen

import yt_dlp

from saveclip import config, media

logger = logging.getLogger(__name__)

OEMBED_ENDPOINT = "https://www.youtube.com/oembed"
OEMBED_TIMEOUT = 6
DEFAULT_AUDIO_BITRATE = 192
MAX_AUDIO_BITRATE = 320
SAFE_FORMAT_ID = re.compile(r"^[A-Za-z0-9_-]+$")
LEADING_INT = re.compile(r"^\s*(\d+)")


class ExtractionError(Exception):
    """Raised when an external tool or metadata source fails."""

    def __init__(self, message: str, returncode: Optional[int] = None):
        super().__init__(message)
        self.returncode = returncode


def build_info_opts() -> Dict[str, Any]:
    """yt-dlp options for metadata-only lookups of a single video."""
    return {
        "quiet": True,
        "no_warnings": True,
        "skip_download": True,
        "noplaylist": True,
        "http_headers": config.DEFAULT_HTTP_HEADERS,
    }


def fetch_metadata(url: str) -> Dict[str, Any]:
    try:
        with yt_dlp.YoutubeDL(build_info_opts()) as ydl:
            info = ydl.extract_info(url, download=False)
            if not info:
                raise ExtractionError(f"yt-dlp returned no metadata for {url}")
            return ydl.sanitize_info(info)
    except ExtractionError:
        raise
    except yt_dlp.utils.DownloadError as exc:
        raise ExtractionError(str(exc)) from exc
    except Exception as exc:
        raise ExtractionError(f"yt-dlp metadata lookup crashed: {exc!r}") from exc


def fetch_oembed(url: str) -> Dict[str, Any]:
    """Title, author and thumbnail from oEmbed, shaped like yt-dlp info without formats."""
    endpoint = f"{OEMBED_ENDPOINT}?url={quote(url, safe='')}&format=json"
    try:
        with urlopen(Request(endpoint, headers=config.DEFAULT_HTTP_HEADERS), timeout=OEMBED_TIMEOUT) as resp:
            data = json.loads(resp.read().decode("utf-8", errors="ignore"))
    except (OSError, ValueError, http.client.HTTPException) as exc:
        raise ExtractionError(f"oEmbed lookup failed: {exc}") from exc
    if not isinstance(data, dict):
        raise ExtractionError("oEmbed returned an unexpected document")
    return {
        "title": data.get("title"),
        "uploader": data.get("author_name"),
        "thumbnail": data.get("thumbnail_url"),
        "formats": [],
    }


def resolve_metadata(video_id: str) -> Dict[str, Any]:
    """Return the ``/api/info`` payload for a video id.

    Tries yt-dlp first and falls back to oEmbed once. Raises ExtractionError
    when neither source answers.
    """
    url = media.canonical_url(video_id)
    try:
        info = fetch_metadata(url)
        source = "yt-dlp"
    except ExtractionError as exc:
        logger.warning("yt-dlp metadata lookup failed for %s: %s", video_id, exc)
        info = fetch_oembed(url)
        source = "oembed"
    return media.build_video_payload(info, video_id, source=source)


def parse_height(quality: Optional[str]) -> Optional[int]:
    """Leading integer of a quality hint such as ``1080`` or ``1080p``."""
    if not quality:
        return None
    match = LEADING_INT.match(str(quality))
    if not match:
        return None
    return int(match.group(1)) or None


def build_format_selector(quality: Optional[str] = None, format_id: Optional[str] = None) -> str:
    height = parse_height(quality)
    if height:
        selector = f"bestvideo[height<={height}]+bestaudio/best[height<={height}]"
    else:
        selector = "bestvideo+bestaudio/best"
    if format_id and SAFE_FORMAT_ID.match(format_id):
        selector = f"{format_id}+bestaudio/{format_id}/{selector}"
    return selector


def build_download_args(
    url: str,
    output_template: str,
    media_type: str = "mp4",
    quality: Optional[str] = None,
    bitrate: Optional[float] = None,
    format_id: Optional[str] = None,
) -> List[str]:
    """Command line for yt-dlp producing a single mp3 or merged mp4.

    ``output_template`` should end in ``.%(ext)s``: yt-dlp appends the final
    extension itself after merging or audio conversion.
    """
    args: List[str] = [config.YT_DLP_PATH, url]
    if media_type == "mp3":
        kbps = round(bitrate) if bitrate else 0
        if kbps <= 0:
            kbps = DEFAULT_AUDIO_BITRATE
        kbps = min(kbps, MAX_AUDIO_BITRATE)
        args.extend(
            [
                "-f",
                "bestaudio",
                "-x",
                "--audio-format",
                "mp3",
                "--audio-quality",
                f"{kbps}K",
            ]
        )
    else:
        args.extend(
            [
                "-f",
                build_format_selector(quality, format_id),
                "--merge-output-format",
                "mp4",
            ]
        )
    if config.FFMPEG_PATH:
        args.extend(["--ffmpeg-location", config.FFMPEG_PATH])
    args.extend(["-o", output_template, "--no-warnings", "--quiet", "--no-part", "--no-playlist"])
    return args


def run_extraction(args: List[str], output_path: str) -> str:
    """Run yt-dlp to completion and return the path of the produced file.

    Partial output is left for the caller, which owns the temp directory.
    """
    try:
        proc = subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=config.DOWNLOAD_TIMEOUT,
        )
    except FileNotFoundError as exc:
        raise ExtractionError(f"{args[0]} is not installed or not in PATH") from exc
    except subprocess.TimeoutExpired as exc:
        raise ExtractionError(f"yt-dlp timed out after {config.DOWNLOAD_TIMEOUT}s") from exc

    stderr = (proc.stderr or "").strip()
    if stderr:
        for line in stderr.splitlines()[-6:]:
            logger.error("yt-dlp stderr: %s", line)

    if proc.returncode != 0 or not os.path.exists(output_path):
        detail = stderr.splitlines()[-1] if stderr else f"yt-dlp exited with code {proc.returncode}"
        raise ExtractionError(detail, returncode=proc.returncode)
    return output_path


class FileStream:
    """Chunked reader over a finished download that owns its temp directory.

    ``cleanup_dir`` is removed when the stream is exhausted, fails or is
    closed, including a close before the first chunk was read.
    """

    def __init__(self, path: str, cleanup_dir: str, chunk_size: int = config.CHUNK_SIZE):
        self.path = path
        self.cleanup_dir = cleanup_dir
        self.chunk_size = chunk_size
        self._handle = None
        self.closed = False

    def __iter__(self) -> Iterator[bytes]:
        return self

    def __next__(self) -> bytes:
        if self.closed:
            raise StopIteration
        try:
            if self._handle is None:
                self._handle = open(self.path, "rb")
            chunk = self._handle.read(self.chunk_size)
        except OSError:
            logger.exception("Download stream failed for %s", self.path)
            self.close()
            raise
        if not chunk:
            self.close()
            raise StopIteration
        return chunk

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None
        self.closed = True
        shutil.rmtree(self.cleanup_dir, ignore_errors=True)


def iter_file(path: str, cleanup_dir: str, chunk_size: int = config.CHUNK_SIZE) -> FileStream:
    """Stream ``path`` in chunks, then remove ``cleanup_dir`` however the stream ends."""
    return FileStream(path, cleanup_dir, chunk_size)


def tool_version(args: List[str]) -> Optional[str]:
    """First line of ``<tool> --version`` style output, None when the tool is absent or broken."""
    try:
        proc = subprocess.run(args, capture_output=True, text=True, timeout=2)
    except (OSError, subprocess.SubprocessError):
        return None
    if proc.returncode != 0 or not proc.stdout:
        return None
    return proc.stdout.splitlines()[0].strip()
