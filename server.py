"""FastAPI backend for SaveClip.

This service exposes two endpoints:
- POST /api/info     : returns title, author, duration, views and the
                       deduplicated format list for a YouTube link
- GET  /api/download : runs yt-dlp (and ffmpeg through it) to produce an
                       mp4 or mp3 file and streams it back

Run with:
    uvicorn server:app --host 0.0.0.0 --port 6500
"""
from __future__ import annotations

import logging
import os
import secrets
import shutil
import tempfile
import threading
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask
from starlette.exceptions import HTTPException as StarletteHTTPException
from yt_dlp.version import __version__ as yt_dlp_version

from saveclip import __version__, config, extractor, media
from saveclip.extractor import ExtractionError
from saveclip.logging_config import setup_logging

setup_logging(config.LOG_LEVEL, config.LOG_FILE)
logger = logging.getLogger("saveclip.server")

app = FastAPI(title="SaveClip API", version=__version__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.FRONTEND_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition", "Content-Length"],
)

MAX_CONCURRENT = config.MAX_CONCURRENT
DOWNLOAD_GUARD = threading.BoundedSemaphore(value=MAX_CONCURRENT)

INVALID_URL = "Invalid YouTube URL"
INFO_FAILED = "Failed to fetch video info. Please check the URL and try again."
DOWNLOAD_FAILED = "Download failed"

MEDIA_TYPES = {"mp3": "audio/mpeg", "mp4": "video/mp4"}


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Render every HTTP error as ``{"error": ...}`` for the web client."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.get("/")
async def root() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/api/health")
def healthcheck() -> Dict[str, Any]:
    """Return service readiness and tool versions."""
    ffmpeg_version = extractor.tool_version([config.FFMPEG_PATH or "ffmpeg", "-version"])
    binary_version = extractor.tool_version([config.YT_DLP_PATH, "--version"])
    return {
        "status": "ok",
        "yt_dlp": yt_dlp_version,
        "yt_dlp_binary": binary_version or "missing",
        "ffmpeg": ffmpeg_version or "missing",
        "max_concurrent_downloads": MAX_CONCURRENT,
    }


@app.post("/api/info")
def fetch_info(payload: Optional[Dict[str, Any]] = Body(None)) -> Dict[str, Any]:
    """Return metadata and quality options for a YouTube link.

    A missing body or a non-string ``url`` is an invalid link, not a 422.
    """
    video_id = media.extract_video_id((payload or {}).get("url"))
    if not video_id:
        raise HTTPException(status_code=400, detail=INVALID_URL)

    try:
        info = extractor.resolve_metadata(video_id)
    except ExtractionError as exc:
        logger.error("Error fetching video info for %s: %s", video_id, exc)
        raise HTTPException(status_code=500, detail=INFO_FAILED) from exc

    logger.info(
        'Fetched: "%s" - Duration: %ss - Qualities: %s',
        info["title"],
        info["durationSeconds"],
        ", ".join(fmt["quality"] for fmt in info["videoFormats"]),
    )
    return info


@app.get("/api/download")
def download(
    url: Optional[str] = Query(None, description="YouTube link to download"),
    title: Optional[str] = Query(None, description="Title used for the attachment name"),
    type: str = Query("mp4", description="'mp3' for audio, anything else for video"),
    quality: Optional[str] = Query(None, description="Maximum video height, e.g. 1080 or 1080p"),
    bitrate: Optional[float] = Query(None, description="MP3 bitrate in kbps"),
    format_id: Optional[str] = Query(None, alias="formatId", description="Preferred yt-dlp format id"),
):
    """
    Produce the requested file with yt-dlp and stream it back.

    - yt-dlp writes a merged mp4 (or converted mp3) into a private temp dir
    - a failing yt-dlp run becomes a 500 before any bytes are sent
    - the temp dir is removed once the stream finishes or breaks
    """
    video_id = media.extract_video_id(url)
    if not video_id:
        raise HTTPException(status_code=400, detail=INVALID_URL)

    ext = "mp3" if type == "mp3" else "mp4"
    filename_title = media.sanitize_title(title)

    acquired = DOWNLOAD_GUARD.acquire(timeout=2)
    if not acquired:
        raise HTTPException(status_code=429, detail="Too many concurrent downloads, please wait.")

    temp_dir: Optional[str] = None
    try:
        temp_dir = tempfile.mkdtemp(prefix="saveclip_", dir=config.TEMP_DIR)
        stem = f"saveclip-{secrets.token_hex(8)}"
        output_path = os.path.join(temp_dir, f"{stem}.{ext}")
        args = extractor.build_download_args(
            media.canonical_url(video_id),
            os.path.join(temp_dir, f"{stem}.%(ext)s"),
            media_type=ext,
            quality=quality,
            bitrate=bitrate,
            format_id=format_id,
        )
        logger.info("Downloading %s as %s (quality=%s, bitrate=%s)", video_id, ext, quality, bitrate)
        extractor.run_extraction(args, output_path)
        size = os.path.getsize(output_path)
    except (ExtractionError, OSError) as exc:
        if temp_dir:
            shutil.rmtree(temp_dir, ignore_errors=True)
        logger.error("Download error for %s: %s", video_id, exc)
        raise HTTPException(status_code=500, detail=DOWNLOAD_FAILED) from exc
    finally:
        DOWNLOAD_GUARD.release()

    headers = {
        "Content-Disposition": media.content_disposition(filename_title, ext),
        "Content-Length": str(size),
    }
    return StreamingResponse(
        extractor.iter_file(output_path, temp_dir),
        media_type=MEDIA_TYPES[ext],
        headers=headers,
        background=BackgroundTask(shutil.rmtree, temp_dir, ignore_errors=True),
    )


def main() -> None:
    import uvicorn

    logger.info("SaveClip server running on http://%s:%s", config.HOST, config.PORT)
    uvicorn.run("server:app", host=config.HOST, port=config.PORT, reload=False, log_config=None)


if __name__ == "__main__":
    main()
