"""Runtime settings read from the environment."""
from __future__ import annotations

import os
import tempfile
from typing import List, Optional


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    try:
        value = int(os.getenv(name, str(default)) or default)
    except ValueError:
        value = default
    return max(value, minimum)


def _env_list(name: str, default: str) -> List[str]:
    raw = os.getenv(name) or default
    return [item.strip() for item in raw.split(",") if item.strip()]


HOST = os.getenv("HOST", "0.0.0.0")
PORT = _env_int("PORT", 6500)

YT_DLP_PATH = os.getenv("YT_DLP_PATH") or "yt-dlp"
FFMPEG_PATH: Optional[str] = os.getenv("FFMPEG_PATH") or None

FRONTEND_ORIGINS = _env_list("FRONTEND_URL", "*")

MAX_CONCURRENT = _env_int("MAX_CONCURRENT_DOWNLOADS", 3)
DOWNLOAD_TIMEOUT = _env_int("DOWNLOAD_TIMEOUT", 900)
TEMP_DIR = os.getenv("SAVECLIP_TMP_DIR") or tempfile.gettempdir()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE: Optional[str] = os.getenv("LOG_FILE") or None

CHUNK_SIZE = 1024 * 64

DEFAULT_HTTP_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0 Safari/537.36"
}
