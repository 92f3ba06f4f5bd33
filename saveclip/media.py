"""Link validation and response shaping for YouTube metadata.

Everything here is pure: it takes the dictionaries yt-dlp produces and turns
them into the JSON documents served by ``/api/info``.
"""
from __future__ import annotations

import math
import re
from typing import Any, Dict, List, Optional
from urllib.parse import quote

YOUTUBE_URL_PATTERN = re.compile(
    r"^(?:https?://)?(?:www\.|m\.)?"
    r"(?:youtube\.com/(?:watch\?v=|embed/|v/|shorts/)|youtu\.be/)"
    r"(?P<id>[\w-]{11})"
)
QUALITY_NOTE_PATTERN = re.compile(r"^\d+p\d*$", re.IGNORECASE)

# (minimum height, label) for non-standard aspect ratios, e.g. 2026px wide-screen -> 2160p class
HEIGHT_BUCKETS = [
    (2000, "2160p"),
    (1300, "1440p"),
    (1000, "1080p"),
    (700, "720p"),
    (450, "480p"),
    (340, "360p"),
    (220, "240p"),
    (130, "144p"),
]

AUDIO_PRESETS = [
    (320, "Best"),
    (256, "High"),
    (192, "Standard"),
    (128, "Normal"),
]

BYTE_UNITS = ["Bytes", "KB", "MB", "GB"]


def extract_video_id(url: Any) -> Optional[str]:
    """Return the 11-character video id of a YouTube link, or None."""
    if not isinstance(url, str):
        return None
    match = YOUTUBE_URL_PATTERN.match(url.strip())
    return match.group("id") if match else None


def is_valid_youtube_url(url: Any) -> bool:
    return extract_video_id(url) is not None


def canonical_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


def format_codec_name(codec: Optional[str]) -> str:
    """Map a raw codec string such as ``avc1.64001F`` to a short display name."""
    if not codec or codec == "none":
        return ""
    lowered = codec.lower()
    if "av01" in lowered or "av1" in lowered:
        return "AV1"
    if "vp9" in lowered or "vp09" in lowered:
        return "VP9"
    if "vp8" in lowered:
        return "VP8"
    if "avc1" in lowered or "h264" in lowered or "h.264" in lowered:
        return "H264"
    if "hev" in lowered or "h265" in lowered or "hevc" in lowered:
        return "H265"
    return codec.split(".")[0].upper()


def format_bytes(size: Any) -> str:
    if not isinstance(size, (int, float)) or not size or math.isnan(size) or size < 0:
        return "Unknown"
    index = int(math.floor(math.log(size) / math.log(1024))) if size >= 1 else 0
    index = min(max(index, 0), len(BYTE_UNITS) - 1)
    return f"{size / math.pow(1024, index):.1f} {BYTE_UNITS[index]}"


def format_duration(seconds: Any) -> str:
    total = int(seconds or 0)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def format_views(views: Any) -> str:
    count = int(views or 0)
    if count >= 1_000_000_000:
        return f"{count / 1_000_000_000:.1f}B views"
    if count >= 1_000_000:
        return f"{count / 1_000_000:.1f}M views"
    if count >= 1_000:
        return f"{count / 1_000:.1f}K views"
    return f"{count} views"


def quality_label(height: int, format_note: Optional[str] = None) -> str:
    """Prefer yt-dlp's own note (``1080p60``), otherwise bucket by pixel height."""
    if format_note and QUALITY_NOTE_PATTERN.match(format_note):
        return format_note
    for minimum, label in HEIGHT_BUCKETS:
        if height >= minimum:
            return label
    return f"{height}p"


def _bitrate(fmt: Dict[str, Any]) -> float:
    return fmt.get("tbr") or fmt.get("vbr") or 0


def estimate_size(fmt: Dict[str, Any], duration: Any) -> float:
    """Byte size of a format; live and freshly uploaded streams only carry a bitrate."""
    size = fmt.get("filesize") or fmt.get("filesize_approx") or 0
    bitrate = _bitrate(fmt)
    if not size and bitrate and duration:
        size = bitrate * 1024 / 8 * duration
    return size


def _has_codec(value: Optional[str]) -> bool:
    return bool(value) and value != "none"


def shape_video_formats(formats: List[Dict[str, Any]], duration: Any) -> List[Dict[str, Any]]:
    """Build one descriptor per quality label, highest resolution first.

    A label can cover several heights (1012 and 1080 both read ``1080p``);
    the format with the highest bitrate under that label wins.
    """
    best: Dict[str, Dict[str, Any]] = {}
    for fmt in formats or []:
        if not (_has_codec(fmt.get("vcodec")) and fmt.get("height")):
            continue
        label = quality_label(int(fmt["height"]), fmt.get("format_note"))
        current = best.get(label)
        if current is None or (_bitrate(fmt), fmt["height"]) > (_bitrate(current), current["height"]):
            best[label] = fmt

    chosen = sorted(best.items(), key=lambda item: (item[1]["height"], _bitrate(item[1])), reverse=True)

    shaped: List[Dict[str, Any]] = []
    for label, fmt in chosen:
        size = estimate_size(fmt, duration)
        has_audio = _has_codec(fmt.get("acodec"))
        shaped.append(
            {
                "formatId": str(fmt.get("format_id") or ""),
                "quality": label,
                "height": int(fmt["height"]),
                "container": "mp4",
                "codec": format_codec_name(fmt.get("vcodec")),
                "size": format_bytes(size) if size else "Unknown",
                "hasAudio": has_audio,
                "type": "video+audio" if has_audio else "video-only",
                "fps": fmt.get("fps") or 30,
            }
        )
    return shaped


def estimate_audio_size(bitrate: int, duration: Any) -> str:
    if not duration:
        return "Unknown"
    size = bitrate * 1000 * duration / 8
    if size >= 1024 ** 3:
        return f"~{size / 1024 ** 3:.1f} GB"
    if size >= 1024 ** 2:
        return f"~{size / 1024 ** 2:.1f} MB"
    if size >= 1024:
        return f"~{size / 1024:.1f} KB"
    return f"~{int(size)} B"


def audio_formats(duration: Any = 0) -> List[Dict[str, Any]]:
    """The fixed MP3 ladder; never derived from the source formats."""
    return [
        {
            "quality": f"{bitrate}kbps",
            "bitrate": bitrate,
            "container": "MP3",
            "codec": "MP3",
            "type": "mp3",
            "label": f"MP3 - {bitrate}kbps ({tier})",
            "size": estimate_audio_size(bitrate, duration),
        }
        for bitrate, tier in AUDIO_PRESETS
    ]


def best_thumbnail(info: Dict[str, Any]) -> str:
    thumbnails = info.get("thumbnails") or []
    if thumbnails and thumbnails[-1].get("url"):
        return thumbnails[-1]["url"]
    return info.get("thumbnail") or ""


def build_video_payload(info: Dict[str, Any], video_id: str, source: str = "yt-dlp") -> Dict[str, Any]:
    """Shape extractor output into the ``/api/info`` response document."""
    duration = info.get("duration") or 0
    return {
        "videoId": video_id,
        "title": info.get("title") or "Unknown",
        "thumbnail": best_thumbnail(info),
        "duration": format_duration(duration),
        "durationSeconds": duration,
        "author": info.get("uploader") or info.get("channel") or "Unknown",
        "views": format_views(info.get("view_count") or 0),
        "videoFormats": shape_video_formats(info.get("formats") or [], duration),
        "audioFormats": audio_formats(duration),
        "source": source,
    }


def sanitize_title(title: Optional[str]) -> str:
    """Strip punctuation and control characters so the title is safe as a file name."""
    cleaned = re.sub(r"[^\w\s-]", "", title or "")
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    return cleaned or "video"


def content_disposition(title: str, ext: str) -> str:
    """Attachment header with an ASCII fallback and an RFC 5987 name for non-ASCII titles."""
    filename = f"{title}.{ext}"
    ascii_title = title.encode("ascii", "ignore").decode("ascii").strip() or "video"
    header = f'attachment; filename="{ascii_title}.{ext}"'
    if not filename.isascii():
        header += f"; filename*=utf-8''{quote(filename)}"
    return header
