"""
YouTube metadata extraction.

The HTTP layer only depends on the ``MetadataFetcher`` protocol; the default
implementation drives yt-dlp in a worker thread.
"""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Protocol
from urllib.parse import parse_qs, urlparse

import yt_dlp
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool
from yt_dlp.utils import DownloadError

logger = logging.getLogger(__name__)

YOUTUBE_URL_RE = re.compile(r"^(https?://)?(www\.|m\.)?(youtube\.com|youtu\.be)/.+", re.IGNORECASE)
DESCRIPTION_MAX = 200


class MetadataError(Exception):
    """Extraction failed; the message is safe to show to callers."""


class VideoMetadata(BaseModel):
    title: str
    description: str
    duration: str
    author: str
    views: str
    upload_date: str
    thumbnail: str
    download_urls: dict[str, str]
    thumbnails: dict[str, str]
    video_id: str


class PlaylistMetadata(BaseModel):
    title: str
    description: str
    author: str
    video_count: int
    thumbnail: str
    playlist_id: str
    videos: list[VideoMetadata]


class MetadataFetcher(Protocol):
    async def fetch_video(self, url: str, include_thumbnails: bool = True) -> VideoMetadata:
        ...

    async def fetch_playlist(
        self,
        playlist_id: str,
        max_videos: int = 10,
        include_thumbnails: bool = True,
    ) -> PlaylistMetadata:
        ...


def is_youtube_url(url: str) -> bool:
    return bool(YOUTUBE_URL_RE.match(url))


def playlist_id_from_url(url: str) -> str | None:
    values = parse_qs(urlparse(url).query).get("list")
    return values[0] if values and values[0] else None


def format_duration(seconds: int) -> str:
    hours, rest = divmod(max(int(seconds), 0), 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def format_views(view_count: int | None) -> str:
    if view_count is None:
        return "Unknown views"
    return f"{view_count:,} views"


def format_upload_date(raw: str | None) -> str:
    # yt-dlp reports YYYYMMDD
    if raw and len(raw) == 8 and raw.isdigit():
        return f"{raw[:4]}-{raw[4:6]}-{raw[6:]}"
    return raw or "Unknown date"


def truncate_description(text: str | None) -> str:
    text = text or ""
    if len(text) > DESCRIPTION_MAX:
        return text[:DESCRIPTION_MAX] + "..."
    return text


def thumbnail_urls(video_id: str) -> dict[str, str]:
    base = f"https://img.youtube.com/vi/{video_id}"
    return {
        "default": f"{base}/default.jpg",
        "medium": f"{base}/mqdefault.jpg",
        "high": f"{base}/hqdefault.jpg",
        "maxres": f"{base}/maxresdefault.jpg",
    }


def download_urls_from_formats(formats: list[dict[str, Any]]) -> dict[str, str]:
    """Pick one muxed stream per quality label (mp4 preferred) and the best audio-only stream."""
    urls: dict[str, str] = {}
    containers: dict[str, str] = {}
    best_audio: dict[str, Any] | None = None

    for fmt in formats:
        url = fmt.get("url")
        if not url:
            continue
        vcodec = fmt.get("vcodec") or "none"
        acodec = fmt.get("acodec") or "none"

        if vcodec != "none" and acodec != "none":
            height = fmt.get("height")
            if not height:
                continue
            quality = f"{height}p"
            if quality not in urls or (fmt.get("ext") == "mp4" and containers.get(quality) != "mp4"):
                urls[quality] = url
                containers[quality] = fmt.get("ext") or ""
        elif vcodec == "none" and acodec != "none":
            if best_audio is None or (fmt.get("abr") or 0) > (best_audio.get("abr") or 0):
                best_audio = fmt

    if best_audio is not None:
        urls["audio"] = best_audio["url"]
    return urls


def video_metadata_from_info(info: dict[str, Any], include_thumbnails: bool = True) -> VideoMetadata:
    video_id = info.get("id") or ""
    thumbnails = info.get("thumbnails") or []
    thumbnail = info.get("thumbnail") or (thumbnails[-1].get("url") if thumbnails else "") or ""

    return VideoMetadata(
        title=info.get("title") or "",
        description=truncate_description(info.get("description")),
        duration=format_duration(info.get("duration") or 0),
        author=info.get("uploader") or info.get("channel") or "Unknown",
        views=format_views(info.get("view_count")),
        upload_date=format_upload_date(info.get("upload_date")),
        thumbnail=thumbnail,
        download_urls=download_urls_from_formats(info.get("formats") or []),
        thumbnails=thumbnail_urls(video_id) if include_thumbnails and video_id else {},
        video_id=video_id,
    )


class YtDlpFetcher:
    def __init__(self, timeout_seconds: float = 30.0):
        self.timeout_seconds = timeout_seconds

    def _extract(self, url: str, **opts: Any) -> dict[str, Any]:
        params = {"quiet": True, "no_warnings": True, "skip_download": True, **opts}
        with yt_dlp.YoutubeDL(params) as ydl:
            info = ydl.extract_info(url, download=False)
        if not isinstance(info, dict):
            raise MetadataError("No metadata returned")
        return info

    async def _extract_async(self, url: str, **opts: Any) -> dict[str, Any]:
        try:
            return await asyncio.wait_for(
                run_in_threadpool(self._extract, url, **opts),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise MetadataError("Timed out fetching metadata") from exc
        except DownloadError as exc:
            logger.warning("metadata_extract_failed", extra={"url": url, "error": str(exc)})
            raise MetadataError("Video unavailable or could not be analyzed") from exc

    async def fetch_video(self, url: str, include_thumbnails: bool = True) -> VideoMetadata:
        info = await self._extract_async(url, noplaylist=True)
        return video_metadata_from_info(info, include_thumbnails)

    async def fetch_playlist(
        self,
        playlist_id: str,
        max_videos: int = 10,
        include_thumbnails: bool = True,
    ) -> PlaylistMetadata:
        playlist_url = f"https://www.youtube.com/playlist?list={playlist_id}"
        info = await self._extract_async(
            playlist_url,
            extract_flat="in_playlist",
            playlistend=max_videos,
        )

        entries = [e for e in (info.get("entries") or []) if e and e.get("id")][:max_videos]
        videos: list[VideoMetadata] = []
        for entry in entries:
            video_url = f"https://www.youtube.com/watch?v={entry['id']}"
            try:
                videos.append(await self.fetch_video(video_url, include_thumbnails))
            except MetadataError as exc:
                # one broken entry should not sink the whole playlist
                logger.warning(
                    "playlist_video_failed",
                    extra={"playlist_id": playlist_id, "video_id": entry["id"], "error": str(exc)},
                )

        thumbnails = info.get("thumbnails") or []
        return PlaylistMetadata(
            title=info.get("title") or "",
            description=info.get("description") or "",
            author=info.get("uploader") or info.get("channel") or "Unknown",
            video_count=int(info.get("playlist_count") or len(entries)),
            thumbnail=(thumbnails[-1].get("url") if thumbnails else "") or "",
            playlist_id=playlist_id,
            videos=videos,
        )
