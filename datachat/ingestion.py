import asyncio
import inspect
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from .db import utc_now
from .errors import ChannelNotFoundError, IngestionFatalError
from .numeric import parse_duration
from .schemas import ChannelDataset, VideoRecord
from .youtube import YouTubeClient, parse_channel_handle

logger = logging.getLogger("uvicorn.error")

ProgressCallback = Callable[[int], Union[None, Awaitable[None]]]

THUMBNAIL_PRIORITY = ("maxres", "standard", "high", "medium", "default")


def best_thumbnail(thumbnails: Dict[str, Any]) -> Optional[str]:
    for key in THUMBNAIL_PRIORITY:
        url = (thumbnails.get(key) or {}).get("url")
        if url:
            return url
    return None


def clamp_count(requested: Any, upper: int, default: int = 10) -> int:
    try:
        value = int(requested)
    except (TypeError, ValueError):
        value = default
    return max(1, min(upper, value))


def _to_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


class ChannelIngestor:
    """Pages a channel's uploads playlist into a ChannelDataset."""

    def __init__(
        self,
        client: YouTubeClient,
        max_videos: int = 100,
        page_size: int = 50,
        transcript_concurrency: int = 4,
    ):
        self.client = client
        self.max_videos = max_videos
        self.page_size = page_size
        self.transcript_concurrency = max(1, transcript_concurrency)

    async def _report(self, on_progress: Optional[ProgressCallback], percent: int) -> None:
        if on_progress is None:
            return
        result = on_progress(percent)
        if inspect.isawaitable(result):
            await result

    async def _transcript(self, video_id: str, gate: asyncio.Semaphore) -> Optional[str]:
        async with gate:
            try:
                return await self.client.fetch_transcript(video_id)
            except Exception as exc:
                logger.debug("Transcript unavailable for %s: %s", video_id, exc)
                return None

    def _record(self, video_id: str, item: Dict[str, Any], channel: Dict[str, Any], transcript: Optional[str]):
        snippet = item.get("snippet") or {}
        stats = item.get("statistics") or {}
        duration = (item.get("contentDetails") or {}).get("duration") or None
        return VideoRecord(
            video_id=video_id,
            title=snippet.get("title") or "",
            description=snippet.get("description") or "",
            duration=duration,
            duration_seconds=parse_duration(duration),
            published_at=snippet.get("publishedAt"),
            view_count=_to_int(stats.get("viewCount")),
            like_count=_to_int(stats.get("likeCount")),
            comment_count=_to_int(stats.get("commentCount")),
            url=f"https://www.youtube.com/watch?v={video_id}",
            thumbnail_url=best_thumbnail(snippet.get("thumbnails") or {}),
            channel_title=snippet.get("channelTitle") or (channel.get("snippet") or {}).get("title"),
            transcript=transcript,
        )

    async def ingest(
        self,
        channel_url: str,
        max_videos: Any = 10,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ChannelDataset:
        handle = parse_channel_handle(channel_url)
        total = clamp_count(max_videos, self.max_videos)
        channel = await self.client.get_channel_by_handle(handle)
        if not channel:
            raise ChannelNotFoundError(f"Channel not found: @{handle}")
        uploads = ((channel.get("contentDetails") or {}).get("relatedPlaylists") or {}).get("uploads")
        if not uploads:
            raise IngestionFatalError("Uploads playlist not found")

        logger.info("Ingesting up to %d videos from @%s", total, handle)
        gate = asyncio.Semaphore(self.transcript_concurrency)
        videos: List[VideoRecord] = []
        seen = set()
        page_token: Optional[str] = None
        while len(videos) < total:
            await self._report(on_progress, round(len(videos) / total * 80))
            page = await self.client.list_playlist_items(
                uploads, min(self.page_size, total - len(videos)), page_token
            )
            entries = page.get("items") or []
            ids: List[str] = []
            for entry in entries:
                video_id = (entry.get("contentDetails") or {}).get("videoId")
                if video_id and video_id not in seen:
                    seen.add(video_id)
                    ids.append(video_id)
            if ids:
                by_id = {item.get("id"): item for item in await self.client.get_videos(ids)}
                keep: List[Tuple[str, Dict[str, Any]]] = []
                for video_id in ids:
                    if video_id in by_id and len(videos) + len(keep) < total:
                        keep.append((video_id, by_id[video_id]))
                transcripts = await asyncio.gather(*(self._transcript(vid, gate) for vid, _ in keep))
                for (video_id, item), transcript in zip(keep, transcripts):
                    videos.append(self._record(video_id, item, channel, transcript))
            page_token = page.get("nextPageToken")
            if not entries or not page_token:
                break

        await self._report(on_progress, 95)
        dataset = ChannelDataset(
            channel_handle=f"@{handle}",
            channel_id=channel.get("id"),
            channel_title=(channel.get("snippet") or {}).get("title"),
            fetched_at=utc_now(),
            video_count=len(videos),
            videos=videos,
        )
        await self._report(on_progress, 100)
        logger.info("Ingested %d videos from @%s", len(videos), handle)
        return dataset


def export_dataset(dataset: ChannelDataset, data_dir: str) -> Tuple[str, Path]:
    safe_handle = (dataset.channel_handle or "channel").lstrip("@") or "channel"
    file_name = f"{safe_handle}_{dataset.video_count}_videos.json"
    out_dir = Path(data_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    path = out_dir / file_name
    path.write_text(json.dumps(dataset.to_wire(), indent=2), encoding="utf-8")
    return file_name, path
