import asyncio
import re
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx
from youtube_transcript_api import YouTubeTranscriptApi

from .errors import IngestionFatalError, InvalidChannelUrl

DEFAULT_BASE_URL = "https://www.googleapis.com/youtube/v3"

_HANDLE_URL_RE = re.compile(r"youtube\.com/@([^/?#]+)", re.IGNORECASE)
_BARE_HANDLE_RE = re.compile(r"^@([A-Za-z0-9._\-]+)$")


def parse_channel_handle(channel_url: str) -> str:
    """Returns the handle (without '@') from a channel URL or a bare @handle."""
    value = str(channel_url or "").strip()
    match = _HANDLE_URL_RE.search(value) or _BARE_HANDLE_RE.match(value)
    if not match:
        raise InvalidChannelUrl("Use @handle URLs, e.g. https://www.youtube.com/@veritasium")
    return match.group(1)


def _error_message(response: httpx.Response, fallback: str) -> str:
    try:
        data = response.json()
    except ValueError:
        return fallback
    err = data.get("error") if isinstance(data, dict) else None
    if isinstance(err, dict) and err.get("message"):
        return str(err["message"])
    return fallback


class TranscriptFetcher(Protocol):
    async def fetch(self, video_id: str) -> str:
        ...


class TranscriptApiFetcher:
    """Fetches caption text through youtube-transcript-api; raises when none is available."""

    def __init__(self, api: Optional[YouTubeTranscriptApi] = None, languages: Sequence[str] = ("en",)):
        self.api = api or YouTubeTranscriptApi()
        self.languages = list(languages)

    async def fetch(self, video_id: str) -> str:
        transcript = await asyncio.to_thread(self.api.fetch, video_id, languages=self.languages)
        pieces = [" ".join(snippet.text.split()) for snippet in transcript]
        text = " ".join(p for p in pieces if p)
        if not text:
            raise LookupError(f"No transcript for {video_id}")
        return text


class YouTubeClient:
    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = DEFAULT_BASE_URL,
        transcript_fetcher: Optional[TranscriptFetcher] = None,
        timeout: float = 30,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        )
        self.transcripts: TranscriptFetcher = transcript_fetcher or TranscriptApiFetcher()

    async def _get(self, path: str, params: Dict[str, Any], failure: str) -> Dict[str, Any]:
        if not self.api_key:
            raise IngestionFatalError("YOUTUBE_API_KEY is not configured.")
        try:
            resp = await self.client.get(f"{self.base_url}/{path}", params={**params, "key": self.api_key})
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as exc:
            raise IngestionFatalError(_error_message(exc.response, failure)) from exc
        except httpx.RequestError as exc:
            raise IngestionFatalError(f"{failure}: {exc}") from exc
        except ValueError as exc:
            raise IngestionFatalError(f"{failure}: invalid JSON response") from exc

    async def get_channel_by_handle(self, handle: str) -> Optional[Dict[str, Any]]:
        data = await self._get(
            "channels",
            {"part": "snippet,contentDetails", "forHandle": handle},
            "YouTube API error",
        )
        items = data.get("items") or []
        return items[0] if items else None

    async def list_playlist_items(
        self, playlist_id: str, max_results: int, page_token: Optional[str] = None
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"part": "contentDetails", "playlistId": playlist_id, "maxResults": max_results}
        if page_token:
            params["pageToken"] = page_token
        return await self._get("playlistItems", params, "Playlist fetch failed")

    async def get_videos(self, video_ids: List[str]) -> List[Dict[str, Any]]:
        data = await self._get(
            "videos",
            {"part": "snippet,contentDetails,statistics", "id": ",".join(video_ids)},
            "Videos fetch failed",
        )
        return list(data.get("items") or [])

    async def fetch_transcript(self, video_id: str) -> str:
        return await self.transcripts.fetch(video_id)

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
