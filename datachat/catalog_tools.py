import math
from typing import Any, Dict, List, Optional

from .errors import ToolResolutionError
from .fields import FieldResolver, catalog_resolver
from .images import ImageSynthesizer
from .numeric import coerce_number, day_of, describe, parse_duration, parse_timestamp
from .schemas import ChartResult, SelectionResult, SeriesPoint, StatsResult

CATALOG_TOOL_DECLARATIONS: List[Dict[str, Any]] = [
    {
        "name": "generateImage",
        "description": (
            "Generate an image from a text prompt and optionally an anchor video. Use when the user asks to "
            "generate a thumbnail, banner, or visual concept for the channel."
        ),
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "prompt": {
                    "type": "STRING",
                    "description": "Detailed description of the image (composition, colors, mood, text overlays).",
                },
                "anchorTitle": {
                    "type": "STRING",
                    "description": "Optional title of a channel video to use as style reference.",
                },
            },
            "required": ["prompt"],
        },
    },
    {
        "name": "plot_metric_vs_time",
        "description": (
            "Plot a numeric metric (views, likes, comments, duration) against publish date. Use when the user "
            "asks to plot, graph, or visualize a metric over time."
        ),
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "metric": {
                    "type": "STRING",
                    "description": "Numeric field: viewCount, likeCount, commentCount, or durationSeconds.",
                },
            },
            "required": ["metric"],
        },
    },
    {
        "name": "play_video",
        "description": (
            "Select and display one video from the loaded channel data, by title, by ordinal "
            '("first", "second"), or by "most viewed" / "most liked" / "most commented".'
        ),
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "videoTitle": {"type": "STRING", "description": "Exact or partial video title."},
                "ordinal": {
                    "type": "NUMBER",
                    "description": "1-based position when videos are sorted newest first.",
                },
                "sortBy": {
                    "type": "STRING",
                    "description": 'One of "most_viewed", "most_liked", "most_commented".',
                },
            },
        },
    },
    {
        "name": "compute_stats_json",
        "description": (
            "Compute count, mean, median, std, min and max for a numeric field of the channel videos. Use for "
            "statistics, averages or summaries of viewCount, likeCount, commentCount or durationSeconds."
        ),
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "field": {
                    "type": "STRING",
                    "description": "Numeric field: viewCount, likeCount, commentCount, or durationSeconds.",
                },
            },
            "required": ["field"],
        },
    },
]

SORT_KEYS = {
    "most_viewed": "viewCount",
    "most_liked": "likeCount",
    "most_commented": "commentCount",
}

_resolver: Optional[FieldResolver] = None


def get_resolver() -> FieldResolver:
    global _resolver
    if _resolver is None:
        _resolver = catalog_resolver()
    return _resolver


def _resolve_field(records: List[Dict[str, Any]], name: Any) -> str:
    extra = list(records[0].keys()) if records else []
    return get_resolver().resolve_or_raw(name, extra_fields=extra)


def _field_value(record: Dict[str, Any], field: str) -> Any:
    value = record.get(field)
    if field == "durationSeconds" and not value and record.get("duration"):
        value = parse_duration(record.get("duration"))
    return value


def compute_stats_json(records: List[Dict[str, Any]], args: Dict[str, Any]) -> StatsResult:
    field = _resolve_field(records, args.get("field"))
    return describe(field or str(args.get("field") or ""), (_field_value(r, field) for r in records))


def plot_metric_vs_time(records: List[Dict[str, Any]], args: Dict[str, Any]) -> ChartResult:
    metric = _resolve_field(records, args.get("metric"))
    points: List[SeriesPoint] = []
    for record in records:
        date = day_of(record.get("publishedAt"))
        if not date:
            continue
        value = coerce_number(_field_value(record, metric)) or 0.0
        points.append(SeriesPoint(date=date, value=value, title=str(record.get("title") or "")[:30]))
    points.sort(key=lambda p: p.date)
    return ChartResult(metric=metric or str(args.get("metric") or ""), data=points)


def _video_card(record: Dict[str, Any]) -> SelectionResult:
    video_id = record.get("videoId")
    return SelectionResult(
        selection_type="video_card",
        record={
            "videoId": video_id,
            "title": record.get("title"),
            "url": record.get("url") or f"https://www.youtube.com/watch?v={video_id}",
            "thumbnailUrl": record.get("thumbnailUrl"),
        },
    )


def _published_sort_key(record: Dict[str, Any]) -> float:
    parsed = parse_timestamp(record.get("publishedAt"))
    return parsed.timestamp() if parsed else 0.0


def _match_title(records: List[Dict[str, Any]], query: str) -> Optional[Dict[str, Any]]:
    q = query.lower()
    for record in records:
        if q in str(record.get("title") or "").lower():
            return record
    for record in records:
        prefix = str(record.get("title") or "").lower()[:20]
        if prefix and prefix in q:
            return record
    return None


def play_video(records: List[Dict[str, Any]], args: Dict[str, Any]) -> SelectionResult:
    selected: Optional[Dict[str, Any]] = None
    sort_by = args.get("sortBy")
    ordinal = args.get("ordinal")
    title = str(args.get("videoTitle") or "").strip()
    if sort_by:
        key = SORT_KEYS.get(str(sort_by).strip().lower(), "viewCount")
        selected = max(records, key=lambda r: coerce_number(r.get(key)) or 0.0)
    elif ordinal is not None and coerce_number(ordinal) is not None:
        idx = max(0, math.floor(coerce_number(ordinal)) - 1)
        newest_first = sorted(records, key=_published_sort_key, reverse=True)
        selected = newest_first[idx] if idx < len(newest_first) else None
    elif title:
        selected = _match_title(records, title)
    if selected is None:
        raise ToolResolutionError("NoMatch", "No matching video found.")
    return _video_card(selected)


def generate_image(records: List[Dict[str, Any]], args: Dict[str, Any], synthesizer: ImageSynthesizer):
    prompt = str(args.get("prompt") or "").strip() or "YouTube channel visual"
    anchor = args.get("anchorTitle")
    anchor_title = None
    if anchor:
        match = _match_title(records, str(anchor))
        anchor_title = str(match.get("title")) if match else str(anchor)
    return synthesizer.synthesize(prompt, anchor_title)


CATALOG_TOOLS = {
    "compute_stats_json": compute_stats_json,
    "plot_metric_vs_time": plot_metric_vs_time,
    "play_video": play_video,
}
