from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator


Role = Literal["user", "assistant"]
Route = Literal["catalog-tools", "tabular-tools", "code-execution", "streaming-search"]
ToolErrorCode = Literal["NoData", "NoNumericData", "NoMatch", "UnknownTool", "InvalidArguments"]


class ImageAttachment(BaseModel):
    data: str
    mime_type: str = "image/png"
    name: Optional[str] = None


class SeriesPoint(BaseModel):
    date: str
    value: float
    title: str = ""


class StatsResult(BaseModel):
    kind: Literal["stats"] = "stats"
    field: str
    count: int
    mean: float
    median: float
    std: float
    min: float
    max: float


class ChartResult(BaseModel):
    kind: Literal["chart"] = "chart"
    chart_type: Literal["metric_vs_time"] = "metric_vs_time"
    metric: str
    data: List[SeriesPoint] = Field(default_factory=list)


class ImageResult(BaseModel):
    kind: Literal["image"] = "image"
    data: str
    mime_type: str = "image/svg+xml"
    prompt: str = ""


class SelectionResult(BaseModel):
    kind: Literal["selection"] = "selection"
    selection_type: Literal["video_card", "row"]
    record: Dict[str, Any] = Field(default_factory=dict)


class ErrorResult(BaseModel):
    kind: Literal["error"] = "error"
    code: ToolErrorCode
    message: str


ToolResult = Annotated[
    Union[StatsResult, ChartResult, ImageResult, SelectionResult, ErrorResult],
    Field(discriminator="kind"),
]


class ToolCallRecord(BaseModel):
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)
    result: ToolResult


class StructuredPart(BaseModel):
    type: Literal["text", "code", "result", "image"]
    text: Optional[str] = None
    code: Optional[str] = None
    language: Optional[str] = None
    outcome: Optional[str] = None
    output: Optional[str] = None
    data: Optional[str] = None
    mime_type: Optional[str] = None


class Grounding(BaseModel):
    sources: List[Dict[str, str]] = Field(default_factory=list)
    queries: List[str] = Field(default_factory=list)


class Message(BaseModel):
    role: Role
    content: str = ""
    timestamp: str = ""
    images: List[ImageAttachment] = Field(default_factory=list)
    charts: List[ChartResult] = Field(default_factory=list)
    tool_calls: List[ToolCallRecord] = Field(default_factory=list)
    # Render-only; never persisted.
    parts: Optional[List[StructuredPart]] = None
    grounding: Optional[Grounding] = None
    tool_images: List[ImageResult] = Field(default_factory=list)
    selections: List[SelectionResult] = Field(default_factory=list)
    cancelled: bool = False


class SessionSummary(BaseModel):
    id: str
    owner: str
    agent: Optional[str] = None
    title: Optional[str] = None
    created_at: str
    message_count: int = 0


class VideoRecord(BaseModel):
    video_id: str = Field(alias="videoId")
    title: str = ""
    description: str = ""
    duration: Optional[str] = None
    duration_seconds: Optional[int] = Field(default=None, alias="durationSeconds")
    published_at: Optional[str] = Field(default=None, alias="publishedAt")
    view_count: int = Field(default=0, alias="viewCount")
    like_count: int = Field(default=0, alias="likeCount")
    comment_count: int = Field(default=0, alias="commentCount")
    url: str = ""
    thumbnail_url: Optional[str] = Field(default=None, alias="thumbnailUrl")
    channel_title: Optional[str] = Field(default=None, alias="channelTitle")
    transcript: Optional[str] = None

    model_config = {"populate_by_name": True, "extra": "allow"}

    @classmethod
    def wire_fields(cls) -> List[str]:
        return [info.alias or name for name, info in cls.model_fields.items()]


class ChannelDataset(BaseModel):
    channel_handle: Optional[str] = Field(default=None, alias="channelHandle")
    channel_id: Optional[str] = Field(default=None, alias="channelId")
    channel_title: Optional[str] = Field(default=None, alias="channelTitle")
    fetched_at: Optional[str] = Field(default=None, alias="fetchedAt")
    video_count: int = Field(default=0, alias="videoCount")
    videos: List[VideoRecord] = Field(default_factory=list)

    model_config = {"populate_by_name": True}

    @model_validator(mode="before")
    @classmethod
    def accept_bare_list(cls, data: Any) -> Any:
        if isinstance(data, list):
            return {"videos": data, "videoCount": len(data)}
        return data

    def records(self) -> List[Dict[str, Any]]:
        return [video.model_dump(by_alias=True) for video in self.videos]

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class TurnRequest(BaseModel):
    text: str = ""
    images: List[ImageAttachment] = Field(default_factory=list)


class CreateWorkspaceRequest(BaseModel):
    owner: str


class SelectSessionRequest(BaseModel):
    session_id: str


class CreateSessionRequest(BaseModel):
    owner: str
    agent: Optional[str] = None
    title: Optional[str] = None


class AppendMessageRequest(BaseModel):
    session_id: str
    role: Role
    content: str
    images: List[ImageAttachment] = Field(default_factory=list)
    charts: List[ChartResult] = Field(default_factory=list)
    tool_calls: List[ToolCallRecord] = Field(default_factory=list)


class ChannelIngestRequest(BaseModel):
    channel_url: str = Field(alias="channelUrl")
    max_videos: int = Field(default=10, alias="maxVideos")

    model_config = {"populate_by_name": True}

    @model_validator(mode="before")
    @classmethod
    def normalize_inputs(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        raw = data.get("maxVideos", data.get("max_videos"))
        try:
            count = int(raw) if raw not in (None, "") else 10
        except (TypeError, ValueError):
            count = 10
        cleaned = dict(data)
        cleaned.pop("max_videos", None)
        cleaned["maxVideos"] = count
        return cleaned
