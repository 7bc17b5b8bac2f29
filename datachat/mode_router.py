import re
from dataclasses import dataclass, field
from typing import List, Optional

from .schemas import ChannelDataset, ImageAttachment, Route
from .tabular import TabularDataset

# Requests only a code sandbox can satisfy; tools cannot render these.
PYTHON_ONLY_RE = re.compile(
    r"\b(regression|scatter|histogram|seaborn|matplotlib|numpy|time.?series|heatmap|box.?plot|violin|"
    r"distribut|linear.?model|logistic|forecast|trend.?line)",
    re.IGNORECASE,
)
CODE_RE = re.compile(
    r"\b(code|python|pandas|script|program|execute|run\s+(?:a|the|this|some)\s+\w+|write\s+(?:a\s+)?function)\b",
    re.IGNORECASE,
)


@dataclass
class TurnContext:
    """Attachments in play for one session. Images are per-turn; datasets persist until cleared."""

    tabular: Optional[TabularDataset] = None
    tabular_fresh: bool = False
    catalog: Optional[ChannelDataset] = None
    catalog_name: Optional[str] = None
    images: List[ImageAttachment] = field(default_factory=list)

    @property
    def has_catalog(self) -> bool:
        return bool(self.catalog and self.catalog.videos)

    @property
    def has_tabular(self) -> bool:
        return self.tabular is not None

    def has_input(self, text: str) -> bool:
        return bool((text or "").strip() or self.images or self.tabular_fresh or self.has_catalog)

    def attach_tabular(self, dataset: TabularDataset) -> None:
        self.tabular = dataset
        self.tabular_fresh = True

    def attach_catalog(self, dataset: ChannelDataset, name: Optional[str] = None) -> None:
        self.catalog = dataset
        self.catalog_name = name or dataset.channel_handle or "channel.json"

    def end_turn(self) -> None:
        self.tabular_fresh = False
        self.images = []

    def clear(self) -> None:
        self.tabular = None
        self.tabular_fresh = False
        self.catalog = None
        self.catalog_name = None
        self.images = []


@dataclass(frozen=True)
class RouteDecision:
    route: Route
    needs_base64: bool = False


def wants_python_only(text: str) -> bool:
    return bool(PYTHON_ONLY_RE.search(text or ""))


def wants_code(text: str) -> bool:
    return bool(CODE_RE.search(text or ""))


def route_turn(text: str, ctx: TurnContext) -> RouteDecision:
    python_only = wants_python_only(text)
    code = wants_code(text) and not ctx.has_tabular
    if ctx.has_catalog and not ctx.has_tabular:
        return RouteDecision("catalog-tools")
    if python_only or code:
        return RouteDecision("code-execution", needs_base64=ctx.tabular_fresh and python_only)
    if ctx.has_tabular and not ctx.tabular_fresh:
        return RouteDecision("tabular-tools")
    return RouteDecision("streaming-search")
