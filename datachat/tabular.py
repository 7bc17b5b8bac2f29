import base64
import csv
import io
import math
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import ToolResolutionError
from .fields import FieldResolver, normalize_field_name
from .images import ImageSynthesizer
from .numeric import coerce_number, day_of, describe, parse_timestamp
from .schemas import ChartResult, SelectionResult, SeriesPoint, StatsResult

MAX_ROWS = 50000
BASE64_MAX_CHARS = 500000
SLIM_MAX_ROWS = 400
SLIM_CELL_CHARS = 160
SLIM_FALLBACK_COLUMNS = 6
ENGAGEMENT_COLUMN = "engagement"

# Substrings that mark a column as worth sending to the model verbatim.
KEY_COLUMN_HINTS = (
    "text",
    "content",
    "title",
    "type",
    "date",
    "created",
    "published",
    "like",
    "favorite",
    "retweet",
    "repl",
    "comment",
    "view",
    "share",
    "engagement",
)
ENGAGEMENT_HINTS = ("like", "favorite", "retweet", "share", "repl", "comment", "quote")
DATE_HINTS = ("date", "time", "created", "published", "timestamp")

TABULAR_TOOL_DECLARATIONS: List[Dict[str, Any]] = [
    {
        "name": "compute_column_stats",
        "description": "Compute count, mean, median, std, min and max for a numeric CSV column.",
        "parameters": {
            "type": "OBJECT",
            "properties": {"column": {"type": "STRING", "description": "Column name from the CSV header."}},
            "required": ["column"],
        },
    },
    {
        "name": "plot_column_over_time",
        "description": "Plot a numeric CSV column against a date column, one point per row, oldest first.",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "column": {"type": "STRING", "description": "Numeric column to plot."},
                "date_column": {
                    "type": "STRING",
                    "description": "Optional date column; detected from the header when omitted.",
                },
            },
            "required": ["column"],
        },
    },
    {
        "name": "select_row",
        "description": (
            "Select one row: the row with the highest (or lowest) value of sort_by, the n-th row in file "
            "order, or the first row whose match_column contains match_text."
        ),
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "sort_by": {"type": "STRING", "description": "Numeric column to rank by."},
                "order": {"type": "STRING", "description": '"max" (default) or "min".'},
                "ordinal": {"type": "NUMBER", "description": "1-based row position."},
                "match_column": {"type": "STRING", "description": "Column to search."},
                "match_text": {"type": "STRING", "description": "Case-insensitive text to look for."},
            },
        },
    },
    {
        "name": "generateImage",
        "description": "Generate an illustrative image from a text prompt.",
        "parameters": {
            "type": "OBJECT",
            "properties": {"prompt": {"type": "STRING", "description": "Description of the image."}},
            "required": ["prompt"],
        },
    },
]


def _unique_headers(raw: List[str]) -> List[str]:
    seen: Dict[str, int] = {}
    headers: List[str] = []
    for idx, name in enumerate(raw):
        base = str(name).strip().strip('"') or f"column_{idx + 1}"
        count = seen.get(base, 0) + 1
        seen[base] = count
        headers.append(base if count == 1 else f"{base}_{count}")
    return headers


@dataclass
class ColumnSummary:
    name: str
    count: int
    kind: str
    mean: Optional[float] = None
    min: Optional[float] = None
    max: Optional[float] = None
    unique: Optional[int] = None
    top: Optional[str] = None


@dataclass
class TabularDataset:
    name: str
    headers: List[str]
    rows: List[Dict[str, str]]
    raw_text: str = ""
    summary: List[ColumnSummary] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.summary:
            self.summary = summarize_columns(self.headers, self.rows)
        self.resolver = FieldResolver(self.headers)

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def resolve_column(self, name: Any) -> str:
        column = self.resolver.resolve(name)
        if column is None:
            raise ToolResolutionError("NoMatch", f'Unknown column "{name}". Columns: {", ".join(self.headers)}')
        return column

    def key_columns(self) -> List[str]:
        picked = [h for h in self.headers if any(hint in normalize_field_name(h) for hint in KEY_COLUMN_HINTS)]
        return picked or self.headers[:SLIM_FALLBACK_COLUMNS]

    def slim_csv(self, max_rows: int = SLIM_MAX_ROWS) -> str:
        columns = self.key_columns()
        out = io.StringIO()
        writer = csv.writer(out, lineterminator="\n")
        writer.writerow(columns)
        for row in self.rows[:max_rows]:
            writer.writerow([" ".join(str(row.get(c, "")).split())[:SLIM_CELL_CHARS] for c in columns])
        return out.getvalue().rstrip("\n")

    def summary_text(self) -> str:
        lines = [f"Dataset summary ({self.row_count} rows, {len(self.headers)} columns):"]
        for col in self.summary:
            if col.kind == "numeric":
                lines.append(
                    f"- {col.name}: numeric, {col.count} values, mean={col.mean}, min={col.min}, max={col.max}"
                )
            elif col.kind == "date":
                lines.append(f"- {col.name}: date, {col.count} values")
            else:
                lines.append(f"- {col.name}: text, {col.count} values, {col.unique} unique, top={col.top!r}")
        return "\n".join(lines)

    def encoded(self) -> str:
        return base64.b64encode(self.raw_text[:BASE64_MAX_CHARS].encode("utf-8")).decode("ascii")

    @property
    def truncated(self) -> bool:
        return len(self.raw_text) > BASE64_MAX_CHARS


def summarize_columns(headers: List[str], rows: List[Dict[str, str]]) -> List[ColumnSummary]:
    summaries: List[ColumnSummary] = []
    for name in headers:
        cells = [row.get(name, "") for row in rows]
        present = [c for c in cells if str(c).strip() != ""]
        numbers = [n for n in (coerce_number(c) for c in present) if n is not None]
        if present and len(numbers) == len(present):
            summaries.append(
                ColumnSummary(
                    name=name,
                    count=len(numbers),
                    kind="numeric",
                    mean=round(sum(numbers) / len(numbers), 2),
                    min=min(numbers),
                    max=max(numbers),
                )
            )
            continue
        if present and all(parse_timestamp(c) for c in present[:50]):
            summaries.append(ColumnSummary(name=name, count=len(present), kind="date"))
            continue
        counts = Counter(present)
        top = counts.most_common(1)[0][0] if counts else None
        summaries.append(
            ColumnSummary(
                name=name,
                count=len(present),
                kind="text",
                unique=len(counts),
                top=str(top)[:60] if top is not None else None,
            )
        )
    return summaries


def enrich_with_engagement(headers: List[str], rows: List[Dict[str, str]]) -> List[str]:
    """Adds a summed engagement column when social counter columns exist."""
    if any(normalize_field_name(h) == ENGAGEMENT_COLUMN for h in headers):
        return headers
    counters = [
        h
        for h in headers
        if any(hint in normalize_field_name(h) for hint in ENGAGEMENT_HINTS)
        and all(coerce_number(r.get(h)) is not None for r in rows if str(r.get(h, "")).strip())
    ]
    if not counters or not rows:
        return headers
    for row in rows:
        total = sum(coerce_number(row.get(h)) or 0.0 for h in counters)
        row[ENGAGEMENT_COLUMN] = str(int(total)) if total.is_integer() else str(total)
    return headers + [ENGAGEMENT_COLUMN]


def parse_csv(text: str, name: str = "data.csv", max_rows: int = MAX_ROWS) -> Optional[TabularDataset]:
    data = (text or "").lstrip("﻿")
    reader = csv.reader(io.StringIO(data))
    raw_rows = [row for row in reader if any(cell.strip() for cell in row)]
    if not raw_rows:
        return None
    headers = _unique_headers(raw_rows[0])
    rows: List[Dict[str, str]] = []
    for raw in raw_rows[1 : max_rows + 1]:
        rows.append({key: raw[idx] if idx < len(raw) else "" for idx, key in enumerate(headers)})
    headers = enrich_with_engagement(headers, rows)
    return TabularDataset(name=name, headers=headers, rows=rows, raw_text=data)


def _detect_date_column(dataset: TabularDataset) -> Optional[str]:
    for col in dataset.summary:
        if col.kind == "date":
            return col.name
    for header in dataset.headers:
        if any(hint in normalize_field_name(header) for hint in DATE_HINTS):
            return header
    return None


def compute_column_stats(dataset: TabularDataset, args: Dict[str, Any]) -> StatsResult:
    column = dataset.resolve_column(args.get("column"))
    return describe(column, (row.get(column) for row in dataset.rows))


def plot_column_over_time(dataset: TabularDataset, args: Dict[str, Any]) -> ChartResult:
    column = dataset.resolve_column(args.get("column"))
    date_arg = args.get("date_column")
    date_column = dataset.resolve_column(date_arg) if date_arg else _detect_date_column(dataset)
    if not date_column:
        raise ToolResolutionError("NoMatch", "No date column found to plot against.")
    points: List[SeriesPoint] = []
    for row in dataset.rows:
        date = day_of(row.get(date_column))
        if not date:
            continue
        points.append(SeriesPoint(date=date, value=coerce_number(row.get(column)) or 0.0))
    points.sort(key=lambda p: p.date)
    return ChartResult(metric=column, data=points)


def select_row(dataset: TabularDataset, args: Dict[str, Any]) -> SelectionResult:
    selected: Optional[Dict[str, str]] = None
    ordinal = coerce_number(args.get("ordinal"))
    if args.get("sort_by"):
        column = dataset.resolve_column(args.get("sort_by"))
        ranked = [row for row in dataset.rows if coerce_number(row.get(column)) is not None]
        if ranked:
            pick = min if str(args.get("order") or "max").lower() == "min" else max
            selected = pick(ranked, key=lambda r: coerce_number(r.get(column)))
    elif ordinal is not None:
        idx = max(0, math.floor(ordinal) - 1)
        selected = dataset.rows[idx] if idx < len(dataset.rows) else None
    elif args.get("match_column") and str(args.get("match_text") or "").strip():
        column = dataset.resolve_column(args.get("match_column"))
        needle = str(args.get("match_text")).strip().lower()
        selected = next((r for r in dataset.rows if needle in str(r.get(column, "")).lower()), None)
    if selected is None:
        raise ToolResolutionError("NoMatch", "No matching row found.")
    return SelectionResult(selection_type="row", record=dict(selected))


def generate_image(dataset: TabularDataset, args: Dict[str, Any], synthesizer: ImageSynthesizer):
    prompt = str(args.get("prompt") or "").strip() or f"Visual for {dataset.name}"
    return synthesizer.synthesize(prompt)


TABULAR_TOOLS = {
    "compute_column_stats": compute_column_stats,
    "plot_column_over_time": plot_column_over_time,
    "select_row": select_row,
}
