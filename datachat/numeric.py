import math
import re
import statistics
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional

from .errors import ToolResolutionError
from .schemas import StatsResult

_DURATION_RE = re.compile(r"PT(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?", re.IGNORECASE)


def parse_duration(value: Any) -> Optional[int]:
    """ISO-8601 video duration (PT1H2M3S) to total seconds."""
    if not value or not isinstance(value, str):
        return None
    match = _DURATION_RE.search(value)
    if not match:
        return None
    hours, minutes, seconds = (int(part or 0) for part in match.groups())
    return hours * 3600 + minutes * 60 + seconds


def coerce_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip().replace(",", "")
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def day_of(value: Any) -> Optional[str]:
    parsed = parse_timestamp(value)
    return parsed.date().isoformat() if parsed else None


def describe(field: str, raw_values: Iterable[Any]) -> StatsResult:
    values: List[float] = sorted(v for v in (coerce_number(x) for x in raw_values) if v is not None)
    if not values:
        raise ToolResolutionError("NoNumericData", f'No numeric values for field "{field}".')
    mean = statistics.fmean(values)
    return StatsResult(
        field=field,
        count=len(values),
        mean=round(mean, 2),
        median=round(statistics.median(values), 2),
        std=round(statistics.pstdev(values, mu=mean), 2),
        min=values[0],
        max=values[-1],
    )
