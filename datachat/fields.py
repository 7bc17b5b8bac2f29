import re
from typing import Dict, Iterable, List, Mapping, Optional, Set

_SEPARATORS_RE = re.compile(r"[\s_\-\.]+")


def normalize_field_name(value: object) -> str:
    return _SEPARATORS_RE.sub("", str(value or "")).lower()


# Canonical catalog field -> spoken synonyms.
CATALOG_FIELD_SYNONYMS: Dict[str, Set[str]] = {
    "viewCount": {"views", "view", "viewcount", "viewcounts", "plays"},
    "likeCount": {"likes", "like", "likecount", "likecounts"},
    "commentCount": {"comments", "comment", "commentcount", "commentcounts"},
    "durationSeconds": {"duration", "durationseconds", "length", "seconds", "runtime"},
}


class FieldResolver:
    """Maps loosely-specified field names onto a declared schema.

    The synonym table is checked against the schema on construction so that a
    typo in the table fails at startup instead of silently never matching.
    """

    def __init__(self, schema_fields: Iterable[str], synonyms: Optional[Mapping[str, Iterable[str]]] = None):
        self.schema_fields: List[str] = [str(f) for f in schema_fields]
        known = set(self.schema_fields)
        self._lookup: Dict[str, str] = {}
        for canonical, names in (synonyms or {}).items():
            if canonical not in known:
                raise ValueError(f"Synonym target {canonical!r} is not a declared field.")
            for name in names:
                self._lookup[normalize_field_name(name)] = canonical
        for field in self.schema_fields:
            self._lookup.setdefault(normalize_field_name(field), field)

    def resolve(self, name: object, extra_fields: Iterable[str] = ()) -> Optional[str]:
        key = normalize_field_name(name)
        if not key:
            return None
        if key in self._lookup:
            return self._lookup[key]
        for field in extra_fields:
            if normalize_field_name(field) == key:
                return str(field)
        return None

    def resolve_or_raw(self, name: object, extra_fields: Iterable[str] = ()) -> str:
        return self.resolve(name, extra_fields) or str(name or "")


def catalog_resolver() -> FieldResolver:
    from .schemas import VideoRecord

    return FieldResolver(VideoRecord.wire_fields(), CATALOG_FIELD_SYNONYMS)
