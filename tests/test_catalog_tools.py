import base64

import pytest

from datachat.fields import FieldResolver, catalog_resolver
from datachat.schemas import ChannelDataset
from datachat.tools import ToolEngine


def _videos():
    return [
        {
            "videoId": "a",
            "title": "Intro to Rockets",
            "publishedAt": "2024-03-01T10:00:00Z",
            "viewCount": 1,
            "likeCount": 40,
            "commentCount": 2,
            "duration": "PT1M",
        },
        {
            "videoId": "b",
            "title": "Deep Sea Robots",
            "publishedAt": "2024-01-15T10:00:00Z",
            "viewCount": 2,
            "likeCount": 10,
            "commentCount": 9,
            "duration": "PT2M30S",
        },
        {
            "videoId": "c",
            "title": "Why the Sky is Blue",
            "publishedAt": "2024-02-10T23:30:00-05:00",
            "viewCount": 3,
            "likeCount": 5,
            "commentCount": 1,
            "duration": "PT1H",
        },
        {
            "videoId": "d",
            "title": "",
            "publishedAt": "not a date",
            "viewCount": 4,
            "likeCount": 1,
            "commentCount": 0,
        },
    ]


@pytest.fixture
def engine():
    return ToolEngine()


@pytest.fixture
def catalog():
    return ChannelDataset.model_validate(_videos())


def test_stats_on_view_counts(engine, catalog):
    result = engine.execute("compute_stats_json", {"field": "views"}, catalog)
    assert result.kind == "stats"
    assert result.field == "viewCount"
    assert result.count == 4
    assert result.mean == 2.5
    assert result.median == 2.5
    assert result.std == 1.12
    assert result.min == 1
    assert result.max == 4


def test_stats_resolve_loose_field_names(engine, catalog):
    assert engine.execute("compute_stats_json", {"field": "Like_Count"}, catalog).field == "likeCount"
    assert engine.execute("compute_stats_json", {"field": "comments"}, catalog).field == "commentCount"


def test_stats_derive_duration_seconds(engine, catalog):
    result = engine.execute("compute_stats_json", {"field": "length"}, catalog)
    assert result.field == "durationSeconds"
    assert result.count == 3
    assert result.min == 60
    assert result.max == 3600


def test_stats_on_text_field_is_no_numeric_data(engine, catalog):
    result = engine.execute("compute_stats_json", {"field": "title"}, catalog)
    assert result.kind == "error"
    assert result.code == "NoNumericData"


def test_plot_metric_vs_time_sorted_by_day(engine, catalog):
    result = engine.execute("plot_metric_vs_time", {"metric": "likes"}, catalog)
    assert result.kind == "chart"
    assert result.metric == "likeCount"
    assert [p.date for p in result.data] == ["2024-01-15", "2024-02-11", "2024-03-01"]
    assert [p.value for p in result.data] == [10, 5, 40]
    assert result.data[0].title == "Deep Sea Robots"


def test_play_video_most_viewed(engine, catalog):
    result = engine.execute("play_video", {"sortBy": "most_viewed"}, catalog)
    assert result.kind == "selection"
    assert result.selection_type == "video_card"
    assert result.record["videoId"] == "d"
    assert result.record["url"] == "https://www.youtube.com/watch?v=d"


def test_play_video_unknown_sort_falls_back_to_views(engine, catalog):
    result = engine.execute("play_video", {"sortBy": "most_shared"}, catalog)
    assert result.record["videoId"] == "d"


def test_play_video_most_liked_and_commented(engine, catalog):
    assert engine.execute("play_video", {"sortBy": "most_liked"}, catalog).record["videoId"] == "a"
    assert engine.execute("play_video", {"sortBy": "most_commented"}, catalog).record["videoId"] == "b"


def test_play_video_ordinal_is_newest_first(engine, catalog):
    assert engine.execute("play_video", {"ordinal": 1}, catalog).record["videoId"] == "a"
    assert engine.execute("play_video", {"ordinal": 2}, catalog).record["videoId"] == "c"


def test_play_video_ordinal_out_of_range(engine, catalog):
    result = engine.execute("play_video", {"ordinal": 10}, catalog)
    assert result.code == "NoMatch"


def test_play_video_by_title(engine, catalog):
    assert engine.execute("play_video", {"videoTitle": "sea robots"}, catalog).record["videoId"] == "b"
    result = engine.execute("play_video", {"videoTitle": "play why the sky is blue for me"}, catalog)
    assert result.record["videoId"] == "c"


def test_play_video_empty_title_never_matches(engine, catalog):
    result = engine.execute("play_video", {"videoTitle": "   "}, catalog)
    assert result.kind == "error"
    assert result.code == "NoMatch"


def test_generate_image_returns_svg(engine, catalog):
    result = engine.execute("generateImage", {"prompt": "bold <rocket> thumbnail", "anchorTitle": "rockets"}, catalog)
    assert result.kind == "image"
    assert result.mime_type == "image/svg+xml"
    svg = base64.b64decode(result.data).decode("utf-8")
    assert "&lt;rocket&gt;" in svg
    assert "Intro to Rockets" in svg


def test_generate_image_works_on_empty_catalog(engine):
    result = engine.execute("generateImage", {"prompt": "banner"}, [])
    assert result.kind == "image"


def test_empty_catalog_is_no_data(engine):
    result = engine.execute("compute_stats_json", {"field": "views"}, ChannelDataset())
    assert result.code == "NoData"


def test_tools_do_not_mutate_dataset(engine, catalog):
    before = catalog.to_wire()
    engine.execute("plot_metric_vs_time", {"metric": "duration"}, catalog)
    engine.execute("play_video", {"ordinal": 1}, catalog)
    assert catalog.to_wire() == before


def test_resolver_rejects_synonym_for_unknown_field():
    with pytest.raises(ValueError):
        FieldResolver(["title"], {"viewCount": {"views"}})


def test_catalog_resolver_maps_synonyms():
    resolver = catalog_resolver()
    assert resolver.resolve("VIEWS") == "viewCount"
    assert resolver.resolve("duration-seconds") == "durationSeconds"
    assert resolver.resolve("") is None
    assert resolver.resolve("shares") is None
