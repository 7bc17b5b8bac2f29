import pytest

from datachat.mode_router import TurnContext, route_turn, wants_code, wants_python_only
from datachat.schemas import ChannelDataset, ImageAttachment
from datachat.tabular import parse_csv


def _catalog():
    return ChannelDataset.model_validate([{"videoId": "a", "title": "One", "viewCount": 5}])


def _table():
    return parse_csv("date,likes\n2024-01-01,3\n2024-01-02,5\n", "posts.csv")


@pytest.mark.parametrize(
    "text",
    [
        "run a regression on views",
        "make a scatter of likes vs views",
        "histogram please",
        "use seaborn",
        "plot with matplotlib",
        "numpy mean",
        "time series of views",
        "timeseries of likes",
        "draw a heatmap",
        "box plot by month",
        "violin chart",
        "show the distribution of likes",
        "fit a linear model",
        "logistic fit",
        "forecast next month",
        "add a trend line",
    ],
)
def test_python_only_keywords(text):
    assert wants_python_only(text)


def test_plain_questions_are_not_python_only():
    assert not wants_python_only("what is the capital of France?")
    assert not wants_code("what is the capital of France?")


def test_catalog_without_table_routes_to_catalog_tools_even_with_code_words():
    ctx = TurnContext()
    ctx.attach_catalog(_catalog(), "chan.json")
    assert route_turn("show a histogram of views with python", ctx).route == "catalog-tools"


def test_python_only_keyword_routes_to_code_execution():
    ctx = TurnContext()
    decision = route_turn("show the distribution of salaries", ctx)
    assert decision.route == "code-execution"
    assert decision.needs_base64 is False


def test_code_keyword_without_table_routes_to_code_execution():
    ctx = TurnContext()
    assert route_turn("write a function that reverses a string", ctx).route == "code-execution"


def test_code_keyword_with_resident_table_routes_to_tabular_tools():
    ctx = TurnContext()
    ctx.attach_tabular(_table())
    ctx.end_turn()
    assert route_turn("write python code for the average likes", ctx).route == "tabular-tools"


def test_fresh_table_with_python_only_keyword_needs_base64():
    ctx = TurnContext()
    ctx.attach_tabular(_table())
    decision = route_turn("regression of likes over date", ctx)
    assert decision.route == "code-execution"
    assert decision.needs_base64 is True


def test_fresh_table_without_keywords_streams():
    ctx = TurnContext()
    ctx.attach_tabular(_table())
    assert route_turn("what is in this file?", ctx).route == "streaming-search"


def test_resident_table_routes_to_tabular_tools():
    ctx = TurnContext()
    ctx.attach_tabular(_table())
    ctx.end_turn()
    assert not ctx.tabular_fresh
    assert route_turn("which day had the most likes?", ctx).route == "tabular-tools"


def test_catalog_with_resident_table_defers_to_table():
    ctx = TurnContext()
    ctx.attach_catalog(_catalog())
    ctx.attach_tabular(_table())
    ctx.end_turn()
    assert route_turn("most liked post", ctx).route == "tabular-tools"


def test_empty_context_streams_with_search():
    assert route_turn("latest news about rust", TurnContext()).route == "streaming-search"


def test_empty_catalog_does_not_count_as_present():
    ctx = TurnContext()
    ctx.attach_catalog(ChannelDataset.model_validate([]))
    assert not ctx.has_catalog
    assert route_turn("hello", ctx).route == "streaming-search"


def test_end_turn_clears_images_and_freshness():
    ctx = TurnContext()
    ctx.attach_tabular(_table())
    ctx.images = [ImageAttachment(data="aGk=")]
    ctx.end_turn()
    assert ctx.images == []
    assert ctx.tabular is not None
    assert ctx.tabular_fresh is False
    ctx.clear()
    assert ctx.tabular is None
