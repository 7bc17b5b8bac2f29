import json

import respx
from httpx import Response

from datachat_cli import DEFAULT_API_BASE, main


def test_ingest_prints_summary_and_writes_output(tmp_path, capsys):
    out = tmp_path / "rockets.json"
    body = {
        "fileName": "rockets_2_videos.json",
        "videoCount": 2,
        "data": {"channelHandle": "@rockets", "videos": [{"videoId": "a"}, {"videoId": "b"}]},
    }
    with respx.mock(assert_all_called=True) as respx_mock:
        route = respx_mock.post(f"{DEFAULT_API_BASE}/api/youtube/channel").mock(
            return_value=Response(200, json=body)
        )
        code = main(["ingest", "@rockets", "--max-videos", "2", "--output", str(out)])
        sent = json.loads(route.calls.last.request.content.decode("utf-8"))

    assert code == 0
    assert sent == {"channelUrl": "@rockets", "maxVideos": 2}
    assert json.loads(out.read_text(encoding="utf-8"))["videos"][1]["videoId"] == "b"
    printed = capsys.readouterr().out
    assert "Fetched 2 videos -> rockets_2_videos.json" in printed


def test_ingest_failure_reports_detail_message(capsys):
    with respx.mock(assert_all_called=True) as respx_mock:
        respx_mock.post("http://api.local/api/youtube/channel").mock(
            return_value=Response(404, json={"detail": {"code": "channel_not_found", "message": "Channel not found"}})
        )
        code = main(["--base-url", "http://api.local/", "ingest", "@nobody"])

    assert code == 1
    assert "HTTP 404 Channel not found" in capsys.readouterr().out


def test_sessions_lists_rows(capsys):
    sessions = [
        {"id": "s2", "title": "Views by month", "message_count": 4},
        {"id": "s1", "title": "", "message_count": 2},
    ]
    with respx.mock(assert_all_called=True) as respx_mock:
        route = respx_mock.get(f"{DEFAULT_API_BASE}/api/sessions").mock(
            return_value=Response(200, json={"sessions": sessions})
        )
        assert main(["sessions", "alice"]) == 0
        assert route.calls.last.request.url.params["owner"] == "alice"

    lines = capsys.readouterr().out.splitlines()
    assert lines[0].startswith("s2")
    assert "Views by month" in lines[0]
    assert lines[1].startswith("s1")


def test_sessions_empty_and_missing_command(capsys):
    with respx.mock(assert_all_called=True) as respx_mock:
        respx_mock.get(f"{DEFAULT_API_BASE}/api/sessions").mock(return_value=Response(200, json={"sessions": []}))
        assert main(["sessions", "alice"]) == 0
    assert "No sessions." in capsys.readouterr().out
    assert main([]) == 1
