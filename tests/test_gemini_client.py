import json

import pytest
import respx
from httpx import Response

from datachat.errors import UpstreamError
from datachat.gemini import GeminiClient
from datachat.schemas import ChartResult, ErrorResult, ImageAttachment, ImageResult, SeriesPoint

BASE = "https://generativelanguage.googleapis.com/v1beta/models/test-model"


def _sse(*chunks):
    return "".join(f"data: {json.dumps(chunk)}\r\n\r\n" for chunk in chunks)


def _parts(*parts, grounding=None):
    candidate = {"content": {"role": "model", "parts": list(parts)}}
    if grounding:
        candidate["groundingMetadata"] = grounding
    return {"candidates": [candidate]}


async def _collect(stream):
    return [event async for event in stream]


@pytest.mark.asyncio
async def test_stream_chat_yields_text_then_grounding():
    client = GeminiClient("g-key", model="test-model")
    captured = {}
    body = _sse(
        _parts({"text": "Rust 1.80 "}),
        _parts(
            {"text": "shipped."},
            grounding={
                "groundingChunks": [{"web": {"uri": "https://blog.rust-lang.org", "title": "Rust Blog"}}],
                "webSearchQueries": ["rust release"],
            },
        ),
    )
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["headers"] = request.headers
                captured["params"] = request.url.params
                return Response(200, text=body, headers={"Content-Type": "text/event-stream"})

            respx_mock.post(f"{BASE}:streamGenerateContent").mock(side_effect=handler)
            events = await _collect(
                client.stream_chat(
                    [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}],
                    "what's new?",
                )
            )
    finally:
        await client.close()

    assert [e.type for e in events] == ["text", "text", "grounding"]
    assert "".join(e.text for e in events if e.type == "text") == "Rust 1.80 shipped."
    assert events[-1].grounding.sources == [{"uri": "https://blog.rust-lang.org", "title": "Rust Blog"}]
    assert captured["headers"]["x-goog-api-key"] == "g-key"
    assert captured["params"]["alt"] == "sse"
    assert captured["json"]["tools"] == [{"googleSearch": {}}]
    assert [c["role"] for c in captured["json"]["contents"]] == ["user", "model", "user"]


@pytest.mark.asyncio
async def test_stream_chat_code_execution_emits_full_response():
    client = GeminiClient("g-key", model="test-model")
    captured = {}
    body = _sse(
        _parts({"text": "Let me compute."}),
        _parts(
            {"executableCode": {"language": "PYTHON", "code": "print(1+1)"}},
            {"codeExecutionResult": {"outcome": "OUTCOME_OK", "output": "2\n"}},
        ),
        _parts({"text": "The answer "}, {"text": "is 2."}),
    )
    image = ImageAttachment(data="aW1n", mime_type="image/jpeg")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                return Response(200, text=body)

            respx_mock.post(f"{BASE}:streamGenerateContent").mock(side_effect=handler)
            events = await _collect(client.stream_chat([], "add numbers", [image], code_execution=True))
    finally:
        await client.close()

    assert captured["json"]["tools"] == [{"code_execution": {}}]
    user_parts = captured["json"]["contents"][-1]["parts"]
    assert user_parts[0] == {"inlineData": {"mimeType": "image/jpeg", "data": "aW1n"}}
    assert user_parts[-1] == {"text": "add numbers"}
    full = events[-1]
    assert full.type == "fullResponse"
    assert [p.type for p in full.parts] == ["text", "code", "result", "text"]
    assert full.parts[1].language == "python"
    assert full.parts[3].text == "The answer is 2."


@pytest.mark.asyncio
async def test_stream_chat_http_error_raises_upstream():
    client = GeminiClient("g-key", model="test-model")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(f"{BASE}:streamGenerateContent").mock(
                return_value=Response(429, json={"error": {"message": "Resource exhausted"}})
            )
            with pytest.raises(UpstreamError) as excinfo:
                await _collect(client.stream_chat([], "hi"))
            assert excinfo.value.message == "Resource exhausted"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_missing_api_key_is_upstream_error():
    client = GeminiClient(None, model="test-model")
    try:
        with pytest.raises(UpstreamError):
            await _collect(client.stream_chat([], "hi"))
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_function_calling_loop_executes_tools_and_returns_text():
    client = GeminiClient("g-key", model="test-model")
    requests = []
    responses = [
        _parts({"functionCall": {"name": "plot_metric_vs_time", "args": {"metric": "views"}}}),
        _parts({"functionCall": {"name": "generateImage", "args": {"prompt": "banner"}}}),
        _parts({"text": "Here is your chart and banner."}),
    ]
    executed = []

    def execute_tool(name, args):
        executed.append((name, args))
        if name == "generateImage":
            return ImageResult(data="c3Zn", prompt=args["prompt"])
        return ChartResult(metric="viewCount", data=[SeriesPoint(date="2024-01-01", value=5)])

    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                requests.append(json.loads(request.content.decode("utf-8")))
                return Response(200, json=responses[len(requests) - 1])

            respx_mock.post(f"{BASE}:generateContent").mock(side_effect=handler)
            result = await client.chat_with_tools(
                [], "plot views", [{"name": "plot_metric_vs_time"}], execute_tool, "Use tools."
            )
    finally:
        await client.close()

    assert result.text == "Here is your chart and banner."
    assert executed == [("plot_metric_vs_time", {"metric": "views"}), ("generateImage", {"prompt": "banner"})]
    assert len(result.charts) == 1
    assert len(result.images) == 1
    assert [c.name for c in result.tool_calls] == ["plot_metric_vs_time", "generateImage"]
    assert requests[0]["systemInstruction"] == {"parts": [{"text": "Use tools."}]}
    assert requests[0]["tools"] == [{"functionDeclarations": [{"name": "plot_metric_vs_time"}]}]
    image_reply = requests[2]["contents"][-1]["parts"][0]["functionResponse"]
    assert image_reply["name"] == "generateImage"
    assert "data" not in image_reply["response"]


@pytest.mark.asyncio
async def test_function_calling_loop_stops_after_max_rounds():
    client = GeminiClient("g-key", model="test-model", max_tool_rounds=2)
    calls = []

    def execute_tool(name, args):
        calls.append(name)
        return ErrorResult(code="NoMatch", message="nothing")

    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            route = respx_mock.post(f"{BASE}:generateContent").mock(
                return_value=Response(200, json=_parts({"functionCall": {"name": "play_video", "args": {}}}))
            )
            result = await client.chat_with_tools([], "play something", [], execute_tool)
            assert route.call_count == 2
    finally:
        await client.close()

    assert calls == ["play_video", "play_video"]
    assert result.text == ""
    assert all(c.result.kind == "error" for c in result.tool_calls)


@pytest.mark.asyncio
async def test_generate_http_error_raises_upstream():
    client = GeminiClient("g-key", model="test-model")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(f"{BASE}:generateContent").mock(
                return_value=Response(400, json={"error": {"message": "Invalid argument"}})
            )
            with pytest.raises(UpstreamError) as excinfo:
                await client.chat_with_tools([], "hi", [], lambda name, args: None)
            assert excinfo.value.message == "Invalid argument"
    finally:
        await client.close()
