import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional

import httpx

from .aggregator import StreamEvent
from .errors import UpstreamError
from .schemas import (
    ChartResult,
    Grounding,
    ImageAttachment,
    ImageResult,
    SelectionResult,
    StructuredPart,
    ToolCallRecord,
)

logger = logging.getLogger("uvicorn.error")

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

ToolExecutor = Callable[[str, Dict[str, Any]], Any]


@dataclass
class ToolChatResult:
    text: str = ""
    charts: List[ChartResult] = field(default_factory=list)
    tool_calls: List[ToolCallRecord] = field(default_factory=list)
    images: List[ImageResult] = field(default_factory=list)
    selections: List[SelectionResult] = field(default_factory=list)


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(data, list) and data:
        data = data[0]
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        return json.dumps(data, ensure_ascii=True)
    return str(data)


def _grounding_from(candidate: Dict[str, Any]) -> Optional[Grounding]:
    meta = candidate.get("groundingMetadata")
    if not isinstance(meta, dict):
        return None
    sources = []
    for chunk in meta.get("groundingChunks") or []:
        web = chunk.get("web") or {}
        if web.get("uri"):
            sources.append({"uri": web["uri"], "title": web.get("title") or web["uri"]})
    queries = [str(q) for q in meta.get("webSearchQueries") or []]
    if not sources and not queries:
        return None
    return Grounding(sources=sources, queries=queries)


def _tool_response_payload(result: Any) -> Dict[str, Any]:
    if isinstance(result, ImageResult):
        # The model only needs to know the image exists.
        return {"kind": "image", "prompt": result.prompt, "status": "generated"}
    if hasattr(result, "model_dump"):
        return result.model_dump()
    return {"result": result}


class GeminiClient:
    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gemini-2.0-flash",
        base_url: str = DEFAULT_BASE_URL,
        max_tool_rounds: int = 5,
        timeout: float = 120,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.max_tool_rounds = max_tool_rounds
        self.client = httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise UpstreamError("GEMINI_API_KEY is not configured.")
        return {"Content-Type": "application/json", "x-goog-api-key": self.api_key}

    def _url(self, method: str) -> str:
        return f"{self.base_url}/models/{self.model}:{method}"

    @staticmethod
    def build_contents(
        history: List[Dict[str, str]],
        prompt: str,
        image_parts: Optional[List[ImageAttachment]] = None,
    ) -> List[Dict[str, Any]]:
        contents: List[Dict[str, Any]] = []
        for item in history:
            text = str(item.get("content") or "")
            if not text:
                continue
            role = "model" if item.get("role") in ("assistant", "model") else "user"
            contents.append({"role": role, "parts": [{"text": text}]})
        parts: List[Dict[str, Any]] = [
            {"inlineData": {"mimeType": img.mime_type, "data": img.data}} for img in image_parts or []
        ]
        parts.append({"text": prompt})
        contents.append({"role": "user", "parts": parts})
        return contents

    async def stream_chat(
        self,
        history: List[Dict[str, str]],
        prompt: str,
        image_parts: Optional[List[ImageAttachment]] = None,
        code_execution: bool = False,
    ) -> AsyncGenerator[StreamEvent, None]:
        payload = {
            "contents": self.build_contents(history, prompt, image_parts),
            "tools": [{"code_execution": {}}] if code_execution else [{"googleSearch": {}}],
        }
        url = self._url("streamGenerateContent")
        headers = self._headers()
        structured: List[StructuredPart] = []
        has_structured = False
        grounding: Optional[Grounding] = None
        try:
            async with self.client.stream("POST", url, params={"alt": "sse"}, json=payload, headers=headers) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    raise UpstreamError(_error_message(resp))
                async for line in resp.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    try:
                        chunk = json.loads(line[len("data:") :].strip())
                    except ValueError:
                        continue
                    candidate = (chunk.get("candidates") or [{}])[0]
                    for part in (candidate.get("content") or {}).get("parts") or []:
                        if "text" in part and not part.get("thought"):
                            structured.append(StructuredPart(type="text", text=part["text"]))
                            yield StreamEvent(type="text", text=part["text"])
                        elif "executableCode" in part:
                            has_structured = True
                            code = part["executableCode"]
                            structured.append(
                                StructuredPart(
                                    type="code",
                                    code=code.get("code", ""),
                                    language=str(code.get("language", "PYTHON")).lower(),
                                )
                            )
                        elif "codeExecutionResult" in part:
                            has_structured = True
                            res = part["codeExecutionResult"]
                            structured.append(
                                StructuredPart(type="result", outcome=res.get("outcome"), output=res.get("output", ""))
                            )
                        elif "inlineData" in part:
                            has_structured = True
                            inline = part["inlineData"]
                            structured.append(
                                StructuredPart(
                                    type="image",
                                    data=inline.get("data"),
                                    mime_type=inline.get("mimeType", "image/png"),
                                )
                            )
                    grounding = grounding or _grounding_from(candidate)
        except httpx.RequestError as exc:
            raise UpstreamError(f"Gemini request failed: {exc}") from exc
        if has_structured:
            yield StreamEvent(type="fullResponse", parts=_merge_text_parts(structured))
        if grounding is not None:
            yield StreamEvent(type="grounding", grounding=grounding)

    async def _generate(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = await self.client.post(self._url("generateContent"), json=payload, headers=self._headers())
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as exc:
            raise UpstreamError(_error_message(exc.response)) from exc
        except httpx.RequestError as exc:
            raise UpstreamError(f"Gemini request failed: {exc}") from exc

    async def chat_with_tools(
        self,
        history: List[Dict[str, str]],
        prompt: str,
        declarations: List[Dict[str, Any]],
        execute_tool: ToolExecutor,
        system_instruction: Optional[str] = None,
    ) -> ToolChatResult:
        contents = self.build_contents(history, prompt)
        result = ToolChatResult()
        for round_idx in range(self.max_tool_rounds):
            payload: Dict[str, Any] = {
                "contents": contents,
                "tools": [{"functionDeclarations": declarations}],
            }
            if system_instruction:
                payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}
            data = await self._generate(payload)
            candidate = (data.get("candidates") or [{}])[0]
            parts = (candidate.get("content") or {}).get("parts") or []
            calls = [p["functionCall"] for p in parts if "functionCall" in p]
            text = "".join(p.get("text", "") for p in parts if "text" in p and not p.get("thought"))
            if not calls:
                result.text = text
                return result
            contents.append({"role": "model", "parts": parts})
            responses = []
            for call in calls:
                name = str(call.get("name") or "")
                args = dict(call.get("args") or {})
                outcome = execute_tool(name, args)
                logger.info("Tool round %d: %s(%s) -> %s", round_idx + 1, name, args, getattr(outcome, "kind", "?"))
                result.tool_calls.append(ToolCallRecord(name=name, args=args, result=outcome))
                if isinstance(outcome, ChartResult):
                    result.charts.append(outcome)
                elif isinstance(outcome, ImageResult):
                    result.images.append(outcome)
                elif isinstance(outcome, SelectionResult):
                    result.selections.append(outcome)
                responses.append({"functionResponse": {"name": name, "response": _tool_response_payload(outcome)}})
            contents.append({"role": "user", "parts": responses})
            if text:
                result.text = text
        logger.warning("Tool loop stopped after %d rounds", self.max_tool_rounds)
        return result

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


def _merge_text_parts(parts: List[StructuredPart]) -> List[StructuredPart]:
    merged: List[StructuredPart] = []
    for part in parts:
        if part.type == "text" and merged and merged[-1].type == "text":
            merged[-1] = StructuredPart(type="text", text=(merged[-1].text or "") + (part.text or ""))
        else:
            merged.append(part)
    return merged
