import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .aggregator import AggregateState, CancellationToken, StreamAggregator
from .db import utc_now
from .errors import TurnValidationError, UpstreamError
from .mode_router import RouteDecision, TurnContext, route_turn
from .schemas import ImageAttachment, Message
from .sessions import ChatController
from .tabular import BASE64_MAX_CHARS
from .tools import ToolEngine

logger = logging.getLogger("uvicorn.error")

Emit = Callable[[str, Dict[str, Any]], Union[None, Awaitable[None]]]

CATALOG_FIELDS = "title, description, url, duration, publishedAt, viewCount, likeCount, commentCount, transcript"

CATALOG_SYSTEM_INSTRUCTION = (
    "You are analyzing a YouTube channel dataset. Use the provided tools for statistics, charts, "
    "video selection and image generation instead of computing values yourself. After a tool call, "
    "explain the result briefly."
)
TABULAR_SYSTEM_INSTRUCTION = (
    "You are analyzing a CSV dataset with columns: {columns}. Use the provided tools for statistics, "
    "charts and row selection; pass column names exactly as they appear in the header."
)


def display_content(text: str, ctx: TurnContext) -> str:
    """What the user bubble shows and what gets stored. Never carries encoded data."""
    if text:
        return text
    if ctx.images:
        return "(Image)"
    if ctx.has_catalog:
        return "(YouTube JSON attached)"
    return "(CSV attached)"


def default_prompt(ctx: TurnContext) -> str:
    if ctx.images:
        return "What do you see in this image?"
    if ctx.has_catalog:
        return "Analyze this channel data."
    return "Please analyze this CSV data."


def build_prompt(text: str, ctx: TurnContext, decision: RouteDecision) -> str:
    prefix = ""
    if ctx.has_catalog:
        prefix += (
            f'[YouTube channel JSON: "{ctx.catalog_name}", {len(ctx.catalog.videos)} videos. '
            f"Fields: {CATALOG_FIELDS}.]\n\n"
        )
    table = ctx.tabular
    if table is not None and ctx.tabular_fresh:
        prefix += (
            f'[CSV File: "{table.name}" | {table.row_count} rows | Columns: {", ".join(table.headers)}]\n\n'
            f"{table.summary_text()}\n\nFull dataset (key columns):\n```csv\n{table.slim_csv()}\n```\n\n"
        )
        if decision.needs_base64:
            prefix += (
                "IMPORTANT: to load the full data in Python use this exact pattern:\n"
                "```python\n"
                "import pandas as pd, io, base64\n"
                f'df = pd.read_csv(io.BytesIO(base64.b64decode("{table.encoded()}")))\n'
                "```\n\n"
            )
            if table.truncated:
                prefix += (
                    f"Note: the encoded data stops after {BASE64_MAX_CHARS} characters, "
                    "so the last row may be partial.\n\n"
                )
        prefix += "---\n\n"
    elif table is not None:
        prefix += f"[CSV columns: {', '.join(table.headers)}]\n\n{table.summary_text()}\n\n---\n\n"
    return prefix + (text or default_prompt(ctx))


def validate_turn(text: str, images: Optional[List[ImageAttachment]], ctx: TurnContext) -> None:
    if not (text or "").strip() and not images and not ctx.tabular_fresh and not ctx.has_catalog:
        raise TurnValidationError("Nothing to send: add text or an attachment.")


async def _call(emit: Optional[Emit], event_type: str, payload: Dict[str, Any]) -> None:
    if emit is None:
        return
    result = emit(event_type, payload)
    if inspect.isawaitable(result):
        await result


class TurnRunner:
    """Drives one user turn from routing through persistence."""

    def __init__(self, completion: Any, tools: Optional[ToolEngine] = None, aggregator: Optional[StreamAggregator] = None):
        self.completion = completion
        self.tools = tools or ToolEngine()
        self.aggregator = aggregator or StreamAggregator()

    async def run(
        self,
        controller: ChatController,
        text: str,
        images: Optional[List[ImageAttachment]] = None,
        token: Optional[CancellationToken] = None,
        emit: Optional[Emit] = None,
    ) -> Message:
        text = (text or "").strip()
        ctx = controller.context
        validate_turn(text, images, ctx)
        token = token or CancellationToken()
        controller.begin_turn()
        try:
            ctx.images = list(images or [])
            decision = route_turn(text, ctx)
            prompt = build_prompt(text, ctx, decision)
            history = controller.history()
            session_error: Optional[UpstreamError] = None
            try:
                session_id = await controller.ensure_session()
            except UpstreamError as exc:
                session_error = exc
                session_id = controller.active_session_id
            logger.info("Turn for session %s routed to %s", session_id, decision.route)
            await _call(
                emit,
                "route",
                {"route": decision.route, "needs_base64": decision.needs_base64, "session_id": session_id},
            )

            user_msg = Message(
                role="user",
                content=display_content(text, ctx),
                timestamp=utc_now(),
                images=list(ctx.images),
            )
            controller.messages.append(user_msg)
            assistant = Message(role="assistant", timestamp=utc_now())
            saved = 0
            try:
                if session_error is not None:
                    raise session_error
                await controller.persist(session_id, user_msg)
                saved += 1
                await self._generate(decision, ctx, history, prompt, token, emit, assistant)
            except UpstreamError as exc:
                logger.warning("Turn failed upstream: %s", exc.message)
                assistant.content = f"Error: {exc.message}"
                assistant.parts = None
                await _call(emit, "error", exc.to_detail())
            assistant.cancelled = token.cancelled

            controller.messages.append(assistant)
            if session_error is None:
                try:
                    await controller.persist(session_id, assistant)
                    saved += 1
                except UpstreamError as exc:
                    logger.warning("Assistant message not saved: %s", exc.message)
                    await _call(emit, "error", exc.to_detail())
            if saved:
                controller.record_completed_turn(session_id, saved)
            summary = controller.active_session
            await _call(
                emit,
                "turn_complete",
                {
                    "session_id": session_id,
                    "message": assistant.model_dump(exclude_none=True),
                    "message_count": summary.message_count if summary else None,
                },
            )
            return assistant
        finally:
            controller.end_turn()

    async def _generate(
        self,
        decision: RouteDecision,
        ctx: TurnContext,
        history: List[dict],
        prompt: str,
        token: CancellationToken,
        emit: Optional[Emit],
        assistant: Message,
    ) -> None:
        if decision.route in ("catalog-tools", "tabular-tools"):
            if decision.route == "catalog-tools":
                dataset: Any = ctx.catalog
                instruction = CATALOG_SYSTEM_INSTRUCTION
            else:
                dataset = ctx.tabular
                instruction = TABULAR_SYSTEM_INSTRUCTION.format(columns=", ".join(ctx.tabular.headers))
            declarations = self.tools.declarations_for(dataset)
            result = await self.completion.chat_with_tools(
                history,
                prompt,
                declarations,
                lambda name, args: self.tools.execute(name, args, dataset),
                instruction,
            )
            assistant.content = result.text
            assistant.charts = list(result.charts)
            assistant.tool_calls = list(result.tool_calls)
            assistant.tool_images = list(result.images)
            assistant.selections = list(result.selections)
            for call in result.tool_calls:
                await _call(emit, "tool_call", call.model_dump())
            return

        stream = self.completion.stream_chat(
            history,
            prompt,
            ctx.images,
            decision.route == "code-execution",
        )

        async def forward(state: AggregateState) -> None:
            event = state.last_event
            if event is None:
                return
            if event.type == "text":
                await _call(emit, "delta", {"text": event.text})
            elif event.type == "fullResponse":
                await _call(emit, "parts", {"parts": [p.model_dump(exclude_none=True) for p in state.parts or []]})
            elif event.type == "grounding" and state.grounding is event.grounding:
                await _call(emit, "grounding", state.grounding.model_dump())

        state = await self.aggregator.consume(stream, token, forward)
        assistant.content = state.saved_content()
        assistant.parts = state.parts
        assistant.grounding = state.grounding
