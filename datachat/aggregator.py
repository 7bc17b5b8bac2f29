import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Set, Union

from .errors import UpstreamError
from .schemas import Grounding, StructuredPart

logger = logging.getLogger("uvicorn.error")

_background_tasks: Set[asyncio.Task] = set()
_DONE = object()


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class StreamEvent:
    type: str  # text | fullResponse | grounding
    text: str = ""
    parts: Optional[List[StructuredPart]] = None
    grounding: Optional[Grounding] = None


@dataclass
class AggregateState:
    content: str = ""
    parts: Optional[List[StructuredPart]] = None
    grounding: Optional[Grounding] = None
    cancelled: bool = False
    last_event: Optional[StreamEvent] = None

    def saved_content(self) -> str:
        if self.parts is not None:
            return "\n".join(p.text or "" for p in self.parts if p.type == "text")
        return self.content


UpdateCallback = Callable[[AggregateState], Union[None, Awaitable[None]]]


class StreamAggregator:
    """Single consumer of a generation stream.

    The producer is pumped by its own task into a queue, so a cancelled turn
    stops reading immediately while the producer runs to completion on its own.
    """

    def __init__(self, queue_size: int = 0):
        self.queue_size = queue_size

    async def consume(
        self,
        stream: AsyncIterator[StreamEvent],
        token: Optional[CancellationToken] = None,
        on_update: Optional[UpdateCallback] = None,
    ) -> AggregateState:
        token = token or CancellationToken()
        state = AggregateState()
        queue: asyncio.Queue = asyncio.Queue(self.queue_size)
        pump = asyncio.create_task(self._pump(stream, queue, token))
        _background_tasks.add(pump)
        pump.add_done_callback(_background_tasks.discard)

        while True:
            if token.cancelled:
                state.cancelled = True
                break
            item = await self._next(queue, token)
            if item is None:
                state.cancelled = True
                break
            if item is _DONE:
                break
            if isinstance(item, BaseException):
                raise UpstreamError(str(item) or item.__class__.__name__) from item
            self._apply(state, item)
            if on_update is not None:
                result = on_update(state)
                if inspect.isawaitable(result):
                    await result

        if state.cancelled:
            logger.info("Stream cancelled after %d chars", len(state.content))
        return state

    @staticmethod
    async def _next(queue: asyncio.Queue, token: CancellationToken) -> Any:
        getter = asyncio.ensure_future(queue.get())
        waiter = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait({getter, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if getter in done:
            return getter.result()
        getter.cancel()
        return None

    @staticmethod
    async def _pump(stream: AsyncIterator[StreamEvent], queue: asyncio.Queue, token: CancellationToken) -> None:
        try:
            async for event in stream:
                if not token.cancelled:
                    await queue.put(event)
        except Exception as exc:
            if token.cancelled:
                logger.warning("Producer failed after cancellation: %s", exc)
            else:
                await queue.put(exc)
            return
        await queue.put(_DONE)

    @staticmethod
    def _apply(state: AggregateState, event: StreamEvent) -> None:
        state.last_event = event
        if event.type == "text":
            state.content += event.text
        elif event.type == "fullResponse":
            state.parts = list(event.parts or [])
            state.content = ""
        elif event.type == "grounding":
            if state.grounding is None:
                state.grounding = event.grounding
