import logging
from datetime import datetime
from typing import Any, List, Optional

from .errors import SessionNotFoundError, TurnInProgressError, UpstreamError
from .mode_router import TurnContext
from .schemas import Message, SessionSummary

logger = logging.getLogger("uvicorn.error")

UNSAVED_SESSION_ID = "new"


def default_title(now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    return f"Chat · {now:%b} {now.day} {now:%H:%M}"


class ChatController:
    """Session lifecycle for one owner: unsaved -> active -> deleted.

    The store is only touched when something must be persisted: a brand new
    chat stays local until its first message is sent.
    """

    def __init__(self, store: Any, owner: str, agent_tag: str = "lisa"):
        self.store = store
        self.owner = owner
        self.agent_tag = agent_tag
        self.sessions: List[SessionSummary] = []
        self.active_session_id: str = UNSAVED_SESSION_ID
        self.messages: List[Message] = []
        self.context = TurnContext()
        self.turn_active = False

    @property
    def state(self) -> str:
        return "unsaved" if self.active_session_id == UNSAVED_SESSION_ID else "active"

    @property
    def active_session(self) -> Optional[SessionSummary]:
        return next((s for s in self.sessions if s.id == self.active_session_id), None)

    async def load(self) -> List[SessionSummary]:
        rows = await self.store.list_sessions(self.owner)
        self.sessions = [SessionSummary(**row) for row in rows]
        self.active_session_id = UNSAVED_SESSION_ID
        self.messages = []
        return self.sessions

    def _ensure_idle(self, action: str) -> None:
        if self.turn_active:
            raise TurnInProgressError(f"Cannot {action} while a turn is in progress.")

    def new_chat(self) -> None:
        self._ensure_idle("start a new chat")
        self.active_session_id = UNSAVED_SESSION_ID
        self.messages = []
        self.context.clear()

    async def select_session(self, session_id: str) -> List[Message]:
        if session_id == self.active_session_id:
            return self.messages
        self._ensure_idle("switch sessions")
        if session_id == UNSAVED_SESSION_ID:
            self.new_chat()
            return self.messages
        if not any(s.id == session_id for s in self.sessions):
            raise SessionNotFoundError(f"Unknown session: {session_id}")
        self.active_session_id = session_id
        self.messages = []
        self.context.clear()
        rows = await self.store.load_messages(session_id)
        self.messages = [Message(**row) for row in rows]
        return self.messages

    async def delete_session(self, session_id: str) -> str:
        if session_id == self.active_session_id:
            self._ensure_idle("delete the active session")
        await self.store.delete_session(session_id)
        self.sessions = [s for s in self.sessions if s.id != session_id]
        if self.active_session_id == session_id:
            self.active_session_id = self.sessions[0].id if self.sessions else UNSAVED_SESSION_ID
            self.messages = []
            self.context.clear()
            if self.active_session_id != UNSAVED_SESSION_ID:
                rows = await self.store.load_messages(self.active_session_id)
                self.messages = [Message(**row) for row in rows]
        return self.active_session_id

    def begin_turn(self) -> None:
        self._ensure_idle("start another turn")
        self.turn_active = True

    def end_turn(self) -> None:
        self.turn_active = False
        self.context.end_turn()

    async def ensure_session(self, title: Optional[str] = None) -> str:
        """Promotes an unsaved chat to a stored session on its first send."""
        if self.active_session_id != UNSAVED_SESSION_ID:
            return self.active_session_id
        title = title or default_title()
        try:
            row = await self.store.create_session(self.owner, self.agent_tag, title)
        except UpstreamError:
            raise
        except Exception as exc:
            raise UpstreamError(f"Could not create session: {exc}") from exc
        summary = SessionSummary(
            id=row["id"],
            owner=self.owner,
            agent=self.agent_tag,
            title=title,
            created_at=row.get("created_at") or "",
            message_count=0,
        )
        self.sessions.insert(0, summary)
        self.active_session_id = summary.id
        logger.info("Created session %s for %s", summary.id, self.owner)
        return summary.id

    async def persist(self, session_id: str, message: Message) -> None:
        try:
            await self.store.append_message(
                session_id,
                message.role,
                message.content,
                message.images or None,
                message.charts or None,
                message.tool_calls or None,
            )
        except Exception as exc:
            raise UpstreamError(f"Could not save message: {exc}") from exc

    def record_completed_turn(self, session_id: str, saved: int = 2) -> None:
        for summary in self.sessions:
            if summary.id == session_id:
                summary.message_count += saved

    def history(self) -> List[dict]:
        return [{"role": m.role, "content": m.content} for m in self.messages if m.content]

    def snapshot(self) -> dict:
        return {
            "owner": self.owner,
            "state": self.state,
            "active_session_id": self.active_session_id,
            "turn_active": self.turn_active,
            "sessions": [s.model_dump() for s in self.sessions],
            "messages": [m.model_dump(exclude_none=True) for m in self.messages],
            "attachments": {
                "tabular": self.context.tabular.name if self.context.tabular else None,
                "tabular_fresh": self.context.tabular_fresh,
                "catalog": self.context.catalog_name if self.context.has_catalog else None,
            },
        }
