import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import FileResponse, StreamingResponse
from pydantic import ValidationError

from .aggregator import CancellationToken
from .config import AppSettings, CONFIG_PATH, load_settings, save_settings
from .db import Database
from .errors import DatachatError, TurnInProgressError
from .events import EventBus
from .gemini import GeminiClient
from .ingestion import ChannelIngestor, clamp_count, export_dataset
from .schemas import (
    AppendMessageRequest,
    ChannelDataset,
    ChannelIngestRequest,
    CreateSessionRequest,
    CreateWorkspaceRequest,
    SelectSessionRequest,
    TurnRequest,
)
from .sessions import ChatController
from .tabular import parse_csv
from .tools import ToolEngine
from .turns import TurnRunner, validate_turn
from .youtube import YouTubeClient

logger = logging.getLogger("uvicorn.error")


@dataclass
class Workspace:
    id: str
    controller: ChatController
    token: Optional[CancellationToken] = None
    task: Optional[asyncio.Task] = None

    @property
    def busy(self) -> bool:
        return self.task is not None and not self.task.done()


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.bus


def get_completion(request: Request) -> GeminiClient:
    return request.app.state.completion


def get_youtube(request: Request) -> YouTubeClient:
    return request.app.state.youtube


def get_runner(request: Request) -> TurnRunner:
    return request.app.state.runner


def get_workspaces(request: Request) -> Dict[str, Workspace]:
    return request.app.state.workspaces


def get_turn_tasks(request: Request) -> Dict[str, asyncio.Task]:
    return request.app.state.turn_tasks


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def get_data_dir(request: Request) -> Path:
    return request.app.state.data_dir


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


def http_error(exc: DatachatError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())


def get_workspace(workspace_id: str, workspaces: Dict[str, Workspace] = Depends(get_workspaces)) -> Workspace:
    workspace = workspaces.get(workspace_id)
    if not workspace:
        raise HTTPException(status_code=404, detail="Workspace not found")
    return workspace


def _ensure_idle(workspace: Workspace) -> None:
    if workspace.busy or workspace.controller.turn_active:
        raise http_error(TurnInProgressError("A turn is in progress."))


router = APIRouter()


@router.get("/api/status")
async def status(
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    workspaces: Dict[str, Workspace] = Depends(get_workspaces),
):
    counts = await db.counts()
    return {
        "ok": True,
        "counts": counts,
        "workspaces": len(workspaces),
        "gemini_configured": bool(settings.gemini_api_key),
        "youtube_configured": bool(settings.youtube_api_key),
        "model": settings.gemini_model,
    }


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    completion: GeminiClient = Depends(get_completion),
    youtube: YouTubeClient = Depends(get_youtube),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    try:
        new_settings = AppSettings(**{**settings.model_dump(), **body})
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.errors())
    save_settings(new_settings, config_path=config_path)
    request.app.state.settings = new_settings
    completion.api_key = new_settings.gemini_api_key
    completion.model = new_settings.gemini_model
    completion.max_tool_rounds = new_settings.max_tool_rounds
    youtube.api_key = new_settings.youtube_api_key
    request.app.state.ingestor.max_videos = new_settings.max_channel_videos
    request.app.state.ingestor.page_size = new_settings.youtube_page_size
    return {"ok": True, "settings": new_settings.to_safe_dict()}


# Store routes: thin wrappers over the persistence contract.


@router.get("/api/sessions")
async def list_sessions(owner: str, db: Database = Depends(get_db)):
    return {"sessions": await db.list_sessions(owner)}


@router.post("/api/sessions")
async def create_session(payload: CreateSessionRequest, db: Database = Depends(get_db)):
    session = await db.create_session(payload.owner, payload.agent, payload.title)
    return {"id": session["id"], "session": session}


@router.delete("/api/sessions/{session_id}")
async def delete_session(session_id: str, db: Database = Depends(get_db), bus: EventBus = Depends(get_event_bus)):
    deleted = await db.delete_session(session_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Session not found")
    await bus.emit("sessions", "session_deleted", {"session_id": session_id})
    return {"ok": True}


@router.patch("/api/sessions/{session_id}/title")
async def update_session_title(
    session_id: str,
    title: str = Body(..., embed=True),
    db: Database = Depends(get_db),
    workspaces: Dict[str, Workspace] = Depends(get_workspaces),
):
    cleaned = title.strip()
    if not cleaned:
        raise HTTPException(status_code=400, detail="Title required.")
    session = await db.update_session_title(session_id, cleaned)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    for workspace in workspaces.values():
        for summary in workspace.controller.sessions:
            if summary.id == session_id:
                summary.title = cleaned
    return {"session": session}


@router.get("/api/messages")
async def list_messages(session_id: str, db: Database = Depends(get_db)):
    if not await db.get_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"messages": await db.load_messages(session_id)}


@router.post("/api/messages")
async def append_message(payload: AppendMessageRequest, db: Database = Depends(get_db)):
    if not await db.get_session(payload.session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    message = await db.append_message(
        payload.session_id,
        payload.role,
        payload.content,
        payload.images or None,
        payload.charts or None,
        payload.tool_calls or None,
    )
    return {"ok": True, "message": message}


# Workspace routes: one ChatController per connected client.


@router.post("/api/workspaces")
async def create_workspace(
    payload: CreateWorkspaceRequest,
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    workspaces: Dict[str, Workspace] = Depends(get_workspaces),
):
    owner = payload.owner.strip()
    if not owner:
        raise HTTPException(status_code=400, detail="Owner required.")
    controller = ChatController(db, owner, agent_tag=settings.agent_tag)
    await controller.load()
    workspace = Workspace(id=uuid.uuid4().hex, controller=controller)
    workspaces[workspace.id] = workspace
    return {"workspace_id": workspace.id, **controller.snapshot()}


@router.get("/api/workspaces/{workspace_id}")
async def get_workspace_route(workspace: Workspace = Depends(get_workspace)):
    return {"workspace_id": workspace.id, **workspace.controller.snapshot()}


@router.post("/api/workspaces/{workspace_id}/new")
async def new_chat(workspace: Workspace = Depends(get_workspace)):
    _ensure_idle(workspace)
    workspace.controller.new_chat()
    return {"workspace_id": workspace.id, **workspace.controller.snapshot()}


@router.post("/api/workspaces/{workspace_id}/select")
async def select_session(payload: SelectSessionRequest, workspace: Workspace = Depends(get_workspace)):
    if payload.session_id != workspace.controller.active_session_id:
        _ensure_idle(workspace)
    try:
        await workspace.controller.select_session(payload.session_id)
    except DatachatError as exc:
        raise http_error(exc)
    return {"workspace_id": workspace.id, **workspace.controller.snapshot()}


@router.delete("/api/workspaces/{workspace_id}/sessions/{session_id}")
async def delete_workspace_session(
    session_id: str,
    workspace: Workspace = Depends(get_workspace),
    bus: EventBus = Depends(get_event_bus),
):
    if session_id == workspace.controller.active_session_id:
        _ensure_idle(workspace)
    try:
        active = await workspace.controller.delete_session(session_id)
    except DatachatError as exc:
        raise http_error(exc)
    await bus.emit("sessions", "session_deleted", {"session_id": session_id, "owner": workspace.controller.owner})
    return {"active_session_id": active, **workspace.controller.snapshot()}


@router.post("/api/workspaces/{workspace_id}/attachments")
async def attach_file(
    file: UploadFile = File(...),
    workspace: Workspace = Depends(get_workspace),
    settings: AppSettings = Depends(get_settings),
):
    _ensure_idle(workspace)
    if not file.filename:
        raise HTTPException(status_code=400, detail="Filename required.")
    name = Path(file.filename).name
    data = await file.read()
    if len(data) > settings.upload_max_mb * 1024 * 1024:
        raise HTTPException(status_code=400, detail=f"File too large (>{settings.upload_max_mb} MB).")
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="Attachments must be UTF-8 text.")
    ctx = workspace.controller.context
    lowered = name.lower()
    if lowered.endswith(".json") or file.content_type == "application/json":
        try:
            dataset = ChannelDataset.model_validate(json.loads(text))
        except (ValueError, ValidationError):
            raise HTTPException(status_code=400, detail="Invalid channel JSON.")
        ctx.attach_catalog(dataset, name)
        return {"kind": "catalog", "name": name, "video_count": len(dataset.videos)}
    if lowered.endswith(".csv") or file.content_type in ("text/csv", "application/vnd.ms-excel"):
        table = parse_csv(text, name)
        if table is None:
            raise HTTPException(status_code=400, detail="CSV has no header row.")
        ctx.attach_tabular(table)
        return {"kind": "tabular", "name": name, "row_count": table.row_count, "headers": table.headers}
    raise HTTPException(status_code=400, detail="Only .csv or .json attachments are allowed.")


@router.delete("/api/workspaces/{workspace_id}/attachments")
async def clear_attachments(workspace: Workspace = Depends(get_workspace)):
    _ensure_idle(workspace)
    workspace.controller.context.clear()
    return {"ok": True}


@router.post("/api/workspaces/{workspace_id}/turns")
async def start_turn(
    payload: TurnRequest,
    workspace: Workspace = Depends(get_workspace),
    runner: TurnRunner = Depends(get_runner),
    turn_tasks: Dict[str, asyncio.Task] = Depends(get_turn_tasks),
):
    controller = workspace.controller
    try:
        validate_turn(payload.text, payload.images, controller.context)
    except DatachatError as exc:
        raise http_error(exc)
    _ensure_idle(workspace)

    queue: asyncio.Queue = asyncio.Queue()
    token = CancellationToken()

    async def emit(event_type: str, data: Dict[str, Any]) -> None:
        await queue.put({"type": event_type, **data})

    async def run_and_cleanup() -> None:
        try:
            await runner.run(controller, payload.text, payload.images, token, emit)
        except DatachatError as exc:
            await emit("error", exc.to_detail())
        except Exception as exc:
            logger.exception("Turn failed")
            await emit("error", {"code": "internal_error", "message": str(exc)})
        finally:
            turn_tasks.pop(workspace.id, None)
            workspace.token = None
            await queue.put(None)

    workspace.token = token
    workspace.task = asyncio.create_task(run_and_cleanup())
    turn_tasks[workspace.id] = workspace.task

    async def event_generator():
        while True:
            event = await queue.get()
            if event is None:
                break
            yield sse_format(event)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.post("/api/workspaces/{workspace_id}/stop")
async def stop_turn(workspace: Workspace = Depends(get_workspace)):
    if workspace.token is None or not workspace.busy:
        return {"ok": True, "status": "idle"}
    workspace.token.cancel()
    logger.info("Stop requested for workspace %s", workspace.id)
    return {"ok": True, "status": "stopping"}


@router.post("/api/youtube/channel")
async def ingest_channel(
    payload: ChannelIngestRequest,
    request: Request,
    settings: AppSettings = Depends(get_settings),
    bus: EventBus = Depends(get_event_bus),
    data_dir: Path = Depends(get_data_dir),
):
    ingestor: ChannelIngestor = request.app.state.ingestor
    if not payload.channel_url.strip():
        raise HTTPException(status_code=400, detail="channelUrl required")
    count = clamp_count(payload.max_videos, settings.max_channel_videos)

    async def on_progress(percent: int) -> None:
        await bus.emit("ingest", "ingest_progress", {"channel_url": payload.channel_url, "progress": percent})

    try:
        dataset = await ingestor.ingest(payload.channel_url, count, on_progress)
    except DatachatError as exc:
        logger.warning("Channel ingestion failed: %s", exc.message)
        raise http_error(exc)
    file_name, _ = export_dataset(dataset, str(data_dir))
    return {
        "ok": True,
        "fileName": file_name,
        "videoCount": dataset.video_count,
        "data": dataset.to_wire(),
        "downloadUrl": f"/files/{file_name}",
    }


@router.get("/files/{file_name}")
async def download_file(file_name: str, data_dir: Path = Depends(get_data_dir)):
    safe_name = Path(file_name).name
    if safe_name != file_name or not safe_name.endswith(".json"):
        raise HTTPException(status_code=400, detail="Invalid filename.")
    path = data_dir / safe_name
    if not path.exists():
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(path, media_type="application/json", filename=safe_name)


@router.get("/events")
async def stream_global_events(topic: Optional[str] = None, bus: EventBus = Depends(get_event_bus)):
    async def event_generator():
        queue = await bus.subscribe(topic) if topic else await bus.subscribe_global()
        try:
            while True:
                ev = await queue.get()
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            if topic:
                await bus.unsubscribe(topic, queue)
            else:
                await bus.unsubscribe_global(queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    completion: Optional[Any] = None,
    youtube: Optional[Any] = None,
    tools: Optional[ToolEngine] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        app.state.data_dir.mkdir(parents=True, exist_ok=True)
        try:
            yield
        finally:
            for task in list(app.state.turn_tasks.values()):
                task.cancel()
            await app.state.completion.close()
            await app.state.youtube.close()

    app = FastAPI(title="Datachat", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.completion = completion or GeminiClient(
        settings.gemini_api_key,
        model=settings.gemini_model,
        base_url=settings.gemini_base_url,
        max_tool_rounds=settings.max_tool_rounds,
    )
    app.state.youtube = youtube or YouTubeClient(settings.youtube_api_key, base_url=settings.youtube_base_url)
    app.state.ingestor = ChannelIngestor(
        app.state.youtube,
        max_videos=settings.max_channel_videos,
        page_size=settings.youtube_page_size,
        transcript_concurrency=settings.transcript_concurrency,
    )
    app.state.runner = TurnRunner(app.state.completion, tools or ToolEngine())
    app.state.bus = EventBus()
    app.state.workspaces = {}
    app.state.turn_tasks = {}
    app.state.data_dir = Path(settings.data_dir).resolve()
    app.state.config_path = config_path or CONFIG_PATH

    app.include_router(router)
    return app


def main() -> None:
    import os
    import uvicorn

    settings = load_settings()
    reload_enabled = os.getenv("DATACHAT_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "datachat.main:create_default_app",
            factory=True,
            host=settings.host,
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass


def create_default_app() -> FastAPI:
    return create_app(load_settings())


if __name__ == "__main__":
    main()
