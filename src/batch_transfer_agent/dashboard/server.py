"""FastAPI desk dashboard with WebSocket batch progress."""

from __future__ import annotations

import json
import logging

import uvicorn
from fastapi import FastAPI, Query, WebSocket, WebSocketDisconnect

from batch_transfer_agent.core.message_bus import PROGRESS_TOPIC, BusMessage
from batch_transfer_agent.core.service import TransferAgentService

logger = logging.getLogger("batch_transfer_agent.dashboard")

_app = FastAPI(title="Batch Transfer Agent Desk")
_service: TransferAgentService | None = None
_profile_slug: str = "default"
_websockets: list[WebSocket] = []


async def _broadcast_ws(event: str, data: dict) -> None:
    """Send an event to all connected WebSocket clients."""
    payload = json.dumps({"event": event, "data": data}, default=str)
    disconnected = []
    for ws in _websockets:
        try:
            await ws.send_text(payload)
        except Exception:
            disconnected.append(ws)
    for ws in disconnected:
        _websockets.remove(ws)


async def _on_progress(message: BusMessage) -> None:
    await _broadcast_ws(message.topic, message.payload)


def attach(service: TransferAgentService) -> FastAPI:
    """Serve *service* (used by tests and by the startup hook)."""
    global _service
    _service = service
    service.bus.subscribe(PROGRESS_TOPIC, _on_progress)
    return _app


@_app.on_event("startup")
async def startup():
    if _service is None:
        attach(await TransferAgentService.load(profile=_profile_slug))
        logger.info(f"Dashboard started for profile '{_profile_slug}'")


@_app.on_event("shutdown")
async def shutdown():
    if _service:
        await _service.shutdown()


# ------------------------------------------------------------------
# API routes
# ------------------------------------------------------------------


@_app.get("/api/desk")
async def api_desk():
    if not _service:
        return {"error": "Profile not loaded"}
    tasks = await _service.desk.list_tasks()
    return [t.model_dump(mode="json") for t in tasks]


async def _desk_action(action: str, task_id: str) -> dict:
    if not _service:
        return {"error": "Profile not loaded"}
    try:
        await getattr(_service.desk, action)(task_id)
    except ValueError as e:
        return {"error": str(e)}
    await _broadcast_ws(f"desk.{action}", {"id": task_id})
    return {"ok": True, "id": task_id}


@_app.post("/api/desk/{task_id}/cancel")
async def api_desk_cancel(task_id: str):
    return await _desk_action("cancel", task_id)


@_app.post("/api/desk/{task_id}/dismiss")
async def api_desk_dismiss(task_id: str):
    return await _desk_action("dismiss", task_id)


@_app.post("/api/desk/{task_id}/retry")
async def api_desk_retry(task_id: str):
    return await _desk_action("retry", task_id)


@_app.get("/api/history")
async def api_history(batch_id: str | None = Query(None), limit: int = Query(100)):
    if not _service:
        return {"error": "Profile not loaded"}
    records = await _service.store.list_history(_service.config.user_id, batch_id=batch_id, limit=limit)
    return [r.model_dump(mode="json") for r in records]


@_app.get("/api/notifications")
async def api_notifications(unread: bool = Query(False)):
    if not _service:
        return {"error": "Profile not loaded"}
    return await _service.notifier.list_for(_service.config.user_id, unread_only=unread)


@_app.get("/api/progress")
async def api_progress():
    if not _service:
        return {"error": "Profile not loaded"}
    history = _service.bus.get_history(limit=100, topic=PROGRESS_TOPIC)
    return [
        {"batch": m.source, "data": m.payload, "timestamp": m.timestamp.isoformat()}
        for m in history
    ]


# ------------------------------------------------------------------
# WebSocket
# ------------------------------------------------------------------


@_app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    await ws.accept()
    _websockets.append(ws)
    try:
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        if ws in _websockets:
            _websockets.remove(ws)


# ------------------------------------------------------------------
# Runner
# ------------------------------------------------------------------


def run_dashboard(host: str = "127.0.0.1", port: int = 8430, profile: str = "default") -> None:
    global _profile_slug
    _profile_slug = profile
    uvicorn.run(_app, host=host, port=port, log_level="info")
