"""
main.py
───────
DailyRemind: FastAPI entry point.

Exposes:
  REST  /api/reminders        CRUD, toggle, templates
  REST  /api/executions       history and user actions (acknowledge/dismiss/snooze)
  REST  /api/stats            per-reminder stats and dashboard rollups
  REST  /api/preferences      user preferences
  REST  /api/export|import    whole-state JSON document
  WS    /ws                   real-time push of settled executions

The engine is built by ``create_app`` or injected by the caller.
"""

import asyncio
import os
import platform
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import Body, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from dailyremind.config import get_settings
from dailyremind.engine import Engine
from dailyremind.errors import (
    CapacityExceeded,
    DailyRemindError,
    ExecutionNotFound,
    InvalidImport,
    InvalidRecurrence,
    PermissionDenied,
    ReminderNotFound,
    StorageFailure,
    TemplateNotFound,
)
from dailyremind.logger import logger, setup_logging
from dailyremind.models import (
    Dashboard,
    Execution,
    PreferencesUpdate,
    Reminder,
    ReminderCreate,
    ReminderStats,
    ReminderTemplate,
    ReminderUpdate,
    UserPreferences,
)
from dailyremind.templates import DEFAULT_REMINDER_TEMPLATES

# ── WebSocket connection registry ─────────────────────────────────────────────

class ConnectionManager:
    def __init__(self):
        self.active: List[WebSocket] = []
        self._lock = asyncio.Lock()

    async def connect(self, ws: WebSocket):
        await ws.accept()
        async with self._lock:
            self.active.append(ws)

    async def disconnect(self, ws: WebSocket):
        async with self._lock:
            self.active = [c for c in self.active if c is not ws]

    async def broadcast(self, data: dict):
        async with self._lock:
            dead = []
            for ws in self.active:
                try:
                    await ws.send_json(data)
                except (WebSocketDisconnect, RuntimeError):
                    dead.append(ws)
            self.active = [c for c in self.active if c not in dead]


_STATUS_CODES = {
    InvalidRecurrence: 422,
    InvalidImport: 422,
    ReminderNotFound: 404,
    ExecutionNotFound: 404,
    TemplateNotFound: 404,
    PermissionDenied: 403,
    CapacityExceeded: 409,
    StorageFailure: 503,
}


def _status_for(exc: DailyRemindError) -> int:
    for cls, code in _STATUS_CODES.items():
        if isinstance(exc, cls):
            return code
    return 400


def create_app(engine: Optional[Engine] = None) -> FastAPI:
    if engine is None:
        settings = get_settings()
        setup_logging(settings.log_level, settings.log_file, settings.log_level)
        engine = Engine.from_settings(settings)

    ws_manager = ConnectionManager()
    loop_holder = {}

    def _on_settled(execution: Execution):
        """Called on the dispatcher thread whenever an execution settles."""
        loop = loop_holder.get("loop")
        if loop is None:
            return
        asyncio.run_coroutine_threadsafe(
            ws_manager.broadcast({"event": "execution_settled", "execution": execution.dump()}),
            loop,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        loop_holder["loop"] = asyncio.get_running_loop()
        logger.info(f"[DAILYREMIND] PID={os.getpid()} | Platform={platform.system()}")
        engine.scheduler.subscribe(_on_settled)
        try:
            engine.start()
        except PermissionDenied as e:
            logger.warning(f"Running in degraded mode: {e}")

        yield   # Application runs here

        engine.stop()
        logger.info("[DAILYREMIND] Shutdown complete.")

    app = FastAPI(title="DailyRemind", version="1.0.0", lifespan=lifespan)
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],    # Dev: allow all; restrict in production
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(DailyRemindError)
    async def _engine_error(request: Request, exc: DailyRemindError):
        code = _status_for(exc)
        if code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=code, content={"detail": str(exc)})

    # ── WebSocket endpoint ────────────────────────────────────────────────────

    @app.websocket("/ws")
    async def websocket_endpoint(ws: WebSocket):
        await ws_manager.connect(ws)
        try:
            while True:
                data = await ws.receive_json()
                # Handle ping keepalive
                if data.get("type") == "ping":
                    await ws.send_json({"type": "pong"})
        except WebSocketDisconnect:
            await ws_manager.disconnect(ws)

    # ── Reminder endpoints ────────────────────────────────────────────────────

    @app.get("/api/reminders", response_model=list[Reminder])
    def list_reminders():
        return engine.list_reminders()

    @app.post("/api/reminders", response_model=Reminder, status_code=201)
    def create_reminder(body: ReminderCreate):
        return engine.add_reminder(body)

    @app.post("/api/reminders/from-template/{template_id}", response_model=Reminder, status_code=201)
    def create_from_template(template_id: str):
        return engine.add_from_template(template_id)

    @app.get("/api/reminders/{reminder_id}", response_model=Reminder)
    def get_reminder(reminder_id: str):
        return engine.get_reminder(reminder_id)

    @app.patch("/api/reminders/{reminder_id}", response_model=Reminder)
    def update_reminder(reminder_id: str, body: ReminderUpdate):
        return engine.update_reminder(reminder_id, body)

    @app.post("/api/reminders/{reminder_id}/toggle", response_model=Reminder)
    def toggle_reminder(reminder_id: str, enabled: bool = Body(..., embed=True)):
        return engine.toggle_reminder(reminder_id, enabled)

    @app.delete("/api/reminders/{reminder_id}", status_code=204)
    def delete_reminder(reminder_id: str):
        engine.delete_reminder(reminder_id)
        return Response(status_code=204)

    @app.get("/api/reminders/{reminder_id}/executions", response_model=list[Execution])
    def reminder_executions(reminder_id: str):
        return engine.executions_for(reminder_id)

    @app.get("/api/templates", response_model=list[ReminderTemplate])
    def list_templates():
        return DEFAULT_REMINDER_TEMPLATES

    # ── Execution endpoints ───────────────────────────────────────────────────

    @app.get("/api/executions", response_model=list[Execution])
    def list_executions(since: Optional[datetime] = None, until: Optional[datetime] = None):
        if since is None and until is None:
            return engine.ledger.all()
        # Ledger times are naive local
        since = since.astimezone().replace(tzinfo=None) if since and since.tzinfo else since
        until = until.astimezone().replace(tzinfo=None) if until and until.tzinfo else until
        return engine.ledger.in_range(since or datetime.min, until or datetime.max)

    def _respond(execution_id: str, response: str, minutes: Optional[int] = None) -> Execution:
        settled = engine.respond(execution_id, response, minutes)
        if settled is None:
            raise HTTPException(status_code=409, detail="Execution is no longer pending")
        return settled

    @app.post("/api/executions/{execution_id}/acknowledge", response_model=Execution)
    def acknowledge(execution_id: str):
        return _respond(execution_id, "acknowledged")

    @app.post("/api/executions/{execution_id}/dismiss", response_model=Execution)
    def dismiss(execution_id: str):
        return _respond(execution_id, "dismissed")

    @app.post("/api/executions/{execution_id}/snooze", response_model=Execution)
    def snooze(execution_id: str, minutes: Optional[int] = Body(None, embed=True, gt=0)):
        return _respond(execution_id, "snoozed", minutes)

    @app.post("/api/reconcile", response_model=list[Execution])
    def reconcile():
        return engine.reconcile()

    # ── Stats ─────────────────────────────────────────────────────────────────

    @app.get("/api/stats", response_model=Dashboard)
    def dashboard():
        return engine.dashboard()

    @app.get("/api/stats/{reminder_id}", response_model=ReminderStats)
    def reminder_stats(reminder_id: str):
        engine.get_reminder(reminder_id)
        return engine.stats.get(reminder_id) or ReminderStats(reminder_id=reminder_id)

    # ── Preferences / data ────────────────────────────────────────────────────

    @app.get("/api/preferences", response_model=UserPreferences)
    def get_preferences():
        return engine.get_preferences()

    @app.patch("/api/preferences", response_model=UserPreferences)
    def update_preferences(body: PreferencesUpdate):
        return engine.update_preferences(body)

    @app.get("/api/export")
    def export_state():
        return Response(content=engine.export_state(), media_type="application/json")

    @app.post("/api/import")
    def import_state(document: dict = Body(...)):
        state = engine.import_state(document)
        return {"reminders": len(state.reminders), "executions": len(state.executions)}

    # ── Health / info ─────────────────────────────────────────────────────────

    @app.get("/api/health")
    def health():
        return {
            "status": "ok" if engine.scheduler.permission_granted else "degraded",
            "pid": os.getpid(),
            "platform": platform.system(),
            "python": platform.python_version(),
            "pendingRequests": len(engine.dispatcher.list_pending()),
            "capacityBacklog": engine.scheduler.backlog,
        }

    return app


# ── Entry point ───────────────────────────────────────────────────────────────

def run():
    import uvicorn

    settings = get_settings()
    uvicorn.run(create_app(), host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
