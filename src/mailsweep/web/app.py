"""FastAPI application exposing mailsweep status and controls."""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from mailsweep import __version__
from mailsweep.config import Config, load_config
from mailsweep.models import QueueStatus
from mailsweep.prompts import get_profile, supported_families
from mailsweep.service import ServiceContext
from mailsweep.storage import NotFoundError
from mailsweep.unsubscribe_executor import (
    UnsubscribeExecutor,
    run_pending_unsubscribes,
    run_unsubscribe_task,
)

logger = logging.getLogger(__name__)

STATUS_POLL_INTERVAL = 0.25
KEEPALIVE_INTERVAL = 30.0

EDITABLE_SETTINGS = ("worker_count", "queue_enabled", "ollama_model")


class ScanRequest(BaseModel):
    limit: int | None = None


class SettingUpdate(BaseModel):
    value: str


def _load_context(config_path: Path | None) -> ServiceContext:
    if config_path is None and os.environ.get("MAILSWEEP_CONFIG"):
        config_path = Path(os.environ["MAILSWEEP_CONFIG"])
    config = load_config(config_path) if config_path else Config(use_mock_imap=True)
    return ServiceContext(config)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown."""
    yield
    if app.state.owns_context and app.state.context is not None:
        app.state.context.close()


def create_app(
    context: ServiceContext | None = None, config_path: str | Path | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Without an explicit context, one is built on first use from
    ``config_path``, the ``MAILSWEEP_CONFIG`` environment variable, or a
    mock-mailbox default.
    """
    app = FastAPI(
        title="mailsweep",
        description="Mailbox cleanup with local LLM classification",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.context = context
    app.state.owns_context = context is None
    app.state.config_path = Path(config_path) if config_path else None
    app.state.context_lock = threading.Lock()

    # CORS for development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_routes(app)
    return app


def get_context(app: FastAPI) -> ServiceContext:
    with app.state.context_lock:
        if app.state.context is None:
            app.state.context = _load_context(app.state.config_path)
        return app.state.context


def register_routes(app: FastAPI) -> None:
    """Register all API routes."""

    def ctx(request: Request) -> ServiceContext:
        return get_context(request.app)

    @app.get("/api/health")
    def health(request: Request):
        """Health check endpoint."""
        context = ctx(request)
        return {
            "status": "ok",
            "version": __version__,
            "ollama": context.classifier.check_health(),
            "model": context.config.ollama.model,
        }

    @app.get("/api/stats")
    def stats(request: Request):
        context = ctx(request)
        return {**context.storage.get_statistics(), "queue": context.storage.queue_stats()}

    @app.get("/api/emails")
    def list_emails(
        request: Request, classification: str | None = None, limit: int = 100, offset: int = 0
    ):
        records = ctx(request).storage.list_emails(classification, limit=limit, offset=offset)
        return [
            {
                "id": r.id,
                "message_id": r.message_id,
                "from_addr": r.from_addr,
                "subject": r.subject,
                "date": r.date.isoformat() if r.date else None,
                "classification": r.classification.value,
                "confidence": r.confidence,
                "reasoning": r.reasoning,
                "deleted": r.deleted,
            }
            for r in records
        ]

    @app.get("/api/scans")
    def scan_logs(request: Request, limit: int = 20):
        return ctx(request).storage.get_scan_logs(limit)

    # Scan and classification

    @app.post("/api/scan")
    def start_scan(request: Request, body: ScanRequest | None = None):
        context = ctx(request)
        limit = (body.limit if body else None) or context.config.scan_limit
        if context.scan_status.is_active or not context.start_job(
            "scan", lambda: context.processor.process_emails(limit)
        ):
            raise HTTPException(status_code=409, detail="A scan or classification is already running")
        return {"status": "started", "limit": limit}

    @app.get("/api/scan/status")
    def scan_status(request: Request):
        return ctx(request).scan_status.get().model_dump()

    @app.post("/api/classify")
    def start_classify(request: Request):
        context = ctx(request)
        if context.scan_status.is_active or context.job_running("classify"):
            raise HTTPException(status_code=409, detail="A scan or classification is already running")
        context.batch_classifier.reset_cancel()
        if not context.start_job("classify", context.processor.classify_unclassified):
            raise HTTPException(status_code=409, detail="A scan or classification is already running")
        return {"status": "started"}

    @app.get("/api/classify/status")
    def classify_status(request: Request):
        return ctx(request).scan_status.get().model_dump()

    @app.post("/api/classify/cancel")
    def cancel_classify(request: Request):
        ctx(request).batch_classifier.cancel()
        return {"status": "cancelling"}

    @app.post("/api/classify/single/{email_id}")
    def classify_single(request: Request, email_id: int):
        context = ctx(request)
        try:
            result = context.processor.classify_single(email_id)
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        if result is None:
            record = context.storage.get_email(email_id)
            return {"status": "already_classified", "classification": record.classification.value}
        return {
            "status": "classified",
            "email_id": email_id,
            "classification": result.classification.value,
            "confidence": result.confidence,
        }

    # Import

    @app.post("/api/import")
    def start_import(request: Request):
        context = ctx(request)
        if context.import_status.is_active or not context.start_job("import", context.processor.import_all):
            raise HTTPException(status_code=409, detail="Import already in progress")
        return {"status": "started"}

    @app.get("/api/import/status")
    def import_status(request: Request):
        return ctx(request).import_status.get().model_dump()

    # Queue

    @app.get("/api/queue/stats")
    def queue_stats(request: Request):
        return ctx(request).pool.get_stats()

    @app.post("/api/queue/start")
    def queue_start(request: Request):
        context = ctx(request)
        context.pool.start()
        return {"status": "started", "workers": len(context.pool.workers)}

    @app.post("/api/queue/stop")
    def queue_stop(request: Request):
        ctx(request).pool.stop()
        return {"status": "stopped"}

    @app.get("/api/queue/items")
    def queue_items(request: Request, status: QueueStatus | None = None, limit: int = 100):
        return [item.to_dict() for item in ctx(request).storage.list_queue_items(status, limit)]

    @app.delete("/api/queue/clear")
    def queue_clear(request: Request, status: QueueStatus = QueueStatus.COMPLETED):
        deleted = ctx(request).storage.clear_queue(status)
        return {"status": "cleared", "deleted": deleted}

    @app.post("/api/queue/recover")
    def queue_recover(request: Request, older_than: float | None = None):
        context = ctx(request)
        recovered = context.storage.recover_stale(
            older_than if older_than is not None else context.config.queue.stale_after
        )
        return {"status": "recovered", "recovered": recovered}

    # Settings

    @app.get("/api/settings")
    def get_settings(request: Request):
        return ctx(request).storage.get_settings()

    @app.put("/api/settings/{key}")
    def put_setting(request: Request, key: str, update: SettingUpdate):
        if key not in EDITABLE_SETTINGS:
            raise HTTPException(status_code=404, detail=f"Unknown setting: {key}")
        value = update.value.strip()
        if key == "worker_count" and not value.isdigit():
            raise HTTPException(status_code=400, detail="worker_count must be a non-negative integer")
        if key == "queue_enabled" and value not in ("true", "false"):
            raise HTTPException(status_code=400, detail="queue_enabled must be 'true' or 'false'")

        context = ctx(request)
        context.storage.set_setting(key, value)
        if key == "worker_count":
            context.pool.sync_worker_count()
        return {"key": key, "value": value}

    # Unsubscribe

    @app.get("/api/unsubscribe/pending")
    def pending_unsubscribes(request: Request):
        return [
            {
                "id": t.id,
                "email_id": t.email_id,
                "sender": t.sender,
                "url": t.unsubscribe_url,
                "method": t.method.value,
                "created_at": t.created_at.isoformat() if t.created_at else None,
            }
            for t in ctx(request).storage.pending_unsubscribe_tasks()
        ]

    @app.post("/api/unsubscribe/{task_id}/execute")
    def execute_unsubscribe(request: Request, task_id: int):
        context = ctx(request)
        task = context.storage.get_unsubscribe_task(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail="Task not found")
        with UnsubscribeExecutor(context.classifier) as executor:
            result = run_unsubscribe_task(context.storage, executor, task, context.audit)
        return {"task_id": task_id, **result.model_dump(mode="json")}

    @app.post("/api/unsubscribe/execute-all")
    def execute_all_unsubscribes(request: Request):
        context = ctx(request)
        with UnsubscribeExecutor(context.classifier) as executor:
            outcomes = run_pending_unsubscribes(context.storage, executor, context.audit)
        if not outcomes:
            return {"status": "no_pending", "message": "No pending unsubscribe tasks"}

        successful = sum(1 for _, result in outcomes if result.success)
        return {
            "status": "completed",
            "total": len(outcomes),
            "successful": successful,
            "failed": len(outcomes) - successful,
            "results": [
                {
                    "task_id": task.id,
                    "sender": task.sender,
                    "success": result.success,
                    "explanation": result.explanation,
                    "next_action": result.next_action,
                }
                for task, result in outcomes
            ],
        }

    @app.post("/api/unsubscribe/{task_id}/complete")
    def complete_unsubscribe(request: Request, task_id: int):
        context = ctx(request)
        if context.storage.get_unsubscribe_task(task_id) is None:
            raise HTTPException(status_code=404, detail="Task not found")
        context.storage.finish_unsubscribe_task(task_id, True, {"explanation": "Marked done manually"})
        return {"status": "completed", "task_id": task_id}

    # Trash

    @app.post("/api/emails/trash-spam")
    def trash_spam(request: Request):
        outcome = ctx(request).processor.trash_spam()
        return {"status": "completed", **outcome}

    @app.post("/api/emails/{email_id}/trash")
    def trash_email(request: Request, email_id: int):
        context = ctx(request)
        try:
            record = context.storage.get_email(email_id)
            if record is not None and record.deleted:
                raise HTTPException(status_code=400, detail="Email already trashed")
            trashed = context.processor.trash_email(email_id)
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        if not trashed:
            raise HTTPException(status_code=500, detail="Failed to move to trash")
        return {"status": "trashed", "email_id": email_id}

    # Model profiles

    @app.get("/api/models/profiles")
    def model_profiles():
        return {family: get_profile(family).to_dict() for family in supported_families()}

    @app.get("/api/models/profile/{model}")
    def model_profile(model: str):
        return {"model": model, **get_profile(model).to_dict()}

    @app.websocket("/ws/status")
    async def websocket_status(websocket: WebSocket):
        """Stream scan status snapshots whenever they change."""
        await websocket.accept()
        reporter = get_context(websocket.app).scan_status
        last_version = -1
        idle = 0.0

        try:
            while True:
                version = reporter.version
                if version != last_version:
                    last_version = version
                    idle = 0.0
                    await websocket.send_json({"type": "scan_status", "data": reporter.get().model_dump()})
                elif idle >= KEEPALIVE_INTERVAL:
                    idle = 0.0
                    await websocket.send_json({"type": "keepalive"})

                try:
                    message = await asyncio.wait_for(
                        websocket.receive_text(), timeout=STATUS_POLL_INTERVAL
                    )
                    if message == "ping":
                        await websocket.send_text("pong")
                except asyncio.TimeoutError:
                    idle += STATUS_POLL_INTERVAL
        except WebSocketDisconnect:
            logger.debug("Status stream client disconnected")


# Default app instance
app = create_app()