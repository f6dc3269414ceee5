"""
Procguard FastAPI application.

Exposes the supervisor's inbound interface over HTTP: start and stop
managed processes, read their status and history, and follow lifecycle and
error events as a Server-Sent Events stream.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from .config import config
from .errors import UnknownProcess
from .events import EventQueue
from .models import initialize_db
from .monitor import get_process_metrics
from .process import ProcessState, process_supervisor

# Configure logging with rotation
log_formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

# Rotating file handler (auto-compaction)
file_handler = RotatingFileHandler(
    config.supervisor_log,
    maxBytes=config.log_max_bytes,
    backupCount=config.log_backup_count,
)
file_handler.setFormatter(log_formatter)

# Console handler
console_handler = logging.StreamHandler()
console_handler.setFormatter(log_formatter)

# Configure root logger
logging.basicConfig(
    level=getattr(logging, config.log_level, logging.INFO),
    handlers=[file_handler, console_handler],
)
logger = logging.getLogger(__name__)

# Initialize database
initialize_db()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger.info("Starting procguard...")
    await process_supervisor.startup()

    yield

    logger.info("Shutting down procguard...")
    await process_supervisor.shutdown()


app = FastAPI(
    title="Procguard",
    description="Process supervision and automatic recovery for build/run processes",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Pydantic models for API
class ProcessCreate(BaseModel):
    command: str = Field(..., min_length=1, description="Command to run")
    working_directory: Optional[str] = Field(None, description="Working directory")
    environment: Optional[dict[str, str]] = Field(None, description="Extra environment variables")
    process_id: Optional[str] = Field(None, description="Identifier to run under (generated if omitted)")
    framework: Optional[str] = Field(None, description="Framework tag for scoped log classification")


def _process_response(process_id: str) -> dict:
    """Convert a process snapshot to a response dict."""
    try:
        process = process_supervisor.get_status(process_id)
    except UnknownProcess:
        raise HTTPException(status_code=404, detail=f"Process '{process_id}' not found")
    data = process.to_dict()
    data["active"] = not process.state.is_terminal
    return data


# Processes
@app.get("/api/processes")
async def list_processes():
    """List all managed processes."""
    return [p.to_dict() for p in process_supervisor.list_processes()]


@app.post("/api/processes")
async def start_process(data: ProcessCreate):
    """Start a command under supervision."""
    if data.process_id and process_supervisor.is_active(data.process_id):
        raise HTTPException(status_code=409, detail=f"Process '{data.process_id}' is already active")

    process_id = await process_supervisor.start_managed_process(
        data.command,
        working_directory=data.working_directory,
        environment=data.environment,
        process_id=data.process_id,
        framework=data.framework,
    )
    return _process_response(process_id)


@app.get("/api/processes/{process_id}")
async def get_process(process_id: str):
    """Get the status of a managed process, with resource usage while it runs."""
    data = _process_response(process_id)
    if data["state"] == ProcessState.RUNNING.value:
        process = process_supervisor.get_status(process_id)
        data["metrics"] = await asyncio.to_thread(get_process_metrics, process.pid, process.started_at)
    else:
        data["metrics"] = None
    return data


@app.post("/api/processes/{process_id}/stop")
async def stop_process(process_id: str):
    """Stop a managed process."""
    try:
        stopped = await process_supervisor.stop_managed_process(process_id)
    except UnknownProcess:
        raise HTTPException(status_code=404, detail=f"Process '{process_id}' not found")

    if not stopped:
        return {"status": "not_running", "id": process_id}
    return {"status": "stopped", "id": process_id}


# History
@app.get("/api/processes/{process_id}/history")
async def get_process_history(process_id: str, limit: Optional[int] = Query(None, ge=1, le=10000)):
    """Get retained log lines and classified errors for a process."""
    history = process_supervisor.history(process_id)
    return history.to_dict(limit)


@app.delete("/api/processes/{process_id}/history")
async def clear_process_history(process_id: str):
    """Drop all retained history for a process."""
    process_supervisor.clear_history(process_id)
    return {"status": "cleared", "id": process_id}


# Status overview
@app.get("/api/status")
async def get_status():
    """Get overview of all managed processes."""
    processes = process_supervisor.list_processes()
    counts = {state.value: 0 for state in ProcessState}
    for process in processes:
        counts[process.state.value] += 1
    return {
        "total": len(processes),
        "active": sum(1 for p in processes if not p.state.is_terminal),
        "states": counts,
    }


# Events
@app.get("/api/events")
async def stream_events(request: Request):
    """
    Stream lifecycle and error events.

    Returns Server-Sent Events (SSE) stream. Event ids allow clients to
    drop duplicates.
    """
    listener = EventQueue(process_supervisor.events)

    async def event_stream():
        try:
            while not await request.is_disconnected():
                try:
                    event = await asyncio.wait_for(listener.get(), timeout=15)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield f"id: {event.event_id}\nevent: {event.type}\ndata: {json.dumps(event.to_dict())}\n\n"
        finally:
            listener.close()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# Supervisor logs
@app.get("/api/supervisor/logs")
async def get_supervisor_logs(lines: int = Query(100, ge=1, le=1000)):
    """Get recent procguard log entries."""
    try:
        with open(config.supervisor_log, "r") as f:
            all_lines = f.readlines()
            return {"lines": all_lines[-lines:], "total": len(all_lines)}
    except FileNotFoundError:
        return {"lines": [], "total": 0}
