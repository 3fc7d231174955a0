from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse

from .session_manager import SessionManager

logger = logging.getLogger(__name__)


_LOG_BUFFER_LIMIT = 200
_log_buffer = deque(maxlen=_LOG_BUFFER_LIMIT)


class _InMemoryLogHandler(logging.Handler):
    """Collect recent log records for relay diagnostics."""

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - logging side effect
        try:
            message = self.format(record)
        except Exception:
            message = record.getMessage()
        _log_buffer.append(
            {
                "message": message,
                "level": record.levelname.lower(),
                "logger": record.name,
                "timestamp": record.created,
            }
        )


def _ensure_log_handler() -> None:
    root_logger = logging.getLogger()
    if any(isinstance(handler, _InMemoryLogHandler) for handler in root_logger.handlers):
        return
    handler = _InMemoryLogHandler(level=logging.INFO)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
    root_logger.addHandler(handler)


def _get_log_tail(limit: int = 50) -> list[dict[str, object]]:
    if limit <= 0:
        return []
    slice_len = min(limit, len(_log_buffer))
    if slice_len == 0:
        return []
    return list(_log_buffer)[-slice_len:]


class StatusApi:
    """FastAPI application exposing the relay's connection state."""

    def __init__(self, session_manager: SessionManager) -> None:
        self._session_manager = session_manager
        self._app = FastAPI(title="Signaling relay status")
        self._started_at = time.time()

        @self._app.get("/api/health")
        async def health() -> dict:
            return {
                "status": "ok",
                "channel_count": await self._session_manager.channel_count(),
                "uptime_seconds": max(0.0, time.time() - self._started_at),
                "timestamp": time.time(),
            }

        @self._app.get("/api/state")
        async def state() -> dict:
            snapshot = await self._session_manager.snapshot()
            snapshot["timestamp"] = time.time()
            snapshot["log_tail"] = _get_log_tail(40)
            return snapshot

        @self._app.get("/api/channels/{channel_id}")
        async def channel(channel_id: str) -> dict:
            snapshot = await self._session_manager.snapshot()
            for entry in snapshot["channels"]:
                if entry["channel_id"] == channel_id:
                    return entry
            raise HTTPException(status_code=404, detail=f"{channel_id} is not connected")

        @self._app.get("/api/export/events")
        async def export_events() -> JSONResponse:
            events = await self._session_manager.get_recent_events(limit=600)
            response = JSONResponse(events)
            response.headers["Content-Disposition"] = "attachment; filename=\"relay-events.json\""
            return response

    @property
    def app(self) -> FastAPI:
        return self._app


class StatusServer:
    """Background task helper for running the status API with uvicorn."""

    def __init__(self, session_manager: SessionManager, *, host: str, port: int) -> None:
        _ensure_log_handler()
        self._api = StatusApi(session_manager)
        self._host = host
        self._port = port
        self._server: Optional[object] = None
        self._task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        import uvicorn

        if self._server is not None:
            return
        config = uvicorn.Config(self._api.app, host=self._host, port=self._port, log_level="warning")
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve())
        logger.info("Relay status available at http://%s:%s/api/state", self._host, self._port)

    async def stop(self) -> None:
        if self._server is None:
            return
        assert self._task is not None
        self._server.should_exit = True
        await self._task
        self._server = None
        self._task = None
