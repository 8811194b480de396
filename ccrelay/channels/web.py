from __future__ import annotations

import json
import logging
import mimetypes
import uuid
from collections.abc import Mapping
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import uvicorn
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response

from ccrelay.channels.gate import ConnectionGate
from ccrelay.config import RelaySettings
from ccrelay.core.logging import correlation_scope, sanitize_log_value
from ccrelay.core.metrics import (
    CONNECTIONS_REFUSED_TOTAL,
    METRICS_CONTENT_TYPE,
    metrics_generate_latest,
)
from ccrelay.core.orchestrator import ConnectionOrchestrator, RunnerFactory
from ccrelay.sessions.directory import SessionDirectory

logger = logging.getLogger(__name__)

ORIGIN_REJECTED_CLOSE_CODE = 4403
TRY_AGAIN_LATER_CLOSE_CODE = 1013

_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
}
_HTML_CSP = (
    "default-src 'self'; script-src 'self' https://cdn.jsdelivr.net; "
    "style-src 'self' 'unsafe-inline';"
)


class WebRelay:
    """HTTP + WebSocket front end: one ``ConnectionOrchestrator`` per ``/ws`` link."""

    def __init__(
        self,
        settings: RelaySettings | None = None,
        *,
        session_directory: SessionDirectory | None = None,
        runner_factory: RunnerFactory | None = None,
    ) -> None:
        self.settings = settings or RelaySettings()
        self.web_dir = Path(self.settings.server.web_dir)
        self.gate = ConnectionGate(self.settings.limits.max_connections)
        self._session_directory = session_directory
        self._runner_factory = runner_factory
        self._orchestrators: dict[str, ConnectionOrchestrator] = {}

        self.app = FastAPI(title="ccrelay")
        self._setup_routes()

    def _setup_routes(self) -> None:
        @self.app.get("/health")
        async def health() -> JSONResponse:
            return JSONResponse(
                {
                    "status": "ok",
                    "connections": self.gate.active,
                    "max_connections": self.gate.max_connections,
                    "states": self.active_connections(),
                },
            )

        @self.app.get("/metrics")
        async def metrics() -> Response:
            return Response(content=metrics_generate_latest(), media_type=METRICS_CONTENT_TYPE)

        @self.app.websocket("/ws")
        async def ws_endpoint(websocket: WebSocket) -> None:
            origin = websocket.headers.get("origin")
            if not self.is_allowed_origin(origin):
                logger.warning(
                    "Rejected connection from unauthorized origin: %s",
                    sanitize_log_value(origin),
                )
                CONNECTIONS_REFUSED_TOTAL.labels(reason="origin").inc()
                await websocket.close(code=ORIGIN_REJECTED_CLOSE_CODE)
                return

            if not self.gate.acquire():
                logger.warning("Connection limit reached, rejecting new connection")
                CONNECTIONS_REFUSED_TOTAL.labels(reason="limit").inc()
                await websocket.close(code=TRY_AGAIN_LATER_CLOSE_CODE)
                return

            try:
                await self._serve_connection(websocket)
            finally:
                self.gate.release()
                logger.info(
                    "Client disconnected (%d/%d)",
                    self.gate.active,
                    self.gate.max_connections,
                )

        if self.web_dir.exists():

            @self.app.get("/")
            async def index() -> Response:
                return self._serve_static("index.html")

            @self.app.get("/{asset_path:path}")
            async def static_asset(asset_path: str) -> Response:
                return self._serve_static(asset_path)

    async def _serve_connection(self, websocket: WebSocket) -> None:
        connection_id = uuid.uuid4().hex
        with correlation_scope(connection_id=connection_id):
            await websocket.accept()
            logger.info(
                "Client connected (%d/%d)",
                self.gate.active,
                self.gate.max_connections,
            )
            orchestrator = ConnectionOrchestrator(
                send=lambda payload: websocket.send_text(json.dumps(payload)),
                settings=self.settings,
                session_directory=self._session_directory,
                runner_factory=self._runner_factory,
                connection_id=connection_id,
            )
            self._orchestrators[connection_id] = orchestrator
            orchestrator.open()
            try:
                while True:
                    message = await websocket.receive()
                    if message["type"] == "websocket.disconnect":
                        break
                    await orchestrator.handle_message(_frame_text(message))
            except WebSocketDisconnect:
                pass
            finally:
                self._orchestrators.pop(connection_id, None)
                await orchestrator.close()

    def is_allowed_origin(self, origin: str | None) -> bool:
        """Exact hostname match against the allow-list; absent Origin follows config."""
        server = self.settings.server
        if not origin:
            return server.allow_missing_origin
        try:
            hostname = urlsplit(origin).hostname
        except ValueError:
            return False
        return hostname is not None and hostname in server.allowed_origin_hosts

    def active_connections(self) -> dict[str, str]:
        return {
            connection_id: orchestrator.state.value
            for connection_id, orchestrator in self._orchestrators.items()
        }

    def _serve_static(self, asset_path: str) -> Response:
        asset = asset_path.lstrip("/") or "index.html"
        target = (self.web_dir / asset).resolve()
        web_root = self.web_dir.resolve()

        # Block path traversal and reject unknown files.
        if web_root not in target.parents:
            raise HTTPException(status_code=404, headers=_SECURITY_HEADERS)
        if not target.is_file():
            raise HTTPException(status_code=404, headers=_SECURITY_HEADERS)

        media_type, _ = mimetypes.guess_type(str(target))
        headers = dict(_SECURITY_HEADERS)
        if target.suffix == ".html":
            headers["Content-Security-Policy"] = _HTML_CSP
        return Response(
            content=target.read_bytes(),
            media_type=media_type or "application/octet-stream",
            headers=headers,
        )

    async def serve(self, log_level: str = "info") -> None:
        server_config = self.settings.server
        logger.info("Serving on http://%s:%d", server_config.host, server_config.port)
        logger.info("Projects base directory: %s", self.settings.projects.resolved_base_dir)
        config = uvicorn.Config(
            self.app,
            host=server_config.host,
            port=server_config.port,
            log_level=log_level,
        )
        server = uvicorn.Server(config)
        await server.serve()


def _frame_text(message: Mapping[str, Any]) -> str:
    """Text of a received frame; binary frames are decoded as UTF-8 with replacement."""
    text = message.get("text")
    if text is not None:
        return text
    data = message.get("bytes") or b""
    return data.decode("utf-8", errors="replace")


__all__ = ["ORIGIN_REJECTED_CLOSE_CODE", "TRY_AGAIN_LATER_CLOSE_CODE", "WebRelay"]
