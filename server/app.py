"""
FastAPI server for the voice dialog engine.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- WS /ws: Dialog session for a speech-capable client
"""

import asyncio
import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, Any, Optional
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request
from fastapi.responses import JSONResponse
import structlog
import uvicorn

from src.dialog.config import get_config, init_config, ConfigError
from src.dialog.records import AuthService, InMemoryAuthService, InMemoryRecordStore, RecordStore


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    flows_started: int = 0
    unsupported_clients: int = 0
    bad_messages: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "flows_started": self.flows_started,
            "unsupported_clients": self.unsupported_clients,
            "bad_messages": self.bad_messages,
            "errors": self.errors,
        }


metrics = ServerMetrics()


@dataclass
class Backends:
    """Auth and record backends shared by all sessions."""
    auth: AuthService
    store: RecordStore


_backends: Optional[Backends] = None


def get_backends() -> Backends:
    global _backends
    if _backends is None:
        config = get_config()
        _backends = Backends(
            auth=InMemoryAuthService(code_length=config.otp_length),
            store=InMemoryRecordStore(),
        )
    return _backends


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting voice dialog server...")

    try:
        config = init_config()
        configure_logging(config.log_level)
        get_backends()
        logger.info("Server ready", port=config.port, default_locale=config.default_locale)
    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")


app = FastAPI(
    title="Voice Dialog Engine",
    description="Voice-first guided flows for elderly users",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_connections": metrics.active_connections,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    Dialog WebSocket endpoint.

    Inbound messages are handled in order on this task; outbound messages are
    queued by the session and written by a separate writer task.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1

    from src.dialog.session import DialogSession

    outbound: asyncio.Queue = asyncio.Queue()
    backends = get_backends()
    session = DialogSession(outbound.put_nowait, auth=backends.auth, store=backends.store)

    logger.info(
        "WebSocket connected",
        session_id=session.session_id,
        active_connections=metrics.active_connections,
    )

    async def _writer() -> None:
        while True:
            message = await outbound.get()
            try:
                await websocket.send_text(message)
            except Exception as e:
                logger.error("Failed to send WebSocket message", error=str(e))
                return

    writer_task = asyncio.create_task(_writer())
    flows_before = 0
    capabilities_counted = False

    try:
        while True:
            try:
                message = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", session_id=session.session_id)
                break

            try:
                await session.handle_message(message)
            except ValueError as e:
                metrics.bad_messages += 1
                logger.warning("Bad client message", session_id=session.session_id, error=str(e))
                continue
            except Exception as e:
                logger.error(
                    "Error handling WebSocket message",
                    session_id=session.session_id,
                    error=str(e),
                )
                metrics.errors += 1
                continue

            if session.flows_started != flows_before:
                metrics.flows_started += session.flows_started - flows_before
                flows_before = session.flows_started
            if session.channel is not None and not capabilities_counted:
                capabilities_counted = True
                if not session.channel.recognition_supported:
                    metrics.unsupported_clients += 1

    finally:
        try:
            await session.close()
        except Exception as e:
            logger.error("Error closing session", error=str(e))

        # Give the writer one pass at whatever close() queued.
        await asyncio.sleep(0)
        writer_task.cancel()
        await asyncio.wait({writer_task})

        metrics.active_connections -= 1
        logger.info(
            "Session ended",
            session_id=session.session_id,
            active_connections=metrics.active_connections,
        )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

    logger.info("Starting server", port=config.port)

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
