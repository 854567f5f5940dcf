"""
FastAPI server for the Voice Interview Orchestrator.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- GET /activities/{activity_id}: Saved interview transcript and details
- WS /ws/interview: Interview session (binary PCM16 capture in, JSON control out)
"""

import asyncio
import sys

# uvloop event loop where available
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, Any, Optional
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request
from fastapi.responses import JSONResponse
import structlog
import uvicorn

from src.interviewer.config import get_config, init_config, ConfigError
from src.interviewer.errors import ProviderError, TransportError, ValidationError


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
    total_sessions: int = 0
    completed_sessions: int = 0
    rejected_sessions: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_sessions": self.total_sessions,
            "completed_sessions": self.completed_sessions,
            "rejected_sessions": self.rejected_sessions,
            "errors": self.errors,
        }


# Global metrics
metrics = ServerMetrics()


def get_manager(app: FastAPI):
    """Return the app's SessionManager, creating it on first use."""
    manager = getattr(app.state, "manager", None)
    if manager is None:
        from src.interviewer.manager import SessionManager

        manager = SessionManager(get_config())
        app.state.manager = manager
    return manager


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting interview server...")

    try:
        config = init_config()
        configure_logging(config.log_level)

        if config.validate_llm_on_startup:
            from src.interviewer.llm import initialize_llm
            llm = await initialize_llm(config)
            await llm.close()

        get_manager(app)
        logger.info("Server ready", port=config.port, dialogue_mode=config.dialogue_mode)

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")
    await get_manager(app).shutdown()


app = FastAPI(
    title="Voice Interview Orchestrator",
    description="Real-time spoken mock interviews over WebSocket",
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
            "active_sessions": len(get_manager(app)),
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


@app.get("/activities/{activity_id}")
async def get_activity(activity_id: str) -> JSONResponse:
    """Return a finished interview's saved activity record."""
    activity = await get_manager(app).store.get_activity(activity_id)
    if activity is None:
        return JSONResponse(status_code=404, content={"error": "Activity not found"})
    return JSONResponse(content=activity)


@app.websocket("/ws/interview")
async def interview_endpoint(websocket: WebSocket) -> None:
    """
    Interview WebSocket endpoint.

    The first text message must be `{"type": "start", ...}`. After that,
    binary frames are capture audio and text frames are control messages.
    Nothing per-session is built until the start payload has been validated.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1
    connection_id = f"conn_{int(time.time() * 1000)}"
    logger.info("WebSocket connected", connection_id=connection_id)

    # Import here to avoid circular imports and speed up startup
    from src.interviewer.controller import SessionController
    from src.interviewer.session import SessionParams
    from src.interviewer.transport import SessionStatus, TransportChannel

    async def send_text(message: str) -> None:
        try:
            await websocket.send_text(message)
        except (WebSocketDisconnect, RuntimeError) as e:
            raise TransportError(str(e) or type(e).__name__)

    async def close_websocket() -> None:
        await websocket.close()

    channel = TransportChannel(send_text, close_transport=close_websocket)
    channel.start()
    manager = get_manager(app)
    config = get_config()
    controller: Optional[SessionController] = None
    start_task: Optional[asyncio.Task] = None
    run_task: Optional[asyncio.Task] = None
    # A receive left pending while the session was starting; reused by the main loop.
    pending_receive: Optional[asyncio.Task] = None
    reason = "client_disconnected"

    try:
        params: Optional[SessionParams] = None
        while params is None:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(code=message.get("code", 1000))
            text = message.get("text")
            if text:
                payload = channel.handle_client_text(text)
                if payload is not None:
                    params = SessionParams.from_mapping(payload, default_mode=config.dialogue_mode)

        controller = manager.create_controller(channel)
        start_task = asyncio.create_task(manager.start_session(controller, params))

        # Keep reading while questions are generated so a disconnect cancels the start.
        while not start_task.done():
            if pending_receive is None:
                pending_receive = asyncio.create_task(websocket.receive())
            done, _ = await asyncio.wait({start_task, pending_receive}, return_when=asyncio.FIRST_COMPLETED)
            if pending_receive not in done:
                continue
            message = pending_receive.result()
            pending_receive = None
            if message["type"] == "websocket.disconnect":
                logger.info("Client left during session start", connection_id=connection_id)
                start_task.cancel()
                await asyncio.gather(start_task, return_exceptions=True)
                raise WebSocketDisconnect(code=message.get("code", 1000))
            text = message.get("text")
            if text:
                channel.handle_client_text(text)

        session = start_task.result()
        metrics.total_sessions += 1
        run_task = asyncio.create_task(controller.run())

        while not controller.is_finished:
            if pending_receive is not None:
                message = await pending_receive
                pending_receive = None
            else:
                message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                channel.notify_disconnected()
                break
            data = message.get("bytes")
            if data:
                controller.capture.push_frame(data)
                continue
            text = message.get("text")
            if text:
                channel.handle_client_text(text)

        if controller.finish_reason == "completed":
            metrics.completed_sessions += 1
        logger.info("Interview loop ended", connection_id=connection_id, session_id=session.id)

    except ValidationError as e:
        logger.info("Rejected session start", connection_id=connection_id, error=str(e))
        metrics.rejected_sessions += 1
        channel.send_error(str(e))
        reason = "invalid_parameters"
    except ProviderError as e:
        logger.error("Session start failed", connection_id=connection_id, error=str(e), provider=e.provider)
        metrics.errors += 1
        channel.send_status(SessionStatus.ERROR)
        channel.send_error("We couldn't prepare your interview. Please try again.")
        reason = "error"
    except (WebSocketDisconnect, TransportError):
        logger.info("WebSocket disconnected", connection_id=connection_id)
        channel.notify_disconnected()
    except Exception as e:
        logger.error("WebSocket handler error", connection_id=connection_id, error=str(e))
        metrics.errors += 1
        reason = "error"

    finally:
        for task in (start_task, pending_receive):
            if task is not None and not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        if controller is None:
            channel.send_finished(reason)
            await channel.close()
        else:
            try:
                await controller.finish(reason)
            except Exception as e:
                logger.error("Error finishing session", error=str(e))
            if run_task is not None:
                await asyncio.gather(run_task, return_exceptions=True)
            if controller.session is not None:
                manager.remove(controller.session.id)

        metrics.active_connections -= 1
        logger.info(
            "Connection closed",
            connection_id=connection_id,
            reason=controller.finish_reason if controller else reason,
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
