"""FastAPI app wiring for the bot run orchestrator."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..runtime.api import create_router
from ..runtime.events import EventHub
from ..runtime.llm import TextGenerator
from ..runtime.orchestrator import GitRepositoryClient, OrchestratorService
from ..runtime.storage import Container

logger = logging.getLogger(__name__)


def create_app(
    project_dir: Optional[Path] = None,
    enable_cors: bool = True,
    generator: Optional[TextGenerator] = None,
    git: Optional[GitRepositoryClient] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        project_dir (Optional[Path]): Directory holding the ``.autobot`` state root;
            defaults to the current working directory.
        enable_cors (bool): Whether to install permissive CORS middleware for browser
            clients.
        generator (Optional[TextGenerator]): Text generator forwarded to the orchestrator.
        git (Optional[GitRepositoryClient]): Git capability forwarded to the orchestrator.

    Returns:
        FastAPI: Configured application with the ``/api`` routes, ``/healthz`` and
        the ``/ws`` event stream. The orchestrator is created lazily and kept on
        ``app.state.orchestrator``.
    """
    hub = EventHub()

    def _resolve_orchestrator() -> OrchestratorService:
        if app.state.orchestrator is None:
            container = Container(Path(app.state.project_dir or Path.cwd()).resolve())
            app.state.orchestrator = OrchestratorService(container, generator=generator, git=git, hub=hub)
        return app.state.orchestrator

    @asynccontextmanager
    async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
        hub.attach_loop(asyncio.get_running_loop())
        recovery = await _resolve_orchestrator().start()
        logger.info("Orchestrator started: %s", recovery)
        try:
            yield
        finally:
            orchestrator = app.state.orchestrator
            if orchestrator is not None:
                await orchestrator.shutdown(timeout=10.0)
            app.state.orchestrator = None

    app = FastAPI(
        title="AutoBot",
        description="Repository bot run orchestrator",
        version=__version__,
        lifespan=_lifespan,
    )

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.state.project_dir = project_dir
    app.state.orchestrator = None
    app.state.hub = hub

    app.include_router(create_router(_resolve_orchestrator))

    @app.get("/healthz")
    async def healthz() -> dict[str, object]:
        """Expose liveness status for process-level health checks."""
        orchestrator = app.state.orchestrator
        return {
            "status": "ok",
            "version": __version__,
            "active_runs": len(orchestrator.registry) if orchestrator else 0,
        }

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        """Bridge websocket clients to the event hub."""
        await hub.handle_connection(websocket)

    return app
