"""FastMCP server bootstrap for Forge."""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from fastmcp import Context, FastMCP

from . import __version__
from .config import ForgeSettings, get_settings
from .controller import ForgeController
from .storage import ChromaStore, ChromaUnavailableError
from .tools import register_tools
from .worker import ProcessFleet


def configure_logging(level: str) -> None:
    """Configure root logging for the Forge server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def create_server(
    settings: Optional[ForgeSettings] = None,
    controller: ForgeController | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with the fleet controller wired in."""

    settings = settings or get_settings()

    chroma_store: ChromaStore | None = None
    chroma_metadata = {
        "available": False,
        "path": str(settings.chroma_persist_path),
        "collection": "forge_events",
        "error": None,
    }

    try:
        chroma_store = ChromaStore(settings.chroma_persist_path)
        chroma_store.ping()
        chroma_metadata["available"] = True
    except ChromaUnavailableError as exc:
        chroma_metadata["error"] = str(exc)
        chroma_store = None

    if controller is None:
        controller = ForgeController(
            settings,
            fleet=ProcessFleet(),
            event_store=chroma_store,
        )
    elif controller.event_store is None:
        controller.event_store = chroma_store

    server = FastMCP(
        name="Forge MCP",
        version=__version__,
        instructions=(
            "Forge runs a fleet of autonomous workers against one shared git repository "
            "and reconciles their progress from repository content. Use the tools to "
            "create, inspect and stop the single live session."
        ),
    )

    handles = register_tools(
        server,
        controller=controller,
        settings=settings,
        chroma_store=chroma_store,
    )

    @server.resource(
        "resource://forge/status",
        name="forge_status",
        title="Forge MCP Status",
        description="Current session, reconciled fleet state and worker processes.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing runtime state."""

        session = controller.get_active()
        reconciler = controller.reconciler
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "session": session.to_dict() if session else None,
            "reconciler": {
                "running": reconciler.running if reconciler else False,
                "ticks": reconciler.ticks if reconciler else 0,
                "poll_interval": settings.poll_interval,
                "seen_commits": reconciler.seen_commit_count if reconciler else 0,
            },
            "state": controller.state(),
            "workers": controller.fleet.status(),
            "storage": {"chroma": chroma_metadata},
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    setattr(server, "controller", controller)
    setattr(server, "chroma_store", chroma_store)
    setattr(server, "chroma_metadata", chroma_metadata)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the Forge MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching Forge MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "chroma_available": getattr(server, "chroma_metadata", {}).get("available"),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
