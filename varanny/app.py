import argparse
import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastmcp import FastMCP

from . import __version__
from .config import default_config_path, load_config, validate_config
from .core import engine, state_manager
from .discovery import build_service_records

logger = logging.getLogger("varanny.app")

CONFIG_ENV = "VARANNY_CONFIG"
NO_ADVERTISE_ENV = "VARANNY_NO_ADVERTISE"

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup logic
    print(f"Varanny {__version__} Initializing...")
    config = load_config(os.environ.get(CONFIG_ENV) or default_config_path())
    validate_config(config)

    # Give a hotspot network time to come up before advertising
    if config.delay:
        logger.info(f"Delaying start by {config.delay}s")
        await asyncio.sleep(config.delay)

    await engine.start(config, advertise=not os.environ.get(NO_ADVERTISE_ENV))
    yield
    # Shutdown logic
    print("Varanny Shutting down...")
    await engine.shutdown()

def modem_summary() -> list:
    if engine.registry is None:
        return []
    return [
        {
            "name": m.name,
            "type": m.type,
            "cmd": m.cmd,
            "args": m.args,
            "config": m.config,
            "port": m.port,
            "in_use": m.locked,
            "cat_ctrl": asdict(m.cat_ctrl),
        }
        for m in engine.registry
    ]

# --- MCP Server Definition ---
mcp = FastMCP("Varanny Modem Launcher")

@mcp.tool()
def get_help() -> str:
    """
    Returns a short guide on what varanny does and how clients talk to it.
    """
    return """
# Varanny Guide for AI Agents

Varanny launches VARA HF / VARA FM modems on request of a client connected to its
control port. A client sends newline-terminated commands:

*   `list` - names of the configured modems.
*   `start <name>` - runs the modem (and its CAT control program) until the client
    sends `stop` or disconnects.
*   `monitor <name>` - replies with the audio input device of the modem, then streams
    its input level in dBFS, one value per line.
*   `stop`, `version`, `config`.

Replies are `OK` (plus data lines), `ERROR <reason>` or `Invalid command`.

Use `list_modems` to see which modems are configured and in use, `list_sessions` for
the connected clients and `list_event_history` for what happened recently.
    """

@mcp.tool()
def list_modems() -> str:
    """List the configured modems, their ports and whether a client is using them."""
    return json.dumps(modem_summary(), indent=2)

@mcp.tool()
def list_sessions() -> str:
    """List the clients currently connected to the control port."""
    return json.dumps([s.info() for s in engine.sessions], indent=2)

@mcp.tool()
async def list_event_history(limit: int = 10) -> str:
    """Get the most recent session events (connects, starts, monitors, closes)."""
    history = list(state_manager.event_log)[-limit:]
    return json.dumps([h.__dict__ for h in history], indent=2)

@mcp.resource("varanny://modems")
def modems_resource() -> str:
    """Returns the configured modems."""
    return json.dumps(modem_summary(), indent=2)

# --- FastAPI App ---
app = FastAPI(lifespan=lifespan)

# Mount MCP
mcp_app = mcp.http_app(transport="sse")
app.mount("/mcp", mcp_app)

@app.get("/api/version")
async def get_version():
    return {"version": __version__}

@app.get("/api/modems")
async def get_modems():
    return modem_summary()

@app.get("/api/sessions")
async def get_sessions():
    return [s.info() for s in engine.sessions]

@app.get("/api/discovery")
async def get_discovery():
    if engine.registry is None or engine.config is None:
        return []
    return [asdict(r) for r in build_service_records(engine.registry, engine.config.port)]

@app.get("/api/history")
async def get_history(limit: int = 10, modem: Optional[str] = None):
    """Get the most recent session events, optionally filtered by modem name."""
    history = list(state_manager.event_log)
    if modem:
        history = [h for h in history if h.modem == modem]
    return [h.__dict__ for h in history[-limit:]]

@app.websocket("/ws/monitor")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()
    queue = await state_manager.subscribe()
    try:
        while True:
            event = await queue.get()
            await websocket.send_json(event)
    except WebSocketDisconnect:
        state_manager.unsubscribe(queue)

def main():
    import uvicorn

    parser = argparse.ArgumentParser(prog="varanny-server", description="Remote launcher for VARA modems.")
    parser.add_argument("--config", default="", help="Path to the configuration file.")
    parser.add_argument("--version", action="store_true", help="Print version and exit.")
    parser.add_argument("--host", default="0.0.0.0", help="Address of the status API.")
    parser.add_argument("--port", type=int, default=8274, help="Port of the status API.")
    parser.add_argument("--log-level", default="info", choices=["debug", "info", "warning", "error"])
    parser.add_argument("--no-advertise", action="store_true", help="Do not publish DNS-SD records.")
    args = parser.parse_args()

    if args.version:
        print(f"varanny version {__version__}")
        return

    if args.config:
        os.environ[CONFIG_ENV] = os.path.abspath(args.config)
    if args.no_advertise:
        os.environ[NO_ADVERTISE_ENV] = "1"

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("varanny.app:app", host=args.host, port=args.port, log_level=args.log_level)

if __name__ == "__main__":
    main()
