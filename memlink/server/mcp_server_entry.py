"""Local MCP server entry point.

Started as a child process by ConnectionManager. Reads PORT and LOG_LEVEL
from the environment, prints a ready line once listening and shuts down on
SIGTERM.

Endpoints:
    GET  /health  - liveness
    POST /mcp     - JSON-RPC request/response
    GET  /ws      - JSON-RPC over WebSocket
"""

from __future__ import annotations

import asyncio
import json
import os
import signal
from datetime import datetime, timezone
from typing import Any

from aiohttp import WSMsgType, web

from memlink import __version__
from memlink.log_config import get_logger

log = get_logger("local.server")

METHOD_NOT_FOUND = -32601
PARSE_ERROR = -32700


def handle_rpc(message: dict[str, Any]) -> dict[str, Any] | None:
    """Answer one JSON-RPC message; notifications (no id) get no reply."""
    msg_id = message.get("id")
    method = message.get("method")
    if msg_id is None:
        return None

    if method == "ping":
        return {"jsonrpc": "2.0", "id": msg_id, "result": {}}
    if method == "tools/list":
        return {"jsonrpc": "2.0", "id": msg_id, "result": {"tools": []}}
    return {
        "jsonrpc": "2.0",
        "id": msg_id,
        "error": {"code": METHOD_NOT_FOUND, "message": f"Method not found: {method}"},
    }


async def _handle_health(request: web.Request) -> web.Response:
    started: datetime = request.app["started_at"]
    return web.json_response(
        {
            "status": "healthy",
            "version": __version__,
            "uptime_seconds": (datetime.now(timezone.utc) - started).total_seconds(),
        }
    )


async def _handle_post(request: web.Request) -> web.Response:
    try:
        message = json.loads(await request.text())
    except json.JSONDecodeError:
        return web.json_response(
            {"jsonrpc": "2.0", "id": None, "error": {"code": PARSE_ERROR, "message": "Parse error"}},
            status=400,
        )

    reply = handle_rpc(message)
    if reply is None:
        return web.Response(status=204)
    return web.json_response(reply)


async def _handle_ws(request: web.Request) -> web.WebSocketResponse:
    ws = web.WebSocketResponse(heartbeat=30.0)
    await ws.prepare(request)
    log.debug("WebSocket client connected")

    async for msg in ws:
        if msg.type != WSMsgType.TEXT:
            continue
        try:
            message = json.loads(msg.data)
        except json.JSONDecodeError:
            await ws.send_json({"jsonrpc": "2.0", "id": None, "error": {"code": PARSE_ERROR, "message": "Parse error"}})
            continue
        reply = handle_rpc(message)
        if reply is not None:
            await ws.send_json(reply)

    log.debug("WebSocket client disconnected")
    return ws


def create_app() -> web.Application:
    app = web.Application()
    app["started_at"] = datetime.now(timezone.utc)
    app.router.add_get("/health", _handle_health)
    app.router.add_post("/mcp", _handle_post)
    app.router.add_get("/ws", _handle_ws)
    return app


async def serve(port: int, host: str = "127.0.0.1") -> None:
    runner = web.AppRunner(create_app())
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    print(f"MCP server ready, listening on {host}:{port}", flush=True)
    log.info(f"Local MCP server listening on {host}:{port} (LOG_LEVEL={os.environ.get('LOG_LEVEL', 'info')})")
    try:
        await stop.wait()
    finally:
        await runner.cleanup()
        log.info("Local MCP server stopped")


def main() -> None:
    port = int(os.environ.get("PORT", "3000"))
    asyncio.run(serve(port))


if __name__ == "__main__":
    main()
