#!/usr/bin/env python3
# MCX Bridge
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
MCX Hub (mcx-hub)

Tracks media playback across browser contexts.  The browser-side shim
connects to the host port and reports context events and agent messages;
UI clients connect to /ws and receive add / del / update pushes; the
"now playing" source is mirrored to a serial device on request.

Ports: 8786 (HTTP + view WebSocket), 8785 (host shim WebSocket)
"""

import asyncio
import json
import logging
import os
import sys

import aiohttp
from aiohttp import web

# Ensure services/ is on the path for sibling imports
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
from mcx.config import cfg
from mcx.errors import BridgeError, NotAvailable, OpenFailed, PortUnavailable, WriteFailed
from mcx.host import Host
from mcx.host_link import WebSocketHost
from mcx.lifecycle import LifecycleController
from mcx.metadata import describe
from mcx.observers import WebSocketView
from mcx.ports import SystemPortPicker
from mcx.serial_bridge import DEFAULT_BAUDRATE, NowPlayingForwarder, SerialBridge
from mcx.watchdog import watchdog_loop

logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("mcx-hub")

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------
HTTP_PORT = 8786
HOST_PORT = 8785

_ERROR_STATUS = {
    NotAvailable: 503,
    PortUnavailable: 400,
    OpenFailed: 409,
    WriteFailed: 502,
}


# ---------------------------------------------------------------------------
# Hub
# ---------------------------------------------------------------------------
class MediaHub:
    """Wires host, controller, views and the serial bridge together."""

    def __init__(self, host: Host | None = None, bridge: SerialBridge | None = None):
        self.host = host or WebSocketHost()
        self.controller = LifecycleController(self.host, describe=self._describe)
        if bridge is None:
            picker = SystemPortPicker() if cfg("serial", "enabled", default=True) else None
            bridge = SerialBridge(
                picker,
                baudrate=int(cfg("serial", "baudrate", default=DEFAULT_BAUDRATE)),
                write_timeout=float(cfg("serial", "write_timeout", default=2.0)),
            )
        self.bridge = bridge
        # Held here: the observer set only keeps weak references
        self.forwarder = NowPlayingForwarder(self.bridge)
        self.controller.observers.attach(self.forwarder)
        self.views: set[WebSocketView] = set()
        self._session: aiohttp.ClientSession | None = None
        self._host_server = None

    async def _describe(self, host, context):
        return await describe(host, context, session=self._session)

    async def start(self, serve_host_link: bool = True):
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=5.0),
        )
        if serve_host_link:
            # Resync whenever a shim (re)attaches; it may have been
            # restarted along with the browser
            self.host.bind(self.controller, on_connect=self.controller.start)
            self._host_server = await self.host.serve(
                cfg("hub", "host", default="127.0.0.1"),
                int(cfg("hub", "host_port", default=HOST_PORT)),
            )
        else:
            await self.controller.start()
        logger.info("Hub started (serial %s)",
                    "available" if self.bridge.available else "disabled")

    async def stop(self):
        await self.controller.shutdown()
        await self.bridge.close()
        if self._host_server is not None:
            self._host_server.close()
            await self._host_server.wait_closed()
            self._host_server = None
        if isinstance(self.host, WebSocketHost):
            await self.host.close_link()
        for view in list(self.views):
            await view.close()
        self.views.clear()
        if self._session:
            await self._session.close()
            self._session = None
        logger.info("Hub stopped")

    def watchdog_status(self) -> str:
        return "{} source(s), serial {}".format(
            len(self.controller.registry), "up" if self.bridge.is_open else "down")

    async def connect_serial(self, index=None, filters=None, baudrate=None) -> dict:
        if index is not None:
            await self.bridge.select_known_port(int(index))
        elif filters is not None or self.bridge.port is None:
            await self.bridge.select_port(filters if filters is not None else cfg("serial", "filters", default=[]))
        await self.bridge.open(baudrate)
        # Give the device the current state straight away
        self.forwarder.resend()
        return self.bridge.status()


HUB = web.AppKey("hub", MediaHub)
WATCHDOG = web.AppKey("watchdog", asyncio.Task)


# ---------------------------------------------------------------------------
# HTTP handlers
# ---------------------------------------------------------------------------
def _bridge_error(e: BridgeError) -> web.Response:
    status = _ERROR_STATUS.get(type(e), 500)
    logger.warning("Serial %s: %s", e.kind, e)
    return web.json_response(
        {"status": "error", "error": e.kind, "message": str(e)}, status=status)


async def _read_json(request: web.Request) -> dict | None:
    if not request.can_read_body:
        return {}
    try:
        data = await request.json()
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


async def handle_view_ws(request: web.Request) -> web.WebSocketResponse:
    """GET /ws — UI client: initial adds, then add/del/update pushes."""
    hub = request.app[HUB]
    ws = web.WebSocketResponse()
    await ws.prepare(request)

    view = WebSocketView(ws)
    hub.views.add(view)
    # Attach first: a duplicate add is harmless, a missed one is not
    hub.controller.observers.attach(view)
    for source in hub.controller.registry.all():
        await view.add(source)
    logger.info("View connected (%d total)", len(hub.views))

    try:
        async for msg in ws:
            if msg.type != aiohttp.WSMsgType.TEXT:
                continue
            try:
                data = json.loads(msg.data)
            except json.JSONDecodeError:
                logger.warning("View sent invalid JSON: %r", msg.data)
                continue
            if not isinstance(data, dict):
                continue
            command = data.get("command")
            if command == "serial_status":
                await ws.send_json({"type": "serial_state", **hub.bridge.status()})
                continue
            if command:
                result = await hub.controller.control(
                    data.get("id"), command, seconds=data.get("seconds", 5))
                await ws.send_json({
                    "type": "control", "id": data.get("id"), "command": command,
                    "ok": result.ok, "error": result.error,
                })
    finally:
        hub.controller.observers.detach(view)
        hub.views.discard(view)
        logger.info("View disconnected (%d remaining)", len(hub.views))
    return ws


async def handle_status(request: web.Request) -> web.Response:
    """GET /status — lifecycle, host link and serial state."""
    hub = request.app[HUB]
    return web.json_response({
        **hub.controller.status(),
        "host_connected": getattr(hub.host, "connected", True),
        "views": len(hub.views),
        "serial": hub.bridge.status(),
        "sources_detail": [s.to_dict() for s in hub.controller.registry.all()],
    })


async def handle_serial_ports(request: web.Request) -> web.Response:
    """GET /serial/ports — ports the picker knows about, by index."""
    hub = request.app[HUB]
    try:
        ports = await hub.bridge.list_ports()
    except BridgeError as e:
        return _bridge_error(e)
    return web.json_response({
        "ports": [{"index": i, **p.info()} for i, p in enumerate(ports)],
        "selected": hub.bridge.port.device if hub.bridge.port else None,
    })


async def handle_serial_select(request: web.Request) -> web.Response:
    """POST /serial/select — {"index": n} or {"filters": [...]}; does not open."""
    hub = request.app[HUB]
    data = await _read_json(request)
    if data is None:
        return web.json_response({"error": "invalid json"}, status=400)
    try:
        if "index" in data:
            await hub.bridge.select_known_port(int(data["index"]))
        else:
            await hub.bridge.select_port(data.get("filters", cfg("serial", "filters", default=[])))
    except BridgeError as e:
        return _bridge_error(e)
    return web.json_response({"status": "ok", **hub.bridge.status()})


async def handle_serial_connect(request: web.Request) -> web.Response:
    """POST /serial/connect — optional {"index", "filters", "baudrate"}."""
    hub = request.app[HUB]
    data = await _read_json(request)
    if data is None:
        return web.json_response({"error": "invalid json"}, status=400)
    try:
        status = await hub.connect_serial(
            index=data.get("index"), filters=data.get("filters"),
            baudrate=data.get("baudrate"))
    except BridgeError as e:
        return _bridge_error(e)
    return web.json_response({"status": "ok", **status})


async def handle_serial_disconnect(request: web.Request) -> web.Response:
    """POST /serial/disconnect — close the link and forget the port."""
    hub = request.app[HUB]
    await hub.bridge.close()
    return web.json_response({"status": "ok", **hub.bridge.status()})


async def handle_serial_status(request: web.Request) -> web.Response:
    """GET /serial/status — explicit connection query for the UI."""
    return web.json_response(request.app[HUB].bridge.status())


# ---------------------------------------------------------------------------
# App lifecycle
# ---------------------------------------------------------------------------
@web.middleware
async def cors_middleware(request, handler):
    if request.method == "OPTIONS":
        resp = web.Response()
    else:
        resp = await handler(request)
    resp.headers["Access-Control-Allow-Origin"] = "*"
    resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
    return resp


def create_app(hub: MediaHub | None = None, serve_host_link: bool = True,
               watchdog: bool = True) -> web.Application:
    app = web.Application(middlewares=[cors_middleware])
    app[HUB] = hub or MediaHub()

    async def on_startup(app: web.Application):
        await app[HUB].start(serve_host_link=serve_host_link)
        if watchdog:
            app[WATCHDOG] = asyncio.create_task(
                watchdog_loop(status=app[HUB].watchdog_status))

    async def on_cleanup(app: web.Application):
        task = app.get(WATCHDOG)
        if task:
            task.cancel()
        await app[HUB].stop()

    app.router.add_get("/ws", handle_view_ws)
    app.router.add_get("/status", handle_status)
    app.router.add_get("/serial/ports", handle_serial_ports)
    app.router.add_post("/serial/select", handle_serial_select)
    app.router.add_post("/serial/connect", handle_serial_connect)
    app.router.add_post("/serial/disconnect", handle_serial_disconnect)
    app.router.add_get("/serial/status", handle_serial_status)
    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)
    return app


def main():
    app = create_app()
    web.run_app(
        app,
        host=cfg("hub", "host", default="127.0.0.1"),
        port=int(cfg("hub", "http_port", default=HTTP_PORT)),
        print=lambda msg: logger.info(msg),
    )


if __name__ == "__main__":
    main()
