# MCX Bridge
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
WebSocketHost — Host binding for a browser-side shim.

The shim (a small background script in the browser) connects to the hub's
host port and speaks JSON, one frame per message.

Hub -> shim calls, answered by a reply with the same seq:

    {"seq": 7, "op": "execute", "context": 12, "file": "inject.js"}
    {"seq": 7, "ok": true, "value": [...]}
    {"seq": 7, "ok": false, "error": "no_such_context", "detail": "..."}

    ops: query, get, execute, send, badge, badge_style, enable, activate, close

Shim -> hub events (no reply):

    {"event": "updated", "context": 12, "changes": {"audible": true}}
    {"event": "removed", "context": 12}
    {"event": "message", "context": 12, "message": {"type": "pause"}}

Only one shim is attached at a time; a new connection replaces the old.
Events are handed to the controller as tasks so that a handler awaiting a
host call never blocks the loop that delivers that call's reply.
"""

import asyncio
import json
import logging

import websockets
from websockets.exceptions import ConnectionClosed

from .config import cfg
from .host import ContextInfo, Host, HostResult

logger = logging.getLogger(__name__)

DEFAULT_CALL_TIMEOUT = 5.0


class WebSocketHost(Host):
    def __init__(self, call_timeout: float | None = None):
        if call_timeout is None:
            call_timeout = float(cfg("host_link", "call_timeout", default=DEFAULT_CALL_TIMEOUT))
        self._call_timeout = call_timeout
        self._ws = None
        self._seq = 0
        self._pending: dict[int, asyncio.Future] = {}
        self._tasks: set[asyncio.Task] = set()
        self._controller = None
        self._on_connect = None

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def bind(self, controller, on_connect=None):
        """Attach the LifecycleController that receives host events.

        on_connect: optional async callable run each time a shim attaches.
        """
        self._controller = controller
        self._on_connect = on_connect

    async def serve(self, host: str, port: int):
        server = await websockets.serve(self.handler, host, port)
        logger.info("Host link listening on ws://%s:%d", host, port)
        return server

    # ── Connection handling ──

    async def handler(self, ws, path=None):
        previous, self._ws = self._ws, ws
        if previous is not None:
            logger.warning("New host shim connected — replacing previous connection")
            self._fail_pending("replaced")
            await previous.close()
        else:
            logger.info("Host shim connected")
        if self._on_connect is not None:
            self._spawn(self._on_connect())
        try:
            async for raw in ws:
                self._dispatch(raw)
        except ConnectionClosed as e:
            logger.info("Host shim connection closed: %s", e)
        finally:
            if self._ws is ws:
                self._ws = None
                self._fail_pending("disconnected")
                logger.info("Host shim disconnected")

    def _dispatch(self, raw):
        try:
            msg = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Host link: invalid JSON: %r", raw)
            return
        if not isinstance(msg, dict):
            logger.warning("Host link: unexpected frame: %r", msg)
            return

        if "event" not in msg:
            fut = self._pending.get(msg.get("seq"))
            if fut is None:
                logger.debug("Host link: reply for unknown call %s", msg.get("seq"))
            elif not fut.done():
                fut.set_result(msg)
            return

        if self._controller is None:
            logger.debug("Host link: no controller bound, dropping %s", msg.get("event"))
            return
        event = msg["event"]
        context = msg.get("context")
        if event == "updated":
            self._spawn(self._controller.on_updated(context, msg.get("changes") or {}))
        elif event == "removed":
            self._spawn(self._controller.on_removed(context))
        elif event == "message":
            self._spawn(self._controller.on_message(context, msg.get("message")))
        else:
            logger.debug("Host link: unknown event %r", event)

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Host event handler failed: %s", task.exception())

    def _fail_pending(self, reason: str):
        for fut in self._pending.values():
            if not fut.done():
                fut.set_result({"ok": False, "error": reason})

    async def close_link(self):
        self._fail_pending("disconnected")
        for task in list(self._tasks):
            task.cancel()
        if self._ws is not None:
            await self._ws.close()
            self._ws = None

    # ── Calls ──

    async def _call(self, op: str, **params) -> HostResult:
        ws = self._ws
        if ws is None:
            return HostResult.err("disconnected", op)
        self._seq += 1
        seq = self._seq
        fut = asyncio.get_running_loop().create_future()
        self._pending[seq] = fut
        try:
            await ws.send(json.dumps({"seq": seq, "op": op, **params}))
            reply = await asyncio.wait_for(fut, self._call_timeout)
        except asyncio.TimeoutError:
            logger.warning("Host call %s timed out after %.1fs", op, self._call_timeout)
            return HostResult.err("timeout", op)
        except ConnectionClosed:
            return HostResult.err("disconnected", op)
        finally:
            self._pending.pop(seq, None)
        if reply.get("ok"):
            return HostResult.success(reply.get("value"))
        return HostResult.err(reply.get("error") or "host_error", str(reply.get("detail", "")))

    async def list_audible(self) -> HostResult:
        result = await self._call("query", audible=True, status="complete")
        if not result.ok:
            return result
        return HostResult.success([ContextInfo.from_dict(d) for d in result.value or []])

    async def get_context(self, id) -> HostResult:
        result = await self._call("get", context=id)
        if not result.ok:
            return result
        if not isinstance(result.value, dict):
            return HostResult.err("bad_reply", f"get {id!r}")
        return HostResult.success(ContextInfo.from_dict({"id": id, **result.value}))

    async def execute(self, id, code: str | None = None, file: str | None = None) -> HostResult:
        params = {"context": id}
        if code is not None:
            params["code"] = code
        if file is not None:
            params["file"] = file
        return await self._call("execute", **params)

    async def send_message(self, id, message: dict) -> HostResult:
        return await self._call("send", context=id, message=message)

    async def set_badge(self, text: str | None) -> HostResult:
        return await self._call("badge", text=text)

    async def set_enabled(self, enabled: bool) -> HostResult:
        return await self._call("enable", enabled=enabled)

    async def style_badge(self, text_color: str, background: str) -> HostResult:
        return await self._call("badge_style", text_color=text_color, background=background)

    async def activate(self, id, window=None) -> HostResult:
        return await self._call("activate", context=id, window=window)

    async def close(self, id) -> HostResult:
        return await self._call("close", context=id)
