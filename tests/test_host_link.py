"""Tests for the websocket Host binding."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from mcx.host_link import WebSocketHost


class FakeShim:
    """Browser-side end of the link: answers calls, pushes events."""

    def __init__(self, link: WebSocketHost):
        self.link = link
        self.sent = []
        self.closed = False
        self.reply = lambda request: {"ok": True, "value": None}
        self._incoming = asyncio.Queue()

    async def send(self, data):
        request = json.loads(data)
        self.sent.append(request)
        reply = self.reply(request)
        if reply is not None:
            frame = json.dumps({"seq": request["seq"], **reply})
            asyncio.get_running_loop().call_soon(self.link._dispatch, frame)

    async def close(self):
        self.closed = True
        await self._incoming.put(None)

    def push(self, frame: dict):
        self._incoming.put_nowait(json.dumps(frame))

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item


@pytest.fixture
def link():
    return WebSocketHost(call_timeout=0.1)


def make_controller():
    controller = MagicMock()
    controller.on_updated = AsyncMock()
    controller.on_removed = AsyncMock()
    controller.on_message = AsyncMock()
    return controller


async def attach(link, shim):
    task = asyncio.create_task(link.handler(shim))
    await asyncio.sleep(0)
    return task


class TestCalls:
    @pytest.mark.asyncio
    async def test_call_without_shim(self, link):
        result = await link.set_badge("1")
        assert not result.ok
        assert result.error == "disconnected"

    @pytest.mark.asyncio
    async def test_list_audible(self, link):
        shim = FakeShim(link)
        shim.reply = lambda req: {"ok": True, "value": [
            {"id": 4, "window": 1, "url": "https://a.test/", "audible": True},
        ]}
        task = await attach(link, shim)

        result = await link.list_audible()

        assert result.ok
        assert result.value[0].id == 4
        assert result.value[0].audible is True
        assert shim.sent[0]["op"] == "query"
        await shim.close()
        await task

    @pytest.mark.asyncio
    async def test_get_context_fills_id(self, link):
        shim = FakeShim(link)
        shim.reply = lambda req: {"ok": True, "value": {"url": "https://a.test/", "discarded": True}}
        task = await attach(link, shim)

        result = await link.get_context(9)

        assert result.value.id == 9
        assert result.value.discarded is True
        await shim.close()
        await task

    @pytest.mark.asyncio
    async def test_error_reply(self, link):
        shim = FakeShim(link)
        shim.reply = lambda req: {"ok": False, "error": "no_such_context", "detail": "tab 3"}
        task = await attach(link, shim)

        result = await link.execute(3, file="inject.js")

        assert result.error == "no_such_context"
        assert result.detail == "tab 3"
        assert shim.sent[0] == {"seq": 1, "op": "execute", "context": 3, "file": "inject.js"}
        await shim.close()
        await task

    @pytest.mark.asyncio
    async def test_timeout(self, link):
        shim = FakeShim(link)
        shim.reply = lambda req: None
        task = await attach(link, shim)

        result = await link.send_message(3, {"type": "unhook"})

        assert result.error == "timeout"
        assert link._pending == {}
        await shim.close()
        await task

    @pytest.mark.asyncio
    async def test_disconnect_fails_pending_calls(self, link):
        shim = FakeShim(link)
        shim.reply = lambda req: None
        task = await attach(link, shim)

        call = asyncio.create_task(link.set_enabled(True))
        await asyncio.sleep(0.01)
        await shim.close()
        await task

        result = await call
        assert result.error == "disconnected"
        assert not link.connected


class TestEvents:
    @pytest.mark.asyncio
    async def test_events_reach_controller(self, link):
        controller = make_controller()
        link.bind(controller)
        shim = FakeShim(link)
        task = await attach(link, shim)

        shim.push({"event": "updated", "context": 3, "changes": {"audible": True}})
        shim.push({"event": "message", "context": 3, "message": {"type": "play"}})
        shim.push({"event": "removed", "context": 3})
        shim.push({"event": "bogus", "context": 3})
        await asyncio.sleep(0.01)

        controller.on_updated.assert_awaited_once_with(3, {"audible": True})
        controller.on_message.assert_awaited_once_with(3, {"type": "play"})
        controller.on_removed.assert_awaited_once_with(3)
        await shim.close()
        await task

    @pytest.mark.asyncio
    async def test_invalid_frames_are_skipped(self, link):
        controller = make_controller()
        link.bind(controller)
        shim = FakeShim(link)
        task = await attach(link, shim)

        shim._incoming.put_nowait("{not json")
        shim._incoming.put_nowait("[1, 2]")
        shim.push({"event": "removed", "context": 1})
        await asyncio.sleep(0.01)

        controller.on_removed.assert_awaited_once_with(1)
        await shim.close()
        await task

    @pytest.mark.asyncio
    async def test_on_connect_runs_for_each_shim(self, link):
        on_connect = AsyncMock()
        link.bind(make_controller(), on_connect=on_connect)

        first = FakeShim(link)
        first_task = await attach(link, first)
        second = FakeShim(link)
        second_task = await attach(link, second)
        await asyncio.sleep(0.01)

        assert on_connect.await_count == 2
        assert first.closed
        await first_task
        assert link.connected

        await second.close()
        await second_task
        assert not link.connected
