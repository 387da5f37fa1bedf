"""
View observers — UI surfaces that follow registry changes.

The controller only ever calls add / remove / update on the observer
interface; what an observer does with them (render, push over a socket,
forward to hardware) is its own business.  Observers must tolerate a
duplicate add or update for the same id.

Observers are held weakly: the hub never owns a view's lifetime, and a view
that has gone away simply stops receiving notifications.
"""

import asyncio
import json
import logging
import weakref
from abc import ABC, abstractmethod

from aiohttp import web

from .registry import Source

logger = logging.getLogger(__name__)


class ViewObserver(ABC):
    """Interface every view observer must implement."""

    @abstractmethod
    async def add(self, source: Source) -> None: ...

    @abstractmethod
    async def remove(self, source_id) -> None: ...

    @abstractmethod
    async def update(self, source: Source) -> None: ...


class ObserverSet:
    """Weakly referenced set of observers with concurrent fan-out."""

    def __init__(self):
        self._observers: weakref.WeakSet = weakref.WeakSet()

    def __len__(self) -> int:
        return len(self._observers)

    def attach(self, observer: ViewObserver):
        self._observers.add(observer)

    def detach(self, observer: ViewObserver):
        self._observers.discard(observer)

    async def add(self, source: Source):
        await self._fan_out("add", source)

    async def remove(self, source_id):
        await self._fan_out("remove", source_id)

    async def update(self, source: Source):
        await self._fan_out("update", source)

    async def _fan_out(self, method: str, arg):
        observers = list(self._observers)
        if not observers:
            return
        results = await asyncio.gather(
            *(getattr(o, method)(arg) for o in observers),
            return_exceptions=True,
        )
        for observer, r in zip(observers, results):
            if isinstance(r, Exception):
                logger.warning("Observer %s failed on %s: %s",
                               type(observer).__name__, method, r)


class WebSocketView(ViewObserver):
    """Pushes registry changes to one UI client over an aiohttp WebSocket.

    Wire messages:
        {"type": "add",    "source": {...}}
        {"type": "del",    "id": ...}
        {"type": "update", "source": {...}}
    """

    def __init__(self, ws: web.WebSocketResponse):
        self._ws = ws

    @property
    def closed(self) -> bool:
        return self._ws.closed

    async def _send(self, message: dict):
        if self._ws.closed:
            return
        await self._ws.send_str(json.dumps(message))

    async def add(self, source: Source) -> None:
        await self._send({"type": "add", "source": source.to_dict()})

    async def remove(self, source_id) -> None:
        await self._send({"type": "del", "id": source_id})

    async def update(self, source: Source) -> None:
        await self._send({"type": "update", "source": source.to_dict()})

    async def close(self):
        if not self._ws.closed:
            await self._ws.close()
