# MCX Bridge
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Serial bridge — mirrors the "now playing" source to an external device.

Keeps zero or one open serial link and writes snapshots as
newline-delimited UTF-8 JSON:

    {"title": ..., "artist": ..., "album": ..., "url": ...,
     "paused": false, "muted": true, "ts": 1718000000000}

Lifecycle:
    bridge = SerialBridge(SystemPortPicker())
    await bridge.select_port(filters)   # user-initiated; does not open
    await bridge.open()                 # acquire the exclusive writer
    bridge.post(snapshot)               # fire-and-forget, last state wins
    await bridge.close()

A failed write drops the writer and leaves the link closed.  Nothing here
reconnects on its own: the port is user-permissioned, so reopening is the
UI's call.
"""

import asyncio
import json
import logging
import time

import serial_asyncio

from .errors import NotAvailable, OpenFailed, PortUnavailable, WriteFailed
from .observers import ViewObserver
from .ports import PortHandle, PortPicker
from .registry import Source

logger = logging.getLogger(__name__)

DEFAULT_BAUDRATE = 115200
SNAPSHOT_FIELDS = ("title", "artist", "album", "url", "paused", "muted", "ts")


def encode_snapshot(snapshot: dict) -> bytes:
    """One JSON object + line terminator, UTF-8 encoded."""
    line = json.dumps({k: snapshot.get(k) for k in SNAPSHOT_FIELDS},
                      ensure_ascii=False, separators=(",", ":"))
    return (line + "\n").encode("utf-8")


def decode_snapshot(line) -> dict:
    if isinstance(line, bytes):
        line = line.decode("utf-8")
    return json.loads(line)


def source_snapshot(source: Source | None) -> dict:
    """Snapshot fields for *source*; an empty, paused snapshot for None.

    The title falls back to the page title when the media element has none.
    """
    if source is None:
        return {"title": None, "artist": None, "album": None, "url": None,
                "paused": True, "muted": False}
    media = source.media
    return {
        "title": (media.title if media else None) or source.metadata.title,
        "artist": media.artist if media else None,
        "album": media.album if media else None,
        "url": source.url,
        "paused": bool(media.paused) if media else True,
        "muted": bool(media.muted) if media else False,
    }


class SerialBridge:
    """Owns the single serial link and its exclusive write handle."""

    def __init__(self, picker: PortPicker | None, *, baudrate: int = DEFAULT_BAUDRATE,
                 write_timeout: float = 2.0, opener=None):
        self._picker = picker
        self._baudrate = baudrate
        self._write_timeout = write_timeout
        self._open = opener or serial_asyncio.open_serial_connection
        self._port: PortHandle | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._lock = asyncio.Lock()
        self._last_ts = 0
        # post() state: one pending slot, drained by one task
        self._pending: dict | None = None
        self._drain_task: asyncio.Task | None = None
        self.last_error: Exception | None = None

    # ── State ──

    @property
    def available(self) -> bool:
        return self._picker is not None

    @property
    def port(self) -> PortHandle | None:
        return self._port

    @property
    def is_open(self) -> bool:
        return self._writer is not None

    def status(self) -> dict:
        return {
            "available": self.available,
            "connected": self.is_open,
            "port": self._port.device if self._port else None,
            "info": self._port.info() if self._port else None,
            "last_error": str(self.last_error) if self.last_error else None,
        }

    # ── Port selection ──

    def _require_picker(self) -> PortPicker:
        if self._picker is None:
            raise NotAvailable("serial support is disabled on this host")
        return self._picker

    async def list_ports(self) -> list[PortHandle]:
        return await self._require_picker().list_known_ports()

    async def select_port(self, filters: list[dict] | None = None) -> PortHandle:
        """Ask the picker for a port and remember it.  Does not open it."""
        port = await self._require_picker().request_port(filters)
        self._port = port
        logger.info("Serial port selected: %r", port)
        return port

    async def select_known_port(self, index: int) -> PortHandle:
        ports = await self.list_ports()
        if not 0 <= index < len(ports):
            raise PortUnavailable(f"no known port at index {index} ({len(ports)} known)")
        self._port = ports[index]
        logger.info("Serial port selected: %r", self._port)
        return self._port

    # ── Open / close ──

    async def open(self, baudrate: int | None = None):
        async with self._lock:
            if self._writer is not None:
                return
            if self._port is None:
                raise PortUnavailable("no serial port selected")
            baud = baudrate or self._baudrate
            try:
                _reader, writer = await self._open(url=self._port.device, baudrate=baud)
            except (OSError, ValueError) as e:
                # SerialException is an OSError; ValueError covers bad settings
                self.last_error = OpenFailed(str(e))
                logger.error("Failed to open %s: %s", self._port.device, e)
                raise self.last_error from e
            self._writer = writer
            self.last_error = None
            logger.info("Serial port opened: %s @ %d baud", self._port.device, baud)

    async def close(self):
        """Release the writer, close the port, forget the selection.  Idempotent."""
        if self._drain_task is not None:
            self._drain_task.cancel()
            self._drain_task = None
        self._pending = None
        async with self._lock:
            await self._release_writer()
            if self._port is not None:
                logger.info("Serial port closed: %s", self._port.device)
            self._port = None

    async def _release_writer(self):
        writer, self._writer = self._writer, None
        if writer is None:
            return
        try:
            writer.close()
            await asyncio.wait_for(writer.wait_closed(), timeout=self._write_timeout)
        except Exception as e:
            logger.warning("Error closing serial writer: %s", e)

    # ── Sending ──

    def _stamp(self, snapshot: dict) -> dict:
        now = int(time.time() * 1000)
        ts = max(snapshot.get("ts") or now, self._last_ts)
        self._last_ts = ts
        return {**snapshot, "ts": ts}

    async def send(self, snapshot: dict) -> bool:
        """Write one snapshot line.  Serialized: one write at a time.

        Returns False if the link is closed.  Raises WriteFailed (after
        discarding the writer) if the transport errors mid-write.
        """
        async with self._lock:
            if self._writer is None:
                logger.debug("No serial writer — not sending %s", snapshot.get("title"))
                return False
            data = encode_snapshot(self._stamp(snapshot))
            try:
                self._writer.write(data)
                await asyncio.wait_for(self._writer.drain(), timeout=self._write_timeout)
            except (OSError, asyncio.TimeoutError) as e:
                logger.error("Serial write failed: %s", e)
                await self._release_writer()
                self.last_error = WriteFailed(str(e) or type(e).__name__)
                raise self.last_error from e
            logger.debug("-> serial: %s", data.rstrip())
            return True

    def post(self, snapshot: dict):
        """Queue *snapshot* for sending; replaces anything not yet sent."""
        self._pending = snapshot
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain())

    async def _drain(self):
        while self._pending is not None:
            snapshot, self._pending = self._pending, None
            try:
                await self.send(snapshot)
            except WriteFailed as e:
                logger.warning("Dropped snapshot, serial link is down: %s", e)

    async def flush(self):
        """Wait until everything posted so far has been sent or dropped."""
        task = self._drain_task
        if task is not None and not task.done():
            await task


class NowPlayingForwarder(ViewObserver):
    """Observer that posts the most relevant source's state to the bridge.

    Relevant = the most recently updated source that is playing; failing
    that, the most recently updated source with media.  When no source
    qualifies any more, an empty paused snapshot is posted once.
    """

    def __init__(self, bridge: SerialBridge):
        self._bridge = bridge
        self._recent: dict = {}     # id -> Source, oldest first
        self._current_id = None

    def _touch(self, source: Source):
        self._recent.pop(source.id, None)
        self._recent[source.id] = source

    def relevant(self) -> Source | None:
        hooked = [s for s in reversed(self._recent.values()) if s.media is not None]
        for s in hooked:
            if not s.media.paused:
                return s
        return hooked[0] if hooked else None

    def _forward(self, trigger_id=None, force: bool = False):
        source = self.relevant()
        new_id = source.id if source else None
        if not force:
            if new_id is None and self._current_id is None:
                return
            # Relevance unchanged and the change was to some other source
            if new_id == self._current_id and trigger_id != new_id:
                return
        self._current_id = new_id
        self._bridge.post(source_snapshot(source))

    def resend(self):
        """Post the current state again, e.g. right after the link opens."""
        self._forward(force=True)

    async def add(self, source: Source) -> None:
        self._touch(source)
        if source.media is not None:
            self._forward(source.id)

    async def remove(self, source_id) -> None:
        if self._recent.pop(source_id, None) is None:
            return
        self._forward(source_id)

    async def update(self, source: Source) -> None:
        self._touch(source)
        self._forward(source.id)
