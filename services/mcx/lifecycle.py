# MCX Bridge
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
LifecycleController — decides when a context enters or leaves the registry.

Per-id state machine:

    absent -> registering -> active -> unregistering -> absent

    audible (absent)      describe, register, badge, observers.add, inject agent
    navigation (active)   unregister now, re-check audibility after the grace
                          period, register again only if still audible
    title (active)        patch title in place, observers.update
    discard               unregister now, no re-check; stays out until the
                          host reports the context un-discarded
    close                 unregister now, forget the id
    agent message         relay protocol, observers.update

Events and agent messages for the same id run one at a time, in arrival
order, under that id's lock.  Different ids interleave freely.  The grace
re-check is a cancelable task keyed by id: navigation replaces it, discard
and close cancel it, and it re-reads controller state before acting.

The controller owns the one SourceRegistry instance and the observer set;
everything else reads them through it.
"""

import asyncio
import logging
import math

from . import relay
from .config import cfg
from .errors import StaleMessage
from .host import ContextInfo, Host, HostResult
from .metadata import describe as default_describe
from .observers import ObserverSet
from .registry import SourceMetadata, SourceRegistry

logger = logging.getLogger(__name__)

ABSENT = "absent"
REGISTERING = "registering"
ACTIVE = "active"
UNREGISTERING = "unregistering"

DEFAULT_GRACE_MS = 4500
DEFAULT_METADATA_TIMEOUT = 5.0

# Snippets for user controls, run inside the context against the hooked element
_PLAY = "window.$media.play();"
_PAUSE = "window.$media.pause();"
_SEEK = "window.$media.fastSeek(Math.max(window.$media.currentTime{delta:+g}, 0));"
_TOGGLE_MUTE = "window.$media.muted = !window.$media.muted;"

CONTROLS = ("playpause", "seek", "mute", "focus", "remove", "close")


class LifecycleController:
    def __init__(self, host: Host, describe=None, *, observers: ObserverSet | None = None,
                 grace_period: float | None = None, metadata_timeout: float | None = None):
        self.host = host
        self.registry = SourceRegistry()
        self.observers = observers or ObserverSet()
        self._describe = describe or default_describe
        if grace_period is None:
            grace_period = cfg("lifecycle", "grace_ms", default=DEFAULT_GRACE_MS) / 1000
        self.grace_period = grace_period
        if metadata_timeout is None:
            metadata_timeout = float(cfg("metadata", "timeout", default=DEFAULT_METADATA_TIMEOUT))
        self.metadata_timeout = metadata_timeout
        self._states: dict = {}         # id -> state, absent ids omitted
        self._locks: dict = {}          # id -> asyncio.Lock
        self._grace: dict = {}          # id -> pending re-check task
        self._discarded: set = set()

    # ── Introspection ──

    def state_of(self, id) -> str:
        return self._states.get(id, ABSENT)

    def grace_pending(self, id) -> bool:
        return id in self._grace

    def status(self) -> dict:
        return {
            "sources": len(self.registry),
            "states": {str(k): v for k, v in self._states.items()},
            "grace_pending": [str(k) for k in self._grace],
            "discarded": [str(k) for k in self._discarded],
            "observers": len(self.observers),
        }

    def _lock(self, id) -> asyncio.Lock:
        lock = self._locks.get(id)
        if lock is None:
            lock = self._locks[id] = asyncio.Lock()
        return lock

    # ── Startup / shutdown ──

    async def start(self, badge_text_color: str | None = None, badge_background: str | None = None):
        """Pick up whatever is already playing and drop what is gone.

        Runs at startup and again on every host reconnect, so it must leave
        the registry, badge and entry point consistent whatever state they
        were in before.
        """
        text_color = badge_text_color or cfg("badge", "text_color", default="white")
        background = badge_background or cfg("badge", "background", default="gray")
        self._check(await self.host.style_badge(text_color, background), "style badge")

        result = await self.host.list_audible()
        if not result.ok:
            logger.warning("Could not list audible contexts: %s", result)
        else:
            reported = set()
            for ctx in result.value or []:
                if ctx.discarded:
                    continue
                reported.add(ctx.id)
                async with self._lock(ctx.id):
                    self._discarded.discard(ctx.id)
                    if self.state_of(ctx.id) == ABSENT:
                        await self._register(ctx)
            for id in self.registry.ids():
                if id not in reported:
                    await self._prune(id)
        await self._sync_badge()
        logger.info("Lifecycle started: %d source(s) playing", len(self.registry))

    async def _prune(self, id):
        """Unregister *id* if the host no longer has it (or has discarded it).

        Tracked sources that are merely silent (paused) stay.
        """
        async with self._lock(id):
            if id not in self.registry:
                return
            result = await self.host.get_context(id)
            if result.ok and not result.value.discarded:
                return
            if not result.ok and result.error != "no_such_context":
                logger.warning("Could not re-check source %s: %s", id, result)
                return
            self._cancel_grace(id)
            if result.ok:
                self._discarded.add(id)
            await self._unregister(id, "gone after reconnect")

    async def shutdown(self):
        tasks = list(self._grace.values())
        self._grace.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Lifecycle stopped (%d source(s) tracked)", len(self.registry))

    # ── Host events ──

    async def on_updated(self, id, changes: dict):
        """Route one host 'updated' event.  Discard is handled first."""
        if "discarded" in changes:
            await self.on_discarded(id, bool(changes["discarded"]))
        if "url" in changes or "status" in changes:
            await self.on_navigated(id)
        if "title" in changes:
            await self.on_title(id, changes["title"])
        if "audible" in changes:
            await self.on_audible(id, bool(changes["audible"]))

    async def on_audible(self, id, audible: bool):
        if not audible:
            return
        async with self._lock(id):
            if id in self._discarded:
                logger.debug("Audible %s ignored — discarded", id)
                return
            if id in self._grace:
                logger.debug("Audible %s absorbed — grace re-check pending", id)
                return
            if self.state_of(id) != ABSENT:
                return
            result = await self.host.get_context(id)
            if not result.ok:
                logger.warning("Could not read context %s: %s", id, result)
                return
            if result.value.discarded:
                return
            await self._register(result.value)

    async def on_navigated(self, id):
        async with self._lock(id):
            was_pending = self._cancel_grace(id)
            was_active = await self._unregister(id, "navigation")
            if was_active or was_pending:
                self._grace[id] = asyncio.create_task(self._grace_recheck(id))
                logger.debug("Grace re-check for %s in %.1fs", id, self.grace_period)

    async def on_title(self, id, title):
        async with self._lock(id):
            if self.state_of(id) != ACTIVE:
                return
            source = self.registry.update(id, {"title": title})
            await self.observers.update(source)

    async def on_discarded(self, id, discarded: bool):
        async with self._lock(id):
            if not discarded:
                self._discarded.discard(id)
                return
            self._cancel_grace(id)
            self._discarded.add(id)
            await self._unregister(id, "discarded")

    async def on_removed(self, id):
        # The id's lock is kept: a handler queued behind this one still
        # holds it, and a fresh lock would let the next event run beside it.
        async with self._lock(id):
            self._cancel_grace(id)
            self._discarded.discard(id)
            await self._unregister(id, "closed")

    # ── Agent messages ──

    async def on_message(self, id, raw):
        message = relay.parse_message(raw)
        if message is None:
            logger.debug("Ignoring unrecognised message from %s: %r", id, raw)
            return
        async with self._lock(id):
            try:
                source = relay.apply_message(self.registry, id, message)
            except StaleMessage as e:
                logger.debug("Dropped stale message: %s", e)
                return
            if message.kind == relay.HOOK:
                self._check(await self.host.execute(id, file=relay.HOOK_SCRIPT),
                            f"inject {relay.HOOK_SCRIPT} into {id}")
            if source is not None:
                await self.observers.update(source)

    # ── User controls ──

    async def unregister(self, id) -> bool:
        """Drop a source from the list without any re-check."""
        async with self._lock(id):
            self._cancel_grace(id)
            return await self._unregister(id, "removed by user")

    async def control(self, id, action: str, **params) -> HostResult:
        """Run a user control.  Malformed requests come back as err(), never raise."""
        try:
            source = self.registry.get(id)
        except TypeError:
            return HostResult.err("bad_params", f"invalid source id {id!r}")
        if source is None:
            return HostResult.err("stale", f"no source {id!r}")
        if action == "remove":
            await self.unregister(id)
            return HostResult.success()
        if action == "focus":
            return await self.host.activate(id, source.window)
        if action == "close":
            return await self.host.close(id)
        if action not in CONTROLS:
            return HostResult.err("unknown_control", str(action))

        if source.media is None:
            return HostResult.err("not_hooked", f"{id!r} has no media yet")
        if action == "playpause":
            code = _PLAY if source.media.paused else _PAUSE
        elif action == "seek":
            try:
                seconds = float(params.get("seconds", 5))
            except (TypeError, ValueError):
                return HostResult.err("bad_params", f"seconds={params.get('seconds')!r}")
            if not math.isfinite(seconds):
                return HostResult.err("bad_params", f"seconds={seconds!r}")
            code = _SEEK.format(delta=seconds)
        else:
            code = _TOGGLE_MUTE
        return await self.host.execute(id, code=code)

    # ── Internals (caller holds the id's lock) ──

    async def _register(self, ctx: ContextInfo):
        id = ctx.id
        self._states[id] = REGISTERING
        try:
            metadata = await self._extract(ctx)
        except asyncio.CancelledError:
            self._states.pop(id, None)
            raise
        source = self.registry.register(id, metadata, window=ctx.window, url=ctx.url)
        self._states[id] = ACTIVE
        await self._sync_badge()
        await self.observers.add(source)
        self._check(await self.host.execute(id, file=relay.AGENT_SCRIPT),
                    f"inject {relay.AGENT_SCRIPT} into {id}")

    async def _extract(self, ctx: ContextInfo) -> SourceMetadata:
        try:
            return await asyncio.wait_for(self._describe(self.host, ctx), self.metadata_timeout)
        except asyncio.TimeoutError:
            logger.warning("Metadata for %s timed out after %.1fs — using partial metadata",
                           ctx.id, self.metadata_timeout)
        except Exception as e:
            logger.warning("Metadata for %s unavailable (%s) — using partial metadata", ctx.id, e)
        return SourceMetadata.partial(title=ctx.title, url=ctx.url, favicon_url=ctx.favicon_url)

    async def _unregister(self, id, reason: str) -> bool:
        if id not in self.registry:
            return False
        self._states[id] = UNREGISTERING
        self.registry.unregister(id)
        logger.info("Unregistering %s (%s)", id, reason)
        await self.observers.remove(id)
        await self._sync_badge()
        result = await self.host.send_message(id, relay.unhook_message())
        if not result.ok:
            logger.debug("Unhook for %s not delivered: %s", id, result)
        self._states.pop(id, None)
        return True

    async def _sync_badge(self):
        size = len(self.registry)
        self._check(await self.host.set_enabled(size > 0), "toggle entry point")
        self._check(await self.host.set_badge(str(size) if size else None), "set badge")

    def _cancel_grace(self, id) -> bool:
        task = self._grace.pop(id, None)
        if task is None:
            return False
        task.cancel()
        return True

    async def _grace_recheck(self, id):
        await asyncio.sleep(self.grace_period)
        async with self._lock(id):
            if self._grace.get(id) is not asyncio.current_task():
                return
            del self._grace[id]
            if id in self._discarded or self.state_of(id) != ABSENT:
                return
            result = await self.host.get_context(id)
            if not result.ok:
                logger.debug("Grace re-check for %s: context gone (%s)", id, result)
                return
            ctx = result.value
            if not ctx.audible or ctx.discarded:
                logger.info("Grace re-check for %s: silent, not re-registering", id)
                return
            await self._register(ctx)

    @staticmethod
    def _check(result: HostResult, what: str):
        if not result.ok:
            logger.warning("Host call failed (%s): %s", what, result)
