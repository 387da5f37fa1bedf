# MCX Bridge
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Abstract base class for the browser host the hub is attached to.

The host lists and observes browsing contexts, runs code inside them,
relays messages to their content agents and owns the aggregate entry point
(badge + enabled state).  Every call returns a HostResult instead of
raising, and every caller checks it — even if all it does is log.

Badge styling, focusing and closing have no-op defaults for hosts that
don't support them.
"""

from abc import ABC, abstractmethod


class HostResult:
    """Outcome of a host call: ok with an optional value, or err(kind)."""

    __slots__ = ("ok", "value", "error", "detail")

    def __init__(self, ok: bool, value=None, error: str | None = None, detail: str = ""):
        self.ok = ok
        self.value = value
        self.error = error
        self.detail = detail

    @classmethod
    def success(cls, value=None) -> "HostResult":
        return cls(True, value=value)

    @classmethod
    def err(cls, kind: str, detail: str = "") -> "HostResult":
        return cls(False, error=kind, detail=detail)

    def __bool__(self) -> bool:
        return self.ok

    def __repr__(self) -> str:
        if self.ok:
            return f"HostResult.success({self.value!r})"
        return f"HostResult.err({self.error!r}, {self.detail!r})"


class ContextInfo:
    """What the host knows about one browsing context."""

    def __init__(self, id, window=None, url=None, title=None, favicon_url=None,
                 audible=False, discarded=False, status="complete"):
        self.id = id
        self.window = window
        self.url = url
        self.title = title
        self.favicon_url = favicon_url
        self.audible = audible
        self.discarded = discarded
        self.status = status

    @classmethod
    def from_dict(cls, data: dict) -> "ContextInfo":
        return cls(
            id=data.get("id"),
            window=data.get("window"),
            url=data.get("url"),
            title=data.get("title"),
            favicon_url=data.get("favicon_url"),
            audible=bool(data.get("audible", False)),
            discarded=bool(data.get("discarded", False)),
            status=data.get("status", "complete"),
        )


class Host(ABC):
    """Interface every host binding must implement."""

    @abstractmethod
    async def list_audible(self) -> HostResult:
        """Audible, fully loaded contexts.  Value: list[ContextInfo]."""

    @abstractmethod
    async def get_context(self, id) -> HostResult:
        """Current state of one context.  Value: ContextInfo."""

    @abstractmethod
    async def execute(self, id, code: str | None = None, file: str | None = None) -> HostResult:
        """Run a snippet or an injected script in the context.  Value: list of results."""

    @abstractmethod
    async def send_message(self, id, message: dict) -> HostResult: ...

    @abstractmethod
    async def set_badge(self, text: str | None) -> HostResult: ...

    @abstractmethod
    async def set_enabled(self, enabled: bool) -> HostResult: ...

    # -- Optional: override in hosts that support them --

    async def style_badge(self, text_color: str, background: str) -> HostResult:
        return HostResult.success()

    async def activate(self, id, window=None) -> HostResult:
        return HostResult.err("unsupported", "activate")

    async def close(self, id) -> HostResult:
        return HostResult.err("unsupported", "close")
