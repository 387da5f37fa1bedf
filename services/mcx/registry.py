# MCX Bridge
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Source model & registry.

One Source per tracked browsing context.  The registry is the single source
of truth for which contexts are currently tracked; it is created and owned
by the LifecycleController and handed to anything that needs read access.
All methods are synchronous, so each one completes without another event
handler observing a half-applied change.
"""

import logging
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


class SourceMetadata:
    """Static snapshot of a source, taken when it becomes active."""

    def __init__(self, title=None, hostname=None, favicon_url=None,
                 thumbnail_url=None, accent_color=None):
        self.title = title
        self.hostname = hostname
        self.favicon_url = favicon_url
        self.thumbnail_url = thumbnail_url
        self.accent_color = accent_color    # [r, g, b, a] or None

    @classmethod
    def partial(cls, title=None, url=None, favicon_url=None) -> "SourceMetadata":
        """Metadata for when extraction failed: only what the host told us."""
        hostname = urlparse(url).hostname if url else None
        return cls(title=title, hostname=hostname, favicon_url=favicon_url)

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "hostname": self.hostname,
            "favicon_url": self.favicon_url,
            "thumbnail_url": self.thumbnail_url,
            "accent_color": list(self.accent_color) if self.accent_color else None,
        }


class MediaState:
    """Playback state reported by the content agent after its handshake."""

    def __init__(self, paused=True, muted=False, title=None, artist=None, album=None):
        self.paused = paused
        self.muted = muted
        self.title = title
        self.artist = artist
        self.album = album

    @classmethod
    def from_dict(cls, data: dict) -> "MediaState":
        # Agents report muted media as volume None; honour that when no
        # explicit flag is present.
        if "muted" in data:
            muted = bool(data["muted"])
        elif "volume" in data:
            muted = data["volume"] is None
        else:
            muted = False
        return cls(
            paused=bool(data.get("paused", True)),
            muted=muted,
            title=data.get("title"),
            artist=data.get("artist"),
            album=data.get("album"),
        )

    def to_dict(self) -> dict:
        return {
            "paused": self.paused,
            "muted": self.muted,
            "title": self.title,
            "artist": self.artist,
            "album": self.album,
        }


class Source:
    """A tracked browsing context."""

    def __init__(self, id, metadata: SourceMetadata, window=None, url=None):
        self.id = id
        self.window = window          # containing window, used to focus it
        self.url = url
        self.metadata = metadata
        self.media: MediaState | None = None    # None until handshake

    @property
    def hooked(self) -> bool:
        return self.media is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "window": self.window,
            "url": self.url,
            **self.metadata.to_dict(),
            "media": self.media.to_dict() if self.media else None,
        }


# Fields that live on MediaState; patching them requires a completed handshake
_MEDIA_FIELDS = ("paused", "muted")


class SourceRegistry:
    """In-memory map of active sources, keyed by context id."""

    def __init__(self):
        self._sources: dict = {}

    def __len__(self) -> int:
        return len(self._sources)

    def __contains__(self, id) -> bool:
        return id in self._sources

    def get(self, id) -> Source | None:
        return self._sources.get(id)

    def ids(self) -> list:
        return list(self._sources)

    def all(self) -> list[Source]:
        return list(self._sources.values())

    def register(self, id, metadata: SourceMetadata, window=None, url=None) -> Source:
        if id in self._sources:
            # The controller unregisters before re-registering, so this means
            # a caller skipped that step.  Replace rather than duplicate.
            logger.warning("Source %s registered twice — replacing entry", id)
        source = Source(id, metadata, window=window, url=url)
        self._sources[id] = source
        logger.info("Source registered: %s (%s)", id, metadata.hostname)
        return source

    def update(self, id, patch: dict) -> Source | None:
        """Apply *patch* in place.  Returns the source, or None if absent.

        Keys: title, url, media (dict or MediaState), paused, muted.
        """
        unknown = set(patch) - {"title", "url", "media", *_MEDIA_FIELDS}
        if unknown:
            raise ValueError(f"Unknown source fields: {sorted(unknown)}")

        source = self._sources.get(id)
        if source is None:
            return None

        if "title" in patch:
            source.metadata.title = patch["title"]
        if "url" in patch:
            source.url = patch["url"]
        if "media" in patch:
            media = patch["media"]
            source.media = media if isinstance(media, MediaState) else MediaState.from_dict(media)
        for field in _MEDIA_FIELDS:
            if field not in patch:
                continue
            if source.media is None:
                logger.debug("Ignoring %s for %s — no handshake yet", field, id)
                continue
            setattr(source.media, field, bool(patch[field]))
        return source

    def unregister(self, id) -> Source | None:
        source = self._sources.pop(id, None)
        if source is not None:
            logger.info("Source unregistered: %s", id)
        return source
