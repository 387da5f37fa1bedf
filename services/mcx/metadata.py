# MCX Bridge
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Default metadata extractor: describe(host, context) -> SourceMetadata.

Builds the static snapshot shown for a source when it becomes active:
hostname from the URL, a thumbnail (YouTube video still, else the page's
og:image), and an accent colour averaged from the thumbnail or favicon.

Each step degrades on its own — a missing thumbnail leaves thumbnail_url
None, an unreachable image leaves accent_color None.  The controller bounds
the whole call with a timeout and falls back to partial metadata if it
raises.
"""

import asyncio
import base64
import logging
import re
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from io import BytesIO
from urllib.parse import urlparse

import aiohttp
from PIL import Image

from .errors import MetadataUnavailable
from .host import ContextInfo, Host
from .registry import SourceMetadata

log = logging.getLogger(__name__)

COLOR_CACHE_SIZE = 100
MAX_IMAGE_BYTES = 5 * 1024 * 1024

_YOUTUBE_HOSTS = re.compile(r"^(www|music)\.youtube\.com$")
_YOUTUBE_VIDEO = re.compile(r"/(?:watch\?v=|embed/|shorts/)([A-Za-z0-9_-]{11})")

OG_IMAGE_SNIPPET = (
    "document.querySelector(\"meta[property='og:image']\")?.getAttribute(\"content\");"
)

# Host errors after which there is nothing left to describe
_GONE = ("no_such_context", "disconnected")

# Shared thread pool for CPU-bound image decoding
_image_executor = ThreadPoolExecutor(max_workers=2)


class ColorCache(OrderedDict):
    """URL -> [r, g, b, a], evicting the least recently used entry."""

    def __init__(self, max_size=COLOR_CACHE_SIZE):
        super().__init__()
        self.max_size = max_size

    def __getitem__(self, url):
        color = super().__getitem__(url)
        self.move_to_end(url)
        return color

    def __setitem__(self, url, color):
        super().__setitem__(url, color)
        self.move_to_end(url)
        if len(self) > self.max_size:
            self.popitem(last=False)


_color_cache = ColorCache()


def youtube_thumbnail(url: str | None) -> str | None:
    """hqdefault still for YouTube / YouTube Music watch, embed and shorts URLs."""
    if not url:
        return None
    host = urlparse(url).hostname or ""
    if not _YOUTUBE_HOSTS.match(host):
        return None
    m = _YOUTUBE_VIDEO.search(url)
    if not m:
        return None
    return f"https://i.ytimg.com/vi/{m.group(1)}/hqdefault.jpg"


def average_color(image_bytes: bytes) -> list | None:
    """Scale the image to a single pixel and return it as [r, g, b, a].

    Runs in a thread pool (CPU-bound).
    """
    try:
        image = Image.open(BytesIO(image_bytes)).convert("RGBA")
        pixel = image.resize((1, 1), Image.Resampling.BOX).getpixel((0, 0))
        return list(pixel)
    except Exception as e:
        log.warning("Error decoding image for accent colour: %s", e)
        return None


async def _read_image(url: str, session: aiohttp.ClientSession) -> bytes | None:
    if url.startswith("data:"):
        header, _, payload = url.partition(",")
        if not header.endswith(";base64"):
            return None
        return base64.b64decode(payload)
    async with session.get(url, timeout=aiohttp.ClientTimeout(total=5)) as resp:
        resp.raise_for_status()
        data = await resp.content.read(MAX_IMAGE_BYTES)
    return data or None


async def accent_color(url: str | None, session: aiohttp.ClientSession | None = None) -> list | None:
    """Accent colour for the image at *url*, cached per URL."""
    if not url:
        return None
    if url in _color_cache:
        return _color_cache[url]

    close_session = False
    if session is None:
        session = aiohttp.ClientSession()
        close_session = True
    try:
        image_bytes = await _read_image(url, session)
        if not image_bytes:
            log.debug("No image data at %s", url)
            return None
        loop = asyncio.get_running_loop()
        color = await loop.run_in_executor(_image_executor, average_color, image_bytes)
        if color:
            _color_cache[url] = color
        return color
    except aiohttp.ClientError as e:
        log.warning("Error fetching image %s: %s", url, e)
        return None
    except ValueError as e:
        log.warning("Bad image URL %s: %s", url, e)
        return None
    finally:
        if close_session:
            await session.close()


async def find_thumbnail(host: Host, context: ContextInfo) -> str | None:
    thumb = youtube_thumbnail(context.url)
    if thumb:
        return thumb
    result = await host.execute(context.id, code=OG_IMAGE_SNIPPET)
    if result.error in _GONE:
        raise MetadataUnavailable(f"context {context.id!r}: {result.error}")
    if not result.ok:
        log.debug("og:image lookup failed for %s: %s", context.id, result)
        return None
    values = result.value or []
    return values[0] if values and isinstance(values[0], str) else None


async def describe(host: Host, context: ContextInfo,
                   session: aiohttp.ClientSession | None = None) -> SourceMetadata:
    """Build the metadata snapshot for a context that just became active."""
    metadata = SourceMetadata.partial(
        title=context.title, url=context.url, favicon_url=context.favicon_url)
    metadata.thumbnail_url = await find_thumbnail(host, context)
    metadata.accent_color = await accent_color(
        metadata.thumbnail_url or metadata.favicon_url, session)
    return metadata
