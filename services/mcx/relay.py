"""
Relay protocol between content agents and the hub.

Every message carries an implicit sender context id (the host tells us who
sent it).  Inbound kinds:

    hook          {"type": "hook", "media": {paused, muted, title?, artist?, album?}}
    play          {"type": "play"}
    pause         {"type": "pause"}
    volumechange  {"type": "volumechange", "volume": 0.0-1.0 | null}

Outbound:

    unhook        {"type": "unhook"}  — detach listeners, forget the element

Some agents prefix hook/unhook with "@"; both
spellings are accepted.  Unknown kinds parse to None and are ignored.  A
message for an id that is not registered raises StaleMessage, which the
controller drops — unregistration can legitimately race ahead of a message
that was already in flight.
"""

import logging

from .errors import StaleMessage
from .registry import MediaState, Source, SourceRegistry

logger = logging.getLogger(__name__)

HOOK = "hook"
PLAY = "play"
PAUSE = "pause"
VOLUMECHANGE = "volumechange"
UNHOOK = "unhook"

INBOUND_KINDS = (HOOK, PLAY, PAUSE, VOLUMECHANGE)

# Scripts the host injects: the agent on registration, the observer on hook
AGENT_SCRIPT = "inject.js"
HOOK_SCRIPT = "hook.js"


class RelayMessage:
    __slots__ = ("kind", "media", "volume")

    def __init__(self, kind: str, media: MediaState | None = None, volume=None):
        self.kind = kind
        self.media = media
        self.volume = volume

    def __repr__(self):
        return f"RelayMessage({self.kind!r})"


def parse_message(raw) -> RelayMessage | None:
    """Parse an inbound agent message; None if it is not one of ours."""
    if isinstance(raw, str):
        # Bare-string form, e.g. "@hook" without payload
        raw = {"type": raw}
    if not isinstance(raw, dict):
        return None
    kind = raw.get("type")
    if not isinstance(kind, str):
        return None
    kind = kind.lstrip("@")
    if kind not in INBOUND_KINDS:
        return None

    if kind == HOOK:
        media = raw.get("media")
        return RelayMessage(HOOK, media=MediaState.from_dict(media if isinstance(media, dict) else {}))
    if kind == VOLUMECHANGE:
        # Only an explicit null means muted; a missing volume does not
        return RelayMessage(VOLUMECHANGE, volume=raw.get("volume", 1.0))
    return RelayMessage(kind)


def unhook_message() -> dict:
    return {"type": UNHOOK}


def apply_message(registry: SourceRegistry, source_id, message: RelayMessage) -> Source | None:
    """Apply *message* to the registry entry for *source_id*.

    Returns the updated source, or None when the message was a delta that
    arrived before the handshake (nothing to update yet).
    """
    source = registry.get(source_id)
    if source is None:
        raise StaleMessage(source_id, message.kind)

    if message.kind == HOOK:
        return registry.update(source_id, {"media": message.media})

    if not source.hooked:
        logger.debug("%s from %s before hook — ignored", message.kind, source_id)
        return None

    if message.kind == PLAY:
        return registry.update(source_id, {"paused": False})
    if message.kind == PAUSE:
        return registry.update(source_id, {"paused": True})
    if message.kind == VOLUMECHANGE:
        return registry.update(source_id, {"muted": message.volume is None})
    return None
