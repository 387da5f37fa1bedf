"""
Error taxonomy for the MCX hub.

Bridge errors (NotAvailable, PortUnavailable, OpenFailed, WriteFailed) are
raised to whoever called the SerialBridge operation; the hub maps them to
HTTP error responses and keeps running.  StaleMessage and
MetadataUnavailable never leave the controller: the first is dropped, the
second degrades to partial metadata.
"""


class BridgeError(Exception):
    """Base class for serial bridge failures."""

    kind = "bridge_error"


class NotAvailable(BridgeError):
    """Serial support is absent or disabled on this host."""

    kind = "not_available"


class PortUnavailable(BridgeError):
    """No port has been selected, or none matched the request."""

    kind = "port_unavailable"


class OpenFailed(BridgeError):
    """The transport refused to open the port (busy, permission denied)."""

    kind = "open_failed"


class WriteFailed(BridgeError):
    """The transport failed mid-write; the write handle has been discarded."""

    kind = "write_failed"


class StaleMessage(Exception):
    """A relay message arrived for a source id that is no longer registered."""

    def __init__(self, source_id, kind: str):
        super().__init__(f"{kind} for unknown source {source_id!r}")
        self.source_id = source_id
        self.kind = kind


class MetadataUnavailable(Exception):
    """Metadata extraction failed; registration continues with partial data."""
