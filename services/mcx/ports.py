"""
Serial port selection.

A PortPicker hands the SerialBridge an opaque PortHandle.  Picking is a
user-permissioned step: the hub only calls request_port() in response to an
explicit request from a UI client, never on its own.

SystemPortPicker enumerates ports with pyserial's list_ports.  Filters use
the same shape as the browser serial API, in snake case:

    [{"usb_vendor_id": 0x2341, "usb_product_id": 0x0043}]

An empty filter list matches every port.  A filter may also name a device
path directly: {"device": "/dev/ttyACM0"}.
"""

import asyncio
import logging
from abc import ABC, abstractmethod

from serial.tools import list_ports

from .errors import PortUnavailable

logger = logging.getLogger(__name__)


class PortHandle:
    """A selected (not necessarily open) serial port."""

    def __init__(self, device: str, vid: int | None = None, pid: int | None = None,
                 serial_number: str | None = None, description: str | None = None):
        self.device = device
        self.vid = vid
        self.pid = pid
        self.serial_number = serial_number
        self.description = description

    @classmethod
    def from_port_info(cls, info) -> "PortHandle":
        return cls(
            device=info.device,
            vid=info.vid,
            pid=info.pid,
            serial_number=info.serial_number,
            description=info.description,
        )

    def matches(self, filters: list[dict] | None) -> bool:
        if not filters:
            return True
        for f in filters:
            if "device" in f and f["device"] != self.device:
                continue
            if "usb_vendor_id" in f and f["usb_vendor_id"] != self.vid:
                continue
            if "usb_product_id" in f and f["usb_product_id"] != self.pid:
                continue
            return True
        return False

    def info(self) -> dict:
        return {
            "device": self.device,
            "usb_vendor_id": self.vid,
            "usb_product_id": self.pid,
            "serial_number": self.serial_number,
            "description": self.description,
        }

    def __eq__(self, other):
        return isinstance(other, PortHandle) and other.device == self.device

    def __hash__(self):
        return hash(self.device)

    def __repr__(self):
        if self.vid is not None:
            return f"PortHandle({self.device!r}, {self.vid:04x}:{self.pid or 0:04x})"
        return f"PortHandle({self.device!r})"


class PortPicker(ABC):
    """Interface every port picker must implement."""

    @abstractmethod
    async def request_port(self, filters: list[dict] | None = None) -> PortHandle:
        """Pick a port matching *filters*.  Raises PortUnavailable if none does."""

    @abstractmethod
    async def list_known_ports(self) -> list[PortHandle]: ...


class SystemPortPicker(PortPicker):
    """Picks from the serial ports the OS currently exposes."""

    def __init__(self, usb_only: bool = False):
        self._usb_only = usb_only

    async def list_known_ports(self) -> list[PortHandle]:
        infos = await asyncio.to_thread(list_ports.comports)
        ports = [PortHandle.from_port_info(i) for i in sorted(infos, key=lambda i: i.device)]
        if self._usb_only:
            ports = [p for p in ports if p.vid is not None]
        return ports

    async def request_port(self, filters: list[dict] | None = None) -> PortHandle:
        ports = await self.list_known_ports()
        for port in ports:
            if port.matches(filters):
                logger.info("Picked serial port %r", port)
                return port
        logger.warning("No serial port matches %s (%d known)", filters, len(ports))
        raise PortUnavailable(f"no serial port matches {filters!r}")
