"""Systemd watchdog heartbeat for the hub.

Sends READY=1 once, then WATCHDOG=1 plus a STATUS= line at regular
intervals so `systemctl status mcx-hub` shows how many sources are tracked
and whether the serial link is up.  Silently no-ops when NOTIFY_SOCKET is
unset (dev mode).

Usage:
    from mcx.watchdog import watchdog_loop
    asyncio.create_task(watchdog_loop(status=lambda: "2 sources, serial up"))
"""

import asyncio
import logging
import os
import socket

logger = logging.getLogger(__name__)


def sd_notify(msg: str) -> bool:
    """Send a notification to the systemd notify socket.  False if none."""
    addr = os.environ.get("NOTIFY_SOCKET")
    if not addr:
        return False
    if addr[0] == "@":
        addr = "\0" + addr[1:]
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    try:
        sock.sendto(msg.encode(), addr)
    except OSError as e:
        logger.warning("sd_notify failed: %s", e)
        return False
    finally:
        sock.close()
    return True


async def watchdog_loop(interval: int = 20, status=None):
    """Heartbeat every *interval* seconds.  Call as asyncio.create_task().

    status: optional callable returning a one-line status string.
    """
    sd_notify("READY=1")
    logger.info("Watchdog started (interval=%ds)", interval)
    while True:
        msg = "WATCHDOG=1"
        if status is not None:
            msg += f"\nSTATUS={status()}"
        sd_notify(msg)
        await asyncio.sleep(interval)
