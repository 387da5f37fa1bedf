# MCX Bridge
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Shared configuration loader for the MCX hub.

Loads a single JSON config file.  Search order:
  1. $MCX_CONFIG                 (explicit override, handy for tests)
  2. /etc/mcx/config.json        (deployed install)
  3. config.json                 (CWD — handy for local dev)
  4. ../../config/default.json   (repo fallback)

Usage:
    from mcx.config import cfg

    grace_ms  = cfg("lifecycle", "grace_ms", default=4500)
    baudrate  = cfg("serial", "baudrate", default=115200)
    serial    = cfg("serial")  # returns the whole dict
"""

import json
import logging
import os

logger = logging.getLogger(__name__)

_config: dict | None = None

_SEARCH_PATHS = [
    "/etc/mcx/config.json",
    "config.json",
    os.path.join(os.path.dirname(__file__), "..", "..", "config", "default.json"),
]

# Rates accepted by common USB-serial bridges (CH340, CP210x, FTDI, ATmega16U2)
_KNOWN_BAUDRATES = (9600, 19200, 38400, 57600, 115200, 230400, 460800, 921600)


def _search_paths() -> list[str]:
    override = os.environ.get("MCX_CONFIG")
    if override:
        return [override] + _SEARCH_PATHS
    return list(_SEARCH_PATHS)


def _validate(config: dict, path: str) -> None:
    """Warn about missing or suspicious config values."""
    lifecycle = config.get("lifecycle") or {}
    grace = lifecycle.get("grace_ms", 4500)
    if not isinstance(grace, (int, float)) or grace < 0:
        logger.warning("Config %s: lifecycle.grace_ms must be a non-negative number, got %r", path, grace)
    serial = config.get("serial") or {}
    baud = serial.get("baudrate", 115200)
    if baud not in _KNOWN_BAUDRATES:
        logger.warning("Config %s: unusual serial.baudrate %r — device may not sync", path, baud)
    filters = serial.get("filters", [])
    if not isinstance(filters, list):
        logger.warning("Config %s: serial.filters should be a list of {usb_vendor_id, usb_product_id}", path)
    hub = config.get("hub") or {}
    if hub.get("http_port") and hub.get("http_port") == hub.get("host_port"):
        logger.error("Config %s: hub.http_port and hub.host_port are both %s — hub cannot bind", path, hub["http_port"])


def load_config() -> dict:
    """Load config from the first JSON file found. Cached after first call."""
    global _config
    if _config is not None:
        return _config

    for path in _search_paths():
        try:
            with open(path) as f:
                _config = json.load(f)
                logger.info("Config loaded from %s", path)
                _validate(_config, path)
                return _config
        except FileNotFoundError:
            continue
        except json.JSONDecodeError as e:
            logger.error("Invalid JSON in %s: %s", path, e)
            continue

    logger.warning("No config.json found — using built-in defaults")
    _config = {}
    return _config


def cfg(section: str, key: str | None = None, *, default=None):
    """Read a config value.

    cfg("serial")                     → config["serial"]
    cfg("serial", "baudrate")         → config["serial"]["baudrate"]
    cfg("lifecycle", "grace_ms", default=4500)  → value or 4500
    """
    config = load_config()
    val = config.get(section)
    if key is None:
        return val if val is not None else default
    if isinstance(val, dict):
        return val.get(key, default)
    return default


def reload_config():
    """Force re-read from disk (for testing or hot-reload)."""
    global _config
    _config = None
    return load_config()
