"""
MCX hub library — media tracking across browsing contexts.

  registry.py       Source model and the in-memory SourceRegistry
  lifecycle.py      LifecycleController: per-source state machine, grace period
  relay.py          agent <-> hub message protocol
  observers.py      ViewObserver interface, weak observer set, WebSocket views
  serial_bridge.py  SerialBridge + NowPlayingForwarder (JSON lines over serial)
  ports.py          PortPicker interface and the pyserial-backed picker
  host.py           Host interface and HostResult
  host_link.py      WebSocketHost: Host over a websocket to a browser shim
  metadata.py       default metadata extractor (thumbnail, accent colour)
  config.py         JSON config loader
  errors.py         error taxonomy
  watchdog.py       systemd heartbeat
"""
