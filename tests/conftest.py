"""Shared pytest configuration and fakes for the MCX hub test suite."""

import sys
from pathlib import Path

import pytest

# Ensure services/ is on the path for imports
SERVICES = Path(__file__).parent.parent / "services"
if str(SERVICES) not in sys.path:
    sys.path.insert(0, str(SERVICES))

from mcx.host import ContextInfo, Host, HostResult  # noqa: E402
from mcx.observers import ViewObserver  # noqa: E402
from mcx.ports import PortHandle, PortPicker  # noqa: E402
from mcx.errors import PortUnavailable  # noqa: E402
from mcx.registry import SourceMetadata  # noqa: E402


# =============================================================================
# Host
# =============================================================================

def make_context(id, url="https://example.com/watch", title="Example", audible=True,
                 discarded=False, window=1, status="complete") -> ContextInfo:
    return ContextInfo(id, window=window, url=url, title=title,
                       favicon_url=None, audible=audible, discarded=discarded,
                       status=status)


class FakeHost(Host):
    """In-memory host.  Records every call; contexts are editable by tests."""

    def __init__(self, contexts=None):
        self.contexts = {c.id: c for c in contexts or []}
        self.calls = []
        self.badge = None
        self.enabled = None
        self.failures = {}          # method name -> HostResult to return
        self.execute_value = [None]

    def _fail(self, name):
        return self.failures.get(name)

    def calls_to(self, name):
        return [c for c in self.calls if c[0] == name]

    async def list_audible(self):
        self.calls.append(("list_audible",))
        if self._fail("list_audible") is not None:
            return self._fail("list_audible")
        return HostResult.success([c for c in self.contexts.values()
                                   if c.audible and c.status == "complete"])

    async def get_context(self, id):
        self.calls.append(("get_context", id))
        if self._fail("get_context") is not None:
            return self._fail("get_context")
        ctx = self.contexts.get(id)
        if ctx is None:
            return HostResult.err("no_such_context", str(id))
        return HostResult.success(ctx)

    async def execute(self, id, code=None, file=None):
        self.calls.append(("execute", id, file or code))
        if self._fail("execute") is not None:
            return self._fail("execute")
        return HostResult.success(self.execute_value)

    async def send_message(self, id, message):
        self.calls.append(("send_message", id, message))
        if self._fail("send_message") is not None:
            return self._fail("send_message")
        return HostResult.success()

    async def set_badge(self, text):
        self.calls.append(("set_badge", text))
        self.badge = text
        return HostResult.success()

    async def set_enabled(self, enabled):
        self.calls.append(("set_enabled", enabled))
        self.enabled = enabled
        return HostResult.success()

    async def activate(self, id, window=None):
        self.calls.append(("activate", id, window))
        return HostResult.success()

    async def close(self, id):
        self.calls.append(("close", id))
        return HostResult.success()


async def quick_describe(host, context):
    return SourceMetadata.partial(title=context.title, url=context.url)


# =============================================================================
# Observers
# =============================================================================

class RecordingView(ViewObserver):
    def __init__(self):
        self.events = []
        self.sources = {}

    async def add(self, source):
        self.events.append(("add", source.id))
        self.sources[source.id] = source

    async def remove(self, source_id):
        self.events.append(("del", source_id))
        self.sources.pop(source_id, None)

    async def update(self, source):
        self.events.append(("update", source.id))
        self.sources[source.id] = source


# =============================================================================
# Serial
# =============================================================================

class FakeWriter:
    """Stands in for the asyncio.StreamWriter of a serial connection."""

    def __init__(self):
        self.data = bytearray()
        self.closed = False
        self.fail_write = False

    def write(self, data):
        if self.fail_write:
            raise OSError("device disconnected")
        self.data.extend(data)

    async def drain(self):
        pass

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass

    def lines(self):
        return [l for l in self.data.decode("utf-8").split("\n") if l]


class FakeOpener:
    """Replacement for serial_asyncio.open_serial_connection."""

    def __init__(self):
        self.writers = []
        self.calls = []
        self.error = None

    @property
    def writer(self):
        return self.writers[-1] if self.writers else None

    async def __call__(self, url, baudrate):
        self.calls.append((url, baudrate))
        if self.error is not None:
            raise self.error
        writer = FakeWriter()
        self.writers.append(writer)
        return None, writer


class FakePicker(PortPicker):
    def __init__(self, ports=None):
        self.ports = ports if ports is not None else [
            PortHandle("/dev/ttyACM0", vid=0x2341, pid=0x0043, description="Arduino Uno"),
            PortHandle("/dev/ttyUSB0", vid=0x1A86, pid=0x7523, description="CH340"),
        ]
        self.requests = []

    async def list_known_ports(self):
        return list(self.ports)

    async def request_port(self, filters=None):
        self.requests.append(filters)
        for port in self.ports:
            if port.matches(filters):
                return port
        raise PortUnavailable(f"no serial port matches {filters!r}")


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def view():
    return RecordingView()


@pytest.fixture
def controller(host, view):
    from mcx.lifecycle import LifecycleController

    ctl = LifecycleController(host, describe=quick_describe,
                              grace_period=0.05, metadata_timeout=0.5)
    ctl.observers.attach(view)
    return ctl


@pytest.fixture
def opener():
    return FakeOpener()


@pytest.fixture
def picker():
    return FakePicker()


@pytest.fixture
def bridge(picker, opener):
    from mcx.serial_bridge import SerialBridge

    return SerialBridge(picker, baudrate=115200, write_timeout=0.5, opener=opener)
