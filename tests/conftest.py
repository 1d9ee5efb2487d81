import asyncio
import sys
import time
import types

import numpy as np
import pytest

from varanny.registry import CatCtrl, ModemDescriptor, ModemRegistry
from varanny.session import SessionContext

SLEEPER = """\
import sys, time
print("modem up", flush=True)
time.sleep(60)
"""

STUBBORN = """\
import signal, sys, time
signal.signal(signal.SIGTERM, signal.SIG_IGN)
print("ignoring SIGTERM", flush=True)
time.sleep(60)
"""

DEFAULT_INI = """\
[Soundcard]
Input Device Name=Microphone (USB Audio CODEC )
Output Device Name=Speakers (USB Audio CODEC )
"""

@pytest.fixture
def sleeper_script(tmp_path):
    path = tmp_path / "sleeper.py"
    path.write_text(SLEEPER)
    return path

@pytest.fixture
def stubborn_script(tmp_path):
    path = tmp_path / "stubborn.py"
    path.write_text(STUBBORN)
    return path

@pytest.fixture
def vara_dir(tmp_path):
    """A fake VARA install. VARA.exe is the sleeper script, so the interpreter runs it
    the way wine runs the real one."""
    directory = tmp_path / "VARA"
    directory.mkdir()
    (directory / "VARA.exe").write_text(SLEEPER)
    (directory / "VARA.ini").write_text(DEFAULT_INI)
    return directory

@pytest.fixture
def varafm_dir(tmp_path):
    """A fake VARA FM install under a wine prefix, with its default space in the path."""
    directory = tmp_path / "drive_c" / "VARA FM"
    directory.mkdir(parents=True)
    (directory / "VARAFM.exe").write_text(SLEEPER)
    (directory / "VARAFM.ini").write_text(DEFAULT_INI)
    return directory

@pytest.fixture
def make_modem(vara_dir):
    """Builds a modem that runs the fake VARA.exe through the interpreter."""
    def _make(name="Gamma", **overrides):
        fields = dict(
            name=name,
            type="hf",
            cmd=sys.executable,
            args=str(vara_dir / "VARA.exe"),
        )
        fields.update(overrides)
        return ModemDescriptor(**fields)
    return _make

@pytest.fixture
async def control_server():
    """Starts ControlServers on free ports and shuts them down after the test."""
    from varanny.core import ControlServer

    servers = []

    async def _start(registry: ModemRegistry, **options):
        settings = dict(
            config_path="/etc/varanny/varanny.json",
            stop_timeout=2.0,
            port_poll_attempts=2,
            port_poll_interval=0.05,
        )
        settings.update(options)
        ctx = SessionContext(registry=registry, shutdown=asyncio.Event(), **settings)
        server = ControlServer(ctx, "127.0.0.1", 0)
        await server.start()
        servers.append(server)
        return server

    yield _start

    for server in servers:
        server.ctx.shutdown.set()
        await server.wait_sessions()
        await server.close()

class Client:
    """Line oriented client of the control port."""
    def __init__(self, reader, writer):
        self.reader = reader
        self.writer = writer

    @classmethod
    async def connect(cls, port: int) -> "Client":
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        return cls(reader, writer)

    async def send(self, line: str):
        self.writer.write(f"{line}\n".encode())
        await self.writer.drain()

    async def readline(self, timeout: float = 10.0) -> str:
        line = await asyncio.wait_for(self.reader.readline(), timeout)
        return line.decode().rstrip("\n")

    async def read_until_closed(self, timeout: float = 15.0) -> str:
        data = await asyncio.wait_for(self.reader.read(), timeout)
        return data.decode()

    async def close(self):
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass

@pytest.fixture
async def client_factory():
    clients = []

    async def _connect(port: int) -> Client:
        client = await Client.connect(port)
        clients.append(client)
        return client

    yield _connect

    for client in clients:
        await client.close()

class FakeInputStream:
    """Stands in for sounddevice.InputStream; delivers a constant tone."""
    opened = []

    def __init__(self, device=None, channels=1, samplerate=44100, dtype="int16", blocksize=0):
        self.device = device
        self.channels = channels
        self.samplerate = samplerate
        self.dtype = dtype
        self.blocksize = blocksize
        self.closed = False
        self.amplitude = 1000
        FakeInputStream.opened.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.closed = True
        return False

    def read(self, frames):
        time.sleep(0.01)
        return np.full((frames, self.channels), self.amplitude, dtype=np.int16), False

@pytest.fixture
def fake_sounddevice(monkeypatch):
    """Replaces the PortAudio bindings with two fake devices."""
    module = types.ModuleType("sounddevice")

    class PortAudioError(Exception):
        pass

    devices = [
        {"name": "Speakers (USB Audio CODEC )", "max_input_channels": 0, "max_output_channels": 2},
        {"name": "Microphone (USB Audio CODEC )", "max_input_channels": 1, "max_output_channels": 0},
    ]
    module.PortAudioError = PortAudioError
    module.query_devices = lambda: devices
    module.InputStream = FakeInputStream
    FakeInputStream.opened = []
    monkeypatch.setitem(sys.modules, "sounddevice", module)
    return module

@pytest.fixture(autouse=True)
def cleanup_state():
    from varanny.core import state_manager
    # Run before test
    yield
    # Run after test
    state_manager.event_log.clear()
    state_manager.subscribers.clear()

@pytest.fixture
def registry_of():
    def _registry(*modems):
        return ModemRegistry(list(modems))
    return _registry

@pytest.fixture
def cat_ctrl(sleeper_script):
    return CatCtrl(cmd=sys.executable, args=f'"{sleeper_script}"', port=4532, dialect="hamlib")
