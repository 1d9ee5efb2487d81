"""
Connection Session.

One ConnectionSession serves one client of the control port. It reads commands off
the socket, runs them one at a time and, while a modem is being monitored, writes
audio level lines between the command replies. Whatever ends the session (``stop``,
a disconnect, a failed ``start``/``monitor`` or a service shutdown), the same
teardown runs: the monitor is stopped, the modem is stopped, its ini file is
restored, CAT control is stopped, the modem lock is released and the socket is
closed.
"""

import asyncio
import configparser
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Dict, Optional

from . import __version__
from .audio import AudioLevelMonitor, find_audio_device
from .errors import (
    ConfigSwapError,
    DeviceNotFound,
    ExecutableNotFound,
    PortNotReady,
    ProtocolError,
    SpawnFailed,
    VarannyError,
)
from .process import (
    PORT_POLL_ATTEMPTS,
    PORT_POLL_INTERVAL,
    STOP_TIMEOUT,
    ProcessHandle,
    graceful_stop,
    spawn,
    split_args,
    wait_for_port,
)
from .protocols import CommandParser
from .registry import ModemDescriptor, ModemRegistry
from .swap import ConfigSwap
from .vara_ini import read_input_device_name

logger = logging.getLogger("varanny.session")

TELEMETRY_CAPACITY = 32
MONITOR_STOP_TIMEOUT = 5.0
END_OF_STREAM = None


class SessionState(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    CLOSED = "closed"


@dataclass
class SessionContext:
    """What every session of one server shares."""
    registry: ModemRegistry
    shutdown: asyncio.Event = field(default_factory=asyncio.Event)
    config_path: str = ""
    match_threshold: float = 0.7
    version: str = __version__
    stop_timeout: float = STOP_TIMEOUT
    port_poll_attempts: int = PORT_POLL_ATTEMPTS
    port_poll_interval: float = PORT_POLL_INTERVAL
    events: Optional[Any] = None  # core.StateManager


class ConnectionSession:
    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, ctx: SessionContext):
        self.id = str(uuid.uuid4())[:8]
        self.reader = reader
        self.writer = writer
        self.ctx = ctx
        self.peer = writer.get_extra_info("peername")

        self.commands: asyncio.Queue = asyncio.Queue()
        self.levels: asyncio.Queue = asyncio.Queue(maxsize=TELEMETRY_CAPACITY)
        self.stop_event = asyncio.Event()

        self.state = SessionState.IDLE
        self.modem: Optional[ModemDescriptor] = None
        self.activity = ""
        self.modem_process: Optional[ProcessHandle] = None
        self.cat_process: Optional[ProcessHandle] = None
        self.swap: Optional[ConfigSwap] = None
        self.monitor: Optional[AudioLevelMonitor] = None
        self.monitor_task: Optional[asyncio.Task] = None
        self._closed = False

    def info(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "peer": str(self.peer),
            "state": self.state.value,
            "modem": self.modem.name if self.modem else None,
            "activity": self.activity,
            "modem_pid": self.modem_process.pid if self.modem_process else None,
            "cat_pid": self.cat_process.pid if self.cat_process else None,
        }

    def _emit(self, status: str, modem: Optional[str] = None):
        if self.ctx.events is not None:
            self.ctx.events.session_event(self.id, str(self.peer), status, modem)

    # ── Main loop ──────────────────────────────────────────────────

    async def run(self):
        logger.info(f"[{self.id}] New connection from {self.peer}")
        self._emit("connected")
        reader_task = asyncio.create_task(self._read_loop())
        try:
            await self._serve()
        except (ConnectionError, OSError) as e:
            logger.info(f"[{self.id}] Connection lost: {e}")
        except Exception as e:
            logger.exception(f"[{self.id}] Session failed: {e}")
        finally:
            reader_task.cancel()
            try:
                await reader_task
            except asyncio.CancelledError:
                pass
            await self.close()

    async def _read_loop(self):
        try:
            while True:
                line = await self.reader.readline()
                if not line:
                    logger.info(f"[{self.id}] Client closed the connection")
                    break
                text = line.decode("ascii", errors="replace").strip()
                if text:
                    await self.commands.put(text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.info(f"[{self.id}] Read error: {e}")
        finally:
            # queued commands are still answered before the session ends
            self.commands.put_nowait(END_OF_STREAM)

    async def _serve(self):
        """Waits for whichever comes first: a command, a level, or the end."""
        stop_task = asyncio.create_task(self.stop_event.wait())
        shutdown_task = asyncio.create_task(self.ctx.shutdown.wait())
        command_task = None
        level_task = None
        try:
            while True:
                if command_task is None:
                    command_task = asyncio.create_task(self.commands.get())
                if level_task is None:
                    level_task = asyncio.create_task(self.levels.get())

                done, _ = await asyncio.wait(
                    {command_task, level_task, stop_task, shutdown_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if level_task in done:
                    level = level_task.result()
                    level_task = None
                    await self._send(f"{level:.1f}")

                if command_task in done:
                    line = command_task.result()
                    command_task = None
                    if line is END_OF_STREAM:
                        return
                    if not await self._execute(line):
                        return

                if shutdown_task in done:
                    logger.info(f"[{self.id}] Service shutting down")
                    return
                if stop_task in done:
                    return
        finally:
            for task in (command_task, level_task, stop_task, shutdown_task):
                if task is not None and not task.done():
                    task.cancel()

    async def _execute(self, line: str) -> bool:
        """Runs one command. Returns False when the session must end."""
        logger.info(f"[{self.id}] Received command: {line}")
        try:
            command = CommandParser.parse(line)
        except ProtocolError:
            await self._send("Invalid command")
            return True

        handler = getattr(self, f"_cmd_{command.verb}")
        return await handler(command.argument)

    async def _send(self, *lines: str):
        # one write per reply keeps level lines out of multi-line replies
        data = "".join(f"{line}\n" for line in lines)
        self.writer.write(data.encode("utf-8"))
        await self.writer.drain()

    async def _error(self, reason: str = ""):
        message = f"ERROR {reason}" if reason else "ERROR"
        logger.error(f"[{self.id}] {message}")
        await self._send(message)

    async def _until_shutdown(self, awaitable: Awaitable):
        """Runs ``awaitable`` unless the service shuts down first."""
        task = asyncio.ensure_future(awaitable)
        shutdown_task = asyncio.create_task(self.ctx.shutdown.wait())
        try:
            await asyncio.wait({task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            shutdown_task.cancel()
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            return None
        return task.result()

    # ── Commands ───────────────────────────────────────────────────

    def _acquire(self, name: str) -> ModemDescriptor:
        if self.modem is not None:
            raise VarannyError(f"modem {self.modem.name} is already in use by this session")
        modem = self.ctx.registry.acquire(name)
        self.modem = modem
        self.state = SessionState.BUSY
        return modem

    async def _cmd_start(self, name: str) -> bool:
        try:
            modem = self._acquire(name)
        except VarannyError as e:
            await self._error(str(e))
            return False
        self.activity = "running"

        if modem.cat_ctrl.cmd:
            logger.info(f"[{self.id}] Starting cat control for {modem.name}")
            try:
                self.cat_process = await spawn(
                    modem.cat_ctrl.cmd, split_args(modem.cat_ctrl.args), name=f"{modem.name}.catctrl"
                )
            except (ExecutableNotFound, SpawnFailed, ValueError) as e:
                logger.error(f"[{self.id}] {e}")
                await self._error()
                return False

        if modem.config:
            target = modem.default_ini_path()
            if target is None:
                await self._error(f"cannot find default .ini file for modem {modem.name}")
                return False
            self.swap = ConfigSwap(target)
            try:
                self.swap.install(modem.config)
            except ConfigSwapError as e:
                await self._error(str(e))
                return False

        logger.info(f"[{self.id}] Starting modem for {modem.name}")
        try:
            self.modem_process = await spawn(modem.cmd, modem.argv(), name=modem.name)
        except (ExecutableNotFound, SpawnFailed, ValueError) as e:
            logger.error(f"[{self.id}] {e}")
            await self._error()
            return False

        if modem.port:
            try:
                await self._until_shutdown(wait_for_port(
                    modem.port, self.ctx.port_poll_attempts, self.ctx.port_poll_interval
                ))
            except PortNotReady as e:
                logger.warning(f"[{self.id}] {modem.name}: {e}")

        self._emit("running", modem.name)
        await self._send("OK")
        return True

    async def _cmd_monitor(self, name: str) -> bool:
        try:
            modem = self._acquire(name)
        except VarannyError as e:
            await self._error(str(e))
            return False
        self.activity = "monitoring"

        ini_path = modem.ini_path()
        device_name = modem.audio_input_name
        if not device_name:
            if ini_path is None:
                await self._error(f"cannot find default .ini file for modem {modem.name}")
                return False
            try:
                device_name = read_input_device_name(ini_path)
            except (OSError, configparser.Error) as e:
                logger.error(f"[{self.id}] Cannot read {ini_path}: {e}")
            if not device_name:
                await self._error(f"audio device not found in {ini_path}")
                return False
            logger.info(f"[{self.id}] Monitoring audio device '{device_name}' found in {ini_path}")

        try:
            device = await asyncio.to_thread(find_audio_device, device_name, self.ctx.match_threshold)
        except DeviceNotFound as e:
            await self._error(str(e))
            return False

        await self._send("OK", device.name)
        self.monitor = AudioLevelMonitor(device, self.levels)
        self.monitor_task = asyncio.create_task(self._run_monitor(self.monitor))
        self._emit("monitoring", modem.name)
        return True

    async def _run_monitor(self, monitor: AudioLevelMonitor):
        try:
            await monitor.run()
        except Exception as e:
            logger.error(f"[{self.id}] Audio monitor failed: {e}")
            self.stop_event.set()

    async def _cmd_stop(self, argument: str) -> bool:
        await self._send("OK")
        return False

    async def _cmd_version(self, argument: str) -> bool:
        await self._send("OK", self.ctx.version)
        return True

    async def _cmd_list(self, argument: str) -> bool:
        await self._send("OK", *self.ctx.registry.names())
        return True

    async def _cmd_config(self, argument: str) -> bool:
        lines = ["OK", f"Config path: {self.ctx.config_path}"]
        for modem in self.ctx.registry:
            lines.extend([
                modem.name,
                f"  Type: {modem.type}",
                f"  Cmd: {modem.cmd}",
                f"  Args: {modem.args}",
                f"  Config: {modem.config}",
                f"  CatCtrl.Port: {modem.cat_ctrl.port}",
                f"  CatCtrl.Dialect: {modem.cat_ctrl.dialect}",
                f"  CatCtrl.Cmd: {modem.cat_ctrl.cmd}",
                f"  CatCtrl.Args: {modem.cat_ctrl.args}",
            ])
        await self._send(*lines)
        return True

    # ── Teardown ───────────────────────────────────────────────────

    async def close(self):
        """Releases everything the session holds. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        logger.info(f"[{self.id}] Cleaning up after closing connection")
        modem_name = self.modem.name if self.modem else None

        steps = [
            ("audio monitor", self._stop_monitor),
            ("modem process", self._stop_modem),
            ("config restore", self._restore_config),
            ("cat control process", self._stop_cat_ctrl),
            ("modem lock", self._release_modem),
            ("socket", self._close_socket),
        ]
        for label, step in steps:
            try:
                await step()
            except Exception as e:
                logger.error(f"[{self.id}] Cleanup of {label} failed: {e}")

        self.state = SessionState.CLOSED
        self._emit("closed", modem_name)
        logger.info(f"[{self.id}] Session closed")

    async def _stop_monitor(self):
        if self.monitor is None:
            return
        self.monitor.stop()
        if self.monitor_task is not None:
            done, _ = await asyncio.wait({self.monitor_task}, timeout=MONITOR_STOP_TIMEOUT)
            if not done:
                logger.error(f"[{self.id}] Audio device did not close within {MONITOR_STOP_TIMEOUT}s")
            self.monitor_task = None
        self.monitor = None

    async def _stop_modem(self):
        if self.modem_process is not None:
            handle, self.modem_process = self.modem_process, None
            await graceful_stop(handle, self.ctx.stop_timeout)

    async def _restore_config(self):
        if self.swap is not None:
            swap, self.swap = self.swap, None
            swap.restore()

    async def _stop_cat_ctrl(self):
        if self.cat_process is not None:
            handle, self.cat_process = self.cat_process, None
            await graceful_stop(handle, self.ctx.stop_timeout)

    async def _release_modem(self):
        if self.modem is not None:
            modem, self.modem = self.modem, None
            modem.unlock()

    async def _close_socket(self):
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass
