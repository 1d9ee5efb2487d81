"""
Process Supervisor.

Starting and stopping the external modem and CAT control programs. Child output is
forwarded line by line to the launcher's own log. Stopping is always bounded: a
termination signal, a short wait, then a kill.
"""

import asyncio
import logging
import os
import shlex
import shutil
from dataclasses import dataclass
from typing import List, Optional

import psutil

from .errors import ExecutableNotFound, PortNotReady, SpawnFailed

logger = logging.getLogger("varanny.process")

STOP_TIMEOUT = 5.0
PORT_POLL_ATTEMPTS = 10
PORT_POLL_INTERVAL = 1.0


@dataclass
class ProcessHandle:
    name: str
    path: str
    args: List[str]
    process: asyncio.subprocess.Process
    pump_task: Optional[asyncio.Task] = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def running(self) -> bool:
        return self.process.returncode is None


def split_args(args: str) -> List[str]:
    if not args:
        return []
    return shlex.split(args, posix=os.name != "nt")


def resolve_executable(cmd: str) -> str:
    full_path = shutil.which(cmd)
    if full_path is None:
        raise ExecutableNotFound(f"Failed to find executable {cmd!r}")
    return os.path.abspath(full_path)


async def spawn(cmd: str, args: List[str], name: str = "") -> ProcessHandle:
    """Starts ``cmd`` with ``args`` from the executable's own directory.

    Raises:
        ExecutableNotFound: ``cmd`` is not on the search path.
        SpawnFailed: the operating system could not start it.
    """
    path = resolve_executable(cmd)
    name = name or os.path.basename(path)
    logger.info(f"Command: {path} {args}")
    try:
        process = await asyncio.create_subprocess_exec(
            path, *args,
            cwd=os.path.dirname(path),
            env=os.environ.copy(),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        raise SpawnFailed(f"Failed to start {path}: {e}") from e

    handle = ProcessHandle(name=name, path=path, args=args, process=process)
    handle.pump_task = asyncio.create_task(_pump_output(handle))
    logger.info(f"Started {name} (pid {process.pid})")
    return handle


async def _pump_output(handle: ProcessHandle):
    child_logger = logging.getLogger(f"varanny.process.{handle.name}")
    stream = handle.process.stdout
    if stream is None:
        return
    try:
        while True:
            line = await stream.readline()
            if not line:
                break
            child_logger.info(line.decode("utf-8", errors="replace").rstrip())
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.debug(f"Output of {handle.name} closed: {e}")


async def graceful_stop(handle: ProcessHandle, timeout: float = STOP_TIMEOUT):
    """Terminates a process, killing it if it has not exited after ``timeout``.

    Never raises; problems are logged.
    """
    process = handle.process
    logger.info(f"Shutdown {handle.name} process gracefully")
    try:
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            except OSError as e:
                logger.warning(f"Shutdown {handle.name} gracefully failed, killing: {e}")
                try:
                    process.kill()
                except OSError as kill_error:
                    logger.error(f"Killing {handle.name} failed: {kill_error}")

            try:
                await asyncio.wait_for(process.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"{handle.name} did not exit after {timeout}s, killing")
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await asyncio.wait_for(process.wait(), timeout=timeout)
        logger.info(f"{handle.name} exited with code {process.returncode}")
    except Exception as e:
        logger.error(f"Awaiting termination of {handle.name} failed: {e}")
    finally:
        await _release(handle)


async def _release(handle: ProcessHandle):
    if handle.pump_task is not None:
        handle.pump_task.cancel()
        try:
            await handle.pump_task
        except asyncio.CancelledError:
            pass
        handle.pump_task = None


def is_port_listening(port: int) -> bool:
    """Looks the port up in the OS socket table without connecting to it."""
    try:
        connections = psutil.net_connections(kind="inet")
    except (psutil.AccessDenied, OSError) as e:
        logger.debug(f"Cannot read socket table: {e}")
        return False
    for conn in connections:
        if conn.status == psutil.CONN_LISTEN and conn.laddr and conn.laddr.port == port:
            return True
    return False


async def wait_for_port(port: int, attempts: int = PORT_POLL_ATTEMPTS, interval: float = PORT_POLL_INTERVAL):
    """Polls until something listens on ``port``.

    Raises:
        PortNotReady: nothing was listening after ``attempts`` polls.
    """
    for attempt in range(attempts):
        if await asyncio.to_thread(is_port_listening, port):
            logger.info(f"Port {port} is ready")
            return
        if attempt < attempts - 1:
            await asyncio.sleep(interval)
    raise PortNotReady(f"nothing listening on port {port} after {attempts} checks")
