import asyncio
import time
import logging
import uuid
from collections import deque
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional

from .config import ServiceConfig
from .discovery import ServiceAdvertiser, build_service_records
from .registry import ModemRegistry
from .session import ConnectionSession, SessionContext

logger = logging.getLogger("varanny.core")

@dataclass
class SessionEvent:
    id: str
    session_id: str
    peer: str
    status: str  # "connected", "running", "monitoring", "closed"
    modem: Optional[str]
    timestamp: float
    type: str = "session"

@dataclass
class StatusEvent:
    port: int
    status: str  # "online", "offline"
    error_msg: Optional[str]
    type: str = "status"

class StateManager:
    """Singleton keeping the recent session history and broadcasting events."""
    def __init__(self):
        self.event_log: deque = deque(maxlen=2000)
        self.subscribers: List[asyncio.Queue] = []

    def session_event(self, session_id: str, peer: str, status: str, modem: Optional[str] = None):
        event = SessionEvent(
            id=str(uuid.uuid4()),
            session_id=session_id,
            peer=peer,
            status=status,
            modem=modem,
            timestamp=time.time(),
        )
        self.event_log.append(event)
        self.broadcast(event)

    def broadcast(self, event):
        data = asdict(event)
        for q in self.subscribers:
            try:
                q.put_nowait(data)
            except asyncio.QueueFull:
                pass  # Drop event if subscriber is too slow

    async def subscribe(self) -> asyncio.Queue:
        q = asyncio.Queue(maxsize=100)
        self.subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue):
        if q in self.subscribers:
            self.subscribers.remove(q)

state_manager = StateManager()

class ControlServer:
    """Accepts control connections and runs one ConnectionSession per client."""
    def __init__(self, ctx: SessionContext, host: str, port: int):
        self.ctx = ctx
        self.host = host
        self.port = port
        self.server = None
        self.sessions: Dict[str, ConnectionSession] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    async def start(self):
        self.server = await asyncio.start_server(self.handle_client, self.host, self.port)
        sockets = self.server.sockets or []
        if sockets:
            self.port = sockets[0].getsockname()[1]
        logger.info(f"Listening on {self.host}:{self.port}")
        logger.info("Waiting for connections...")
        state_manager.broadcast(StatusEvent(port=self.port, status="online", error_msg=None))

        # Keep serving in the background
        self.serve_task = asyncio.create_task(self.server.serve_forever())

    async def handle_client(self, reader, writer):
        session = ConnectionSession(reader, writer, self.ctx)
        self.sessions[session.id] = session
        self._tasks[session.id] = asyncio.current_task()
        try:
            await session.run()
        finally:
            self.sessions.pop(session.id, None)
            self._tasks.pop(session.id, None)

    def stop_accepting(self):
        if self.server:
            self.server.close()

    async def wait_sessions(self):
        tasks = list(self._tasks.values())
        if tasks:
            logger.info(f"Waiting for {len(tasks)} session(s) to clean up")
            await asyncio.gather(*tasks, return_exceptions=True)

    async def close(self):
        self.stop_accepting()
        if hasattr(self, 'serve_task'):
            self.serve_task.cancel()
            try:
                await self.serve_task
            except asyncio.CancelledError:
                pass
        if self.server:
            await self.server.wait_closed()
        state_manager.broadcast(StatusEvent(port=self.port, status="offline", error_msg=None))
        logger.info(f"Control server on {self.port} stopped")

class SessionEngine:
    def __init__(self):
        self.config: Optional[ServiceConfig] = None
        self.registry: Optional[ModemRegistry] = None
        self.ctx: Optional[SessionContext] = None
        self.server: Optional[ControlServer] = None
        self.advertiser: Optional[ServiceAdvertiser] = None

    @property
    def sessions(self) -> List[ConnectionSession]:
        if self.server is None:
            return []
        return list(self.server.sessions.values())

    async def start(self, config: ServiceConfig, host: str = "0.0.0.0", advertise: bool = True, **session_options):
        """Builds the registry, starts advertising and opens the control port.

        Extra keyword arguments override SessionContext fields (timeouts, polling).
        A failure to bind the control port propagates and is fatal.
        """
        self.config = config
        self.registry = ModemRegistry.from_config(config)
        self.ctx = SessionContext(
            registry=self.registry,
            shutdown=asyncio.Event(),
            config_path=config.path or "",
            match_threshold=config.match_threshold,
            events=state_manager,
            **session_options,
        )

        if advertise:
            self.advertiser = ServiceAdvertiser(build_service_records(self.registry, config.port))
            await asyncio.to_thread(self.advertiser.start)

        self.server = ControlServer(self.ctx, host, config.port)
        try:
            await self.server.start()
        except OSError as e:
            logger.error(f"Cannot listen on port {config.port}: {e}")
            state_manager.broadcast(StatusEvent(port=config.port, status="offline", error_msg=str(e)))
            await self._stop_advertiser()
            self.server = None
            raise

    async def shutdown(self):
        logger.info("Shutting down...")
        if self.server:
            self.server.stop_accepting()
        if self.ctx:
            self.ctx.shutdown.set()
        if self.server:
            await self.server.wait_sessions()
            await self.server.close()
            self.server = None
        await self._stop_advertiser()
        logger.info("Engine shutdown complete.")

    async def _stop_advertiser(self):
        if self.advertiser:
            try:
                await asyncio.to_thread(self.advertiser.stop)
            except Exception as e:
                logger.error(f"Stopping DNS-SD advertising failed: {e}")
            self.advertiser = None

engine = SessionEngine()
