import asyncio
import logging
from typing import AsyncIterator, Dict, Iterable, List, Optional

from amigate.backoff import BackoffPolicy
from amigate.base import SessionBase
from amigate.errors import ConfigurationError
from amigate.models import Event, ServerConfig, SessionState
from amigate.session import create_session
from amigate.stats import SessionStatus

_END = object()


class Supervisor:
    """
    Runs one session per server and merges their events into a single stream.

    The supervisor never looks inside events and never changes a session's
    state; it only records the transitions the sessions report.
    """

    def __init__(self, servers: Iterable[ServerConfig], policy: Optional[BackoffPolicy] = None,
                 queue_size: int = 10000, stop_timeout: float = 5.0):
        self.logger = logging.getLogger('Supervisor')
        self.policy = policy or BackoffPolicy()
        self.stop_timeout = stop_timeout
        self.servers: Dict[str, ServerConfig] = {}
        for server in servers:
            if server.name in self.servers:
                raise ConfigurationError(f"Duplicate server name {server.name!r}")
            self.servers[server.name] = server
        if queue_size <= 0:
            raise ConfigurationError("queue_size must be positive")
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._sessions: Dict[str, SessionBase] = {}
        self._tasks: List[asyncio.Task] = []
        self.running = False

    def _session_factory(self, config: ServerConfig) -> SessionBase:
        return create_session(config, self._queue, self.policy, observer=self._on_transition)

    def _on_transition(self, session: SessionBase, old: SessionState, new: SessionState) -> None:
        if new is SessionState.BACKOFF:
            self.logger.warning(f"[{session.name}] {old.value} -> {new.value}: {session.last_error}")
        else:
            self.logger.info(f"[{session.name}] {old.value} -> {new.value}")

    async def start(self) -> None:
        if self.running:
            return
        self.running = True
        for name, config in self.servers.items():
            session = self._session_factory(config)
            self._sessions[name] = session
            self._tasks.append(asyncio.create_task(session.run(), name=f"session-{name}"))
        self.logger.info(f"Started {len(self._sessions)} session(s)")

    async def stop(self) -> None:
        """
        Stops every session, waits for them to release their connections and
        then ends the merged stream.
        """
        if not self.running:
            return
        for session in self._sessions.values():
            session.stop()
        if self._tasks:
            done, pending = await asyncio.wait(self._tasks, timeout=self.stop_timeout)
            for task in pending:
                self.logger.warning(f"{task.get_name()} did not stop in {self.stop_timeout}s, cancelling")
                task.cancel()
            if pending:
                await asyncio.wait(pending)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    self.logger.error(f"{task.get_name()} failed: {task.exception()!r}")
        self._tasks = []
        self.running = False
        await self._queue.put(_END)
        self.logger.info("All sessions stopped")

    async def events(self) -> AsyncIterator[Event]:
        """Yields events from every server until stop() completes."""
        while True:
            event = await self._queue.get()
            if event is _END:
                return
            yield event

    def states(self) -> Dict[str, SessionState]:
        return {name: session.state for name, session in self._sessions.items()}

    def status(self) -> Dict[str, SessionStatus]:
        return {
            name: SessionStatus(
                server=name,
                state=session.state,
                last_error=session.last_error,
                connects=session.connects,
                events_received=session.events_received,
                backoff_delay=session.backoff.last_delay,
            )
            for name, session in self._sessions.items()
        }

    @property
    def backlog(self) -> int:
        return self._queue.qsize()
