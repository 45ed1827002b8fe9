import asyncio
import contextlib
import logging
import time
from abc import abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional

from amigate.backoff import Backoff, BackoffPolicy
from amigate.errors import AuthError, TransportError
from amigate.models import Event, ServerConfig, SessionState

StateObserver = Callable[['SessionBase', SessionState, SessionState], None]


class SessionStopped(Exception):
    """Raised inside a session when stop() interrupts a wait."""


class SessionBase:
    """
    Класс SessionBase является родительским для классов TCPSession и HTTPSession.

    It owns the connection state machine of one server::

        Disconnected -> Connecting -> Authenticating -> Streaming
                            |               |               |
                            +------> Backoff <--------------+
                                        |
                                        +--> Connecting

    Subclasses implement the transport specific steps (_open, _login, _stream,
    _close). Every failure is caught here, stored in ``last_error`` and
    followed by a backoff delay; ``run()`` only returns after ``stop()``.
    """

    def __init__(self, config: ServerConfig, output: asyncio.Queue,
                 policy: Optional[BackoffPolicy] = None,
                 observer: Optional[StateObserver] = None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initializes the session

        :param config: The server to connect to
        :param output: Queue receiving the decoded events
        :param policy: Reconnect delay parameters
        :param observer: Called with (session, old_state, new_state) on every transition
        :param clock: Monotonic clock used to measure streaming duration
        """
        self.logger = logging.getLogger('AMI Session')
        self.config = config
        self.name = config.name
        self.backoff = Backoff(policy or BackoffPolicy())
        self._output = output
        self._observer = observer
        self._clock = clock
        self._stop: Optional[asyncio.Event] = None
        self.state = SessionState.DISCONNECTED
        self.last_error: Optional[str] = None
        self.sequence = 0
        self.connects = 0
        self.events_received = 0
        self._auth_failed = False
        self.running = False

    @abstractmethod
    async def _open(self) -> None:
        """
        Establishes the transport to the server.

        :raises TransportError: The server could not be reached
        """
        pass

    @abstractmethod
    async def _login(self) -> None:
        """
        Authenticates with the configured credentials.

        :raises AuthError: The login was rejected or not acknowledged in time
        :raises TransportError: The connection failed during the handshake
        """
        pass

    @abstractmethod
    async def _stream(self) -> None:
        """
        Reads events and passes them to _handle until the session is stopped.

        :raises TransportError: Read failure, malformed block or liveness loss
        """
        pass

    @abstractmethod
    async def _close(self) -> None:
        """
        Releases the transport. Must be safe to call after a partial _open.
        """
        pass

    @property
    def stopping(self) -> bool:
        return self._stop is not None and self._stop.is_set()

    def stop(self) -> None:
        """Asks the session to close; run() returns once the connection is released."""
        if self._stop is None:
            self._stop = asyncio.Event()
        self._stop.set()

    async def run(self) -> None:
        if self._stop is None:
            self._stop = asyncio.Event()
        self.running = True
        try:
            while not self._stop.is_set():
                await self._connect_once()
                if self._stop.is_set():
                    break
                delay = self.backoff.next_delay(auth=self._auth_failed)
                self._set_state(SessionState.BACKOFF)
                self.logger.info(f"[{self.name}] Reconnecting in {delay:.1f}s")
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
        finally:
            self.running = False
            self._set_state(SessionState.DISCONNECTED)

    async def _connect_once(self) -> None:
        """Runs one pass Connecting -> Authenticating -> Streaming until it fails."""
        self._auth_failed = False
        streamed_since = None
        try:
            self._set_state(SessionState.CONNECTING)
            await self._open()
            self._set_state(SessionState.AUTHENTICATING)
            await self._login()
            self.sequence = 0
            self.connects += 1
            streamed_since = self._clock()
            self._set_state(SessionState.STREAMING)
            self.logger.info(f"[{self.name}] Streaming events from {self.config.host}:{self.config.port}")
            await self._stream()
            if not self._stop.is_set():
                raise TransportError("Event stream ended")
        except SessionStopped:
            pass
        except AuthError as e:
            self._auth_failed = True
            self.last_error = f"AuthError: {e}"
            self.logger.error(f"[{self.name}] Authentication failed: {e}")
        except TransportError as e:
            self.last_error = f"{type(e).__name__}: {e}"
            self.logger.warning(f"[{self.name}] Connection lost: {e}")
        except Exception as e:
            self.last_error = f"{type(e).__name__}: {e}"
            self.logger.exception(f"[{self.name}] Unexpected session failure")
        finally:
            await self._close()
            if streamed_since is not None:
                duration = self._clock() - streamed_since
                if self.backoff.streamed(duration):
                    self.logger.debug(f"[{self.name}] Streamed {duration:.1f}s, backoff reset")

    async def _interruptible(self, aw: Awaitable, timeout: Optional[float]) -> Any:
        """
        Awaits ``aw`` unless stop() is called or the timeout expires first.

        :raises SessionStopped: The session was stopped while waiting
        :raises asyncio.TimeoutError: The timeout expired
        """
        task = asyncio.ensure_future(aw)
        stopper = asyncio.ensure_future(self._stop.wait())
        try:
            done, _ = await asyncio.wait({task, stopper}, timeout=timeout,
                                         return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            stopper.cancel()
        if task in done:
            return task.result()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        if self._stop.is_set():
            raise SessionStopped()
        raise asyncio.TimeoutError()

    async def _handle(self, message: Dict[str, str]) -> None:
        """
        Passes an event block downstream. Other blocks (responses to keepalives)
        only prove liveness.
        """
        if 'Event' not in message:
            self.logger.debug(f"[{self.name}] Non-event message: {message}")
            return
        event = Event(server=self.name, sequence=self.sequence, fields=message)
        self.sequence += 1
        self.events_received += 1
        await self._output.put(event)

    def _set_state(self, state: SessionState) -> None:
        old, self.state = self.state, state
        if old is state:
            return
        self.logger.debug(f"[{self.name}] {old.value} -> {state.value}")
        if self._observer is not None:
            self._observer(self, old, state)

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "last_error": self.last_error,
            "connects": self.connects,
            "events_received": self.events_received,
            "sequence": self.sequence,
            "backoff_delay": self.backoff.last_delay,
        }
