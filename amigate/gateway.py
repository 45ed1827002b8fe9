import asyncio
import logging
from typing import Optional

from amigate.dispatch import Dispatcher
from amigate.errors import RuleEvaluationError
from amigate.models import Event
from amigate.rules import RuleEngine, check_clauses
from amigate.settings import Settings
from amigate.stats import GatewayStats
from amigate.supervisor import Supervisor


class Gateway:
    """
    Connects the pieces: sessions -> merged stream -> rule engine -> destination workers.

    Routing runs inline on the merged stream; it evaluates the clauses and
    enqueues, it never waits on a destination.
    """

    def __init__(self, settings: Settings):
        self.logger = logging.getLogger('Gateway')
        self.settings = settings
        self.dispatcher = Dispatcher(settings.destinations, stop_timeout=settings.stop_timeout)
        self.engine = RuleEngine(settings.clauses, known_destinations=self.dispatcher.workers)
        self.supervisor = Supervisor(settings.servers, settings.backoff,
                                     queue_size=settings.queue_size, stop_timeout=settings.stop_timeout)
        self._router: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._router is not None and not self._router.done()

    async def start(self) -> None:
        self.dispatcher.start()
        await self.supervisor.start()
        self._router = asyncio.create_task(self._route_loop(), name='router')
        self.logger.info("Gateway started")

    async def _route_loop(self) -> None:
        async for event in self.supervisor.events():
            self.route(event)

    def route(self, event: Event) -> int:
        """
        Sends one event to the destinations its clauses select.

        :return: How many destinations accepted it
        """
        try:
            destinations = self.engine.evaluate(event)
        except RuleEvaluationError as e:
            self.logger.error(f"Skipped {event!r}: {e}")
            return 0
        if not destinations:
            self.logger.debug(f"No clause matched {event!r}")
            return 0
        return self.dispatcher.dispatch(event, destinations)

    async def reload(self, settings: Settings) -> None:
        """
        Swaps clauses and destinations. Server changes need a restart.

        :raises ConfigurationError: The new settings were rejected; nothing changed
        """
        check_clauses(settings.clauses, [destination.id for destination in settings.destinations])
        if settings.servers != self.settings.servers:
            self.logger.warning("Server list changed, restart the gateway to apply it")
        # No await between the two swaps: the router sees either the old or the new pair.
        retired = self.dispatcher.replace(settings.destinations)
        self.engine.load(settings.clauses, known_destinations=self.dispatcher.workers)
        self.settings = Settings(
            servers=self.settings.servers,
            destinations=settings.destinations,
            clauses=settings.clauses,
            backoff=self.settings.backoff,
            queue_size=self.settings.queue_size,
            stop_timeout=self.settings.stop_timeout,
        )
        await self.dispatcher.retire(retired)
        self.logger.info("Configuration reloaded")

    async def stop(self) -> None:
        """Stops the sessions, routes what they already produced, then drains the destinations."""
        await self.supervisor.stop()
        if self._router is not None:
            await self._router
            self._router = None
        await self.dispatcher.stop()
        self.logger.info("Gateway stopped")

    def stats(self) -> GatewayStats:
        return GatewayStats(
            sessions=self.supervisor.status(),
            destinations=self.dispatcher.stats(),
            rules=self.engine.stats(),
            backlog=self.supervisor.backlog,
        )
