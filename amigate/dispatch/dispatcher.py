import asyncio
import logging
from typing import Dict, Iterable, List

from amigate.dispatch.database_sink import DatabaseSink
from amigate.dispatch.file_sink import FileSink
from amigate.dispatch.worker import SinkWorker
from amigate.errors import ConfigurationError
from amigate.models import DatabaseDestination, Destination, Event, FileDestination
from amigate.stats import SinkStats


def create_worker(destination: Destination) -> SinkWorker:
    if isinstance(destination, FileDestination):
        return FileSink(destination)
    if isinstance(destination, DatabaseDestination):
        return DatabaseSink(destination)
    raise ConfigurationError(f"Unsupported destination {destination!r}")


class Dispatcher:
    """
    Owns one worker per destination and hands routed events to them.

    :meth:`dispatch` only enqueues, so a slow or failing destination can
    never hold up the ingestion path or the other destinations.
    """

    def __init__(self, destinations: Iterable[Destination] = (), stop_timeout: float = 5.0):
        self.logger = logging.getLogger('Dispatcher')
        self.stop_timeout = stop_timeout
        self.workers: Dict[str, SinkWorker] = {}
        self.unknown = 0
        self.running = False
        for destination in destinations:
            if destination.id in self.workers:
                raise ConfigurationError(f"Duplicate destination id {destination.id!r}")
            self.workers[destination.id] = self._create_worker(destination)

    def _create_worker(self, destination: Destination) -> SinkWorker:
        return create_worker(destination)

    @property
    def destinations(self) -> Dict[str, Destination]:
        return {worker_id: worker.destination for worker_id, worker in self.workers.items()}

    def start(self) -> None:
        self.running = True
        for worker in self.workers.values():
            worker.start()
        self.logger.info(f"Started {len(self.workers)} destination worker(s)")

    def dispatch(self, event: Event, destination_ids: Iterable[str]) -> int:
        """
        Queues the event for every destination.

        :return: How many destinations accepted the event
        """
        accepted = 0
        for destination_id in destination_ids:
            worker = self.workers.get(destination_id)
            if worker is None:
                self.unknown += 1
                self.logger.error(f"No worker for destination {destination_id!r}, {event!r} not delivered there")
                continue
            if worker.offer(event):
                accepted += 1
        return accepted

    def replace(self, destinations: Iterable[Destination]) -> List[SinkWorker]:
        """
        Installs a new destination table without waiting. Workers whose
        destination did not change keep running with their queue.

        :return: The workers taken out of service; pass them to retire()
        """
        wanted: Dict[str, Destination] = {}
        for destination in destinations:
            if destination.id in wanted:
                raise ConfigurationError(f"Duplicate destination id {destination.id!r}")
            wanted[destination.id] = destination
        new_workers = {
            destination_id: self._create_worker(destination)
            for destination_id, destination in wanted.items()
            if destination_id not in self.workers or self.workers[destination_id].destination != destination
        }
        retired = [
            worker for worker_id, worker in self.workers.items()
            if worker_id not in wanted or worker_id in new_workers
        ]
        workers = {worker_id: worker for worker_id, worker in self.workers.items() if worker not in retired}
        workers.update(new_workers)
        self.workers = workers
        if self.running:
            for worker in new_workers.values():
                worker.start()
        self.logger.info(f"Destinations replaced: {len(new_workers)} new, {len(retired)} retired")
        return retired

    async def retire(self, workers: Iterable[SinkWorker]) -> None:
        """Drains and stops workers returned by replace()."""
        await asyncio.gather(*(worker.stop(self.stop_timeout) for worker in workers))

    async def reconfigure(self, destinations: Iterable[Destination]) -> None:
        await self.retire(self.replace(destinations))

    async def stop(self) -> None:
        self.running = False
        await asyncio.gather(*(worker.stop(self.stop_timeout) for worker in self.workers.values()))
        self.logger.info("All destination workers stopped")

    def stats(self) -> Dict[str, SinkStats]:
        return {worker_id: worker.stats() for worker_id, worker in self.workers.items()}
