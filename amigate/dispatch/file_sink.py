import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from typing import Dict, IO, List, Sequence, Tuple

from amigate.dispatch.worker import SinkWorker
from amigate.errors import ConfigurationError, SinkError
from amigate.models import Event, FileDestination


def format_record(event: Event) -> str:
    """
    Renders one event as ``<server>::<epoch ms>::<json>`` followed by CRLF.

    The JSON holds the event fields and its sequence number.
    """
    payload = dict(event.fields)
    payload['sequence'] = event.sequence
    millis = int(event.received_at * 1000)
    return f"{event.server}::{millis}::{json.dumps(payload, ensure_ascii=False)}\r\n"


def check_path_template(path: str) -> str:
    """
    :raises ConfigurationError: The path uses a placeholder other than ``{server}`` and ``{date}``
    """
    try:
        path.format(server='server', date='date')
    except (KeyError, IndexError, ValueError) as e:
        raise ConfigurationError(f"Bad file path template {path!r}: {e!r}")
    return path


class FileSink(SinkWorker):
    """
    Appends events to a log file.

    The path may use ``{server}`` and ``{date}``: ``events/{server}/events_{date}.log``
    keeps one daily file per server. Handles stay open between batches and
    are closed when their date has passed and on shutdown. File calls run in
    a worker thread so a slow disk only delays this destination.
    """
    kind = 'file'

    def __init__(self, destination: FileDestination):
        super().__init__(destination)
        self.logger = logging.getLogger('File Sink')
        check_path_template(destination.path)
        self._files: Dict[str, IO[str]] = {}
        self._date = None

    def resolve_path(self, event: Event) -> str:
        date = datetime.fromtimestamp(event.received_at, tz=timezone.utc).date().isoformat()
        return self.destination.path.format(server=event.server, date=date)

    def _file(self, path: str) -> IO[str]:
        handle = self._files.get(path)
        if handle is None:
            directory = os.path.dirname(path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            handle = open(path, 'a', encoding='utf-8', newline='')
            self._files[path] = handle
            self.logger.info(f"[{self.id}] Writing to {path}")
        return handle

    def _rotate(self) -> None:
        today = datetime.now(timezone.utc).date()
        if self._date != today:
            if self._date is not None:
                self._close_files()
            self._date = today

    async def write(self, batch: List[Event]) -> None:
        records = [(self.resolve_path(event), format_record(event)) for event in batch]
        await asyncio.to_thread(self._append, records)

    def _append(self, records: Sequence[Tuple[str, str]]) -> None:
        self._rotate()
        used = set()
        try:
            for path, record in records:
                used.add(path)
                self._file(path).write(record)
            for path in used:
                self._files[path].flush()
        except OSError as e:
            # A handle in an unknown state is reopened on the next attempt.
            for path in used:
                self._discard(path)
            raise SinkError(f"Write to {self.destination.path} failed: {e}")

    def _discard(self, path: str) -> None:
        handle = self._files.pop(path, None)
        if handle is None:
            return
        try:
            handle.close()
        except OSError as e:
            self.logger.warning(f"[{self.id}] Closing {path}: {e}")

    def _close_files(self) -> None:
        for path in list(self._files):
            self._discard(path)

    async def close(self) -> None:
        await asyncio.to_thread(self._close_files)
