import asyncio
import json
import logging
import re
import sqlite3
from datetime import datetime, timezone
from typing import Any, List, Optional, Sequence, Tuple

import pymysql

from amigate.dispatch.worker import SinkWorker
from amigate.errors import ConfigurationError, SinkError
from amigate.models import DatabaseDestination, DatabaseProfile, Event

IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')
META_COLUMNS = ('server', 'sequence', 'event', 'received_at')


class Driver:
    """DB-API module adapter: connection, error class and SQL dialect bits."""
    name = ''
    placeholder = '%s'
    quote = '"'
    error: Any = Exception

    def connect(self, profile: DatabaseProfile):
        raise NotImplementedError

    def quote_name(self, name: str) -> str:
        return f"{self.quote}{name}{self.quote}"


class MySQLDriver(Driver):
    name = 'mysql'
    placeholder = '%s'
    quote = '`'
    error = pymysql.Error

    def connect(self, profile):
        return pymysql.connect(
            host=profile.host,
            port=profile.port,
            user=profile.user,
            password=profile.password,
            database=profile.database,
            charset='utf8mb4',
            autocommit=False,
        )


class SQLiteDriver(Driver):
    name = 'sqlite'
    placeholder = '?'
    quote = '"'
    error = sqlite3.Error

    def connect(self, profile):
        return sqlite3.connect(profile.database, check_same_thread=False)


DRIVERS = {
    'mysql': MySQLDriver(),
    'sqlite': SQLiteDriver(),
}


def get_driver(name: str) -> Driver:
    try:
        return DRIVERS[name]
    except KeyError:
        raise ConfigurationError(f"Unknown database driver {name!r}, expected one of {sorted(DRIVERS)}")


def check_identifier(name: str) -> str:
    if not isinstance(name, str) or not IDENTIFIER.match(name):
        raise ConfigurationError(f"Invalid SQL identifier {name!r}")
    return name


class DatabaseSink(SinkWorker):
    """
    Inserts one row per event, one transaction per batch.

    A row holds the meta columns (server, sequence, event, received_at) when
    ``include_meta`` is set, then either the mapped event fields or all fields
    as JSON in ``payload_column``. The DB-API calls run in a worker thread so a
    slow server only delays this destination.
    """
    kind = 'database'

    def __init__(self, destination: DatabaseDestination):
        super().__init__(destination)
        self.logger = logging.getLogger('Database Sink')
        self.driver = get_driver(destination.profile.driver)
        check_identifier(destination.table)
        for _, column in destination.columns:
            check_identifier(column)
        if not destination.columns:
            check_identifier(destination.payload_column)
        self.columns = self._column_names()
        self.statement = self._insert_statement()
        self._connection = None

    def _column_names(self) -> Tuple[str, ...]:
        destination = self.destination
        columns = META_COLUMNS if destination.include_meta else ()
        if destination.columns:
            columns += tuple(column for _, column in destination.columns)
        else:
            columns += (destination.payload_column,)
        return columns

    def _insert_statement(self) -> str:
        names = ', '.join(self.driver.quote_name(column) for column in self.columns)
        values = ', '.join([self.driver.placeholder] * len(self.columns))
        return f"INSERT INTO {self.driver.quote_name(self.destination.table)} ({names}) VALUES ({values})"

    def row(self, event: Event) -> Tuple[Any, ...]:
        destination = self.destination
        values: Tuple[Any, ...] = ()
        if destination.include_meta:
            received = datetime.fromtimestamp(event.received_at, tz=timezone.utc)
            values += (event.server, event.sequence, event.name,
                       received.strftime('%Y-%m-%d %H:%M:%S.%f'))
        if destination.columns:
            values += tuple(event.get(field) for field, _ in destination.columns)
        else:
            values += (json.dumps(dict(event.fields), ensure_ascii=False),)
        return values

    async def write(self, batch: List[Event]) -> None:
        rows = [self.row(event) for event in batch]
        try:
            await asyncio.to_thread(self._insert, rows)
        except self.driver.error as e:
            raise SinkError(f"Insert into {self.destination.table} failed: {e}")

    def _insert(self, rows: Sequence[Tuple[Any, ...]]) -> None:
        if self._connection is None:
            self._connection = self.driver.connect(self.destination.profile)
            self.logger.info(f"[{self.id}] Connected to {self.destination.profile.id} "
                             f"(project {self.destination.project})")
        connection = self._connection
        try:
            cursor = connection.cursor()
            try:
                cursor.executemany(self.statement, rows)
            finally:
                cursor.close()
            connection.commit()
        except self.driver.error:
            self._reset(connection)
            raise

    def _reset(self, connection) -> None:
        """Rolls back and forgets the connection; the next batch reconnects."""
        self._connection = None
        try:
            connection.rollback()
        except self.driver.error as e:
            self.logger.debug(f"[{self.id}] Rollback failed: {e}")
        try:
            connection.close()
        except self.driver.error as e:
            self.logger.debug(f"[{self.id}] Close failed: {e}")

    async def close(self) -> None:
        connection: Optional[Any] = self._connection
        self._connection = None
        if connection is not None:
            try:
                await asyncio.to_thread(connection.close)
            except self.driver.error as e:
                self.logger.warning(f"[{self.id}] Close failed: {e}")
