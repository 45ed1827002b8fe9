"""
Loading of the gateway configuration from YAML.

Example::

    gateway:
      queue_size: 10000
      idle_timeout: 30
    backoff:
      min_delay: 1
      max_delay: 60
    servers:
      - name: pbx1
        host: 10.0.0.5
        username: gateway
        secret: s3cret
    databases:
      - id: billing-db
        driver: mysql
        host: db.example.com
        user: ami
        password: ami
        database: telephony
    destinations:
      - id: all-events
        type: file
        path: events/{server}/events_{date}.log
      - id: hangups
        type: database
        project: billing
        connection: billing-db
        table: hangups
        columns: {Channel: channel, Cause: cause}
    clauses:
      - name: everything
        match: {field: Event, exists: true}
        destinations: [all-events]
      - name: hangups
        match: {event: Hangup}
        destinations: [hangups]
"""
import math
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Mapping, Tuple

import yaml

from amigate.backoff import BackoffPolicy
from amigate.dispatch.database_sink import check_identifier, get_driver
from amigate.dispatch.file_sink import check_path_template
from amigate.errors import ConfigurationError
from amigate.models import DatabaseDestination, DatabaseProfile, Destination, FileDestination, ServerConfig
from amigate.rules import EventClause, check_clauses, make_clause

SESSION_DEFAULTS = ('connect_timeout', 'login_timeout', 'idle_timeout', 'keepalive_interval', 'encoding')
DEFAULT_PORTS = {('tcp', False): 5038, ('tcp', True): 5039, ('http', False): 8088, ('http', True): 8089}
# Numeric options that may be 0; every other one must be positive.
ZERO_ALLOWED = ('jitter', 'reset_after', 'auth_min_delay', 'retry_delay')


@dataclass
class Settings:
    servers: List[ServerConfig] = field(default_factory=list)
    destinations: List[Destination] = field(default_factory=list)
    clauses: List[EventClause] = field(default_factory=list)
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    queue_size: int = 10000
    stop_timeout: float = 5.0


def _number(value: Any, kind, name: str, context: str):
    """
    Converts a numeric option, YAML strings included.

    :raises ConfigurationError: The value is not a number or below the allowed minimum
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"{context}: {name} must be a number, got {value!r}")
    try:
        number = kind(value)
    except (TypeError, ValueError, OverflowError):
        raise ConfigurationError(f"{context}: {name} must be a number, got {value!r}")
    if not math.isfinite(number) or number < 0 or (number == 0 and name not in ZERO_ALLOWED):
        raise ConfigurationError(f"{context}: {name} must be positive, got {value!r}")
    return number


def _build(cls, data: Mapping[str, Any], context: str, **extra):
    """Instantiates a dataclass from a mapping, rejecting unknown keys and converting numbers."""
    known = {f.name: f.type for f in fields(cls) if f.init}
    unknown = set(data) - set(known)
    if unknown:
        raise ConfigurationError(f"{context}: unknown option(s) {sorted(unknown)}")
    data = {key: _number(value, known[key], key, context) if known[key] in (int, float) else value
            for key, value in data.items()}
    try:
        return cls(**{**data, **extra})
    except TypeError as e:
        raise ConfigurationError(f"{context}: {e}")


def _section(data: Mapping[str, Any], name: str, kind=list):
    value = data.get(name)
    if value is None:
        return kind()
    if not isinstance(value, kind):
        raise ConfigurationError(f"Section '{name}' must be a {kind.__name__}")
    return value


def parse_server(entry: Mapping[str, Any], defaults: Mapping[str, Any]) -> ServerConfig:
    entry = dict(entry)
    context = f"Server {entry.get('name', '?')}"
    if not entry.get('name') or not entry.get('host'):
        raise ConfigurationError(f"{context}: 'name' and 'host' are required")
    transport = entry.setdefault('transport', 'tcp')
    tls = bool(entry.get('tls', False))
    if (transport, tls) not in DEFAULT_PORTS:
        raise ConfigurationError(f"{context}: unknown transport {transport!r}")
    entry.setdefault('port', DEFAULT_PORTS[(transport, tls)])
    for key in SESSION_DEFAULTS:
        if key in defaults:
            entry.setdefault(key, defaults[key])
    if 'secret' not in entry and 'password' in entry:
        entry['secret'] = entry.pop('password')
    return _build(ServerConfig, entry, context)


def parse_destination(entry: Mapping[str, Any], profiles: Mapping[str, DatabaseProfile]) -> Destination:
    entry = dict(entry)
    kind = entry.pop('type', None)
    context = f"Destination {entry.get('id', '?')}"
    if not entry.get('id'):
        raise ConfigurationError(f"{context}: 'id' is required")
    if kind == 'file':
        if not entry.get('path') or not isinstance(entry['path'], str):
            raise ConfigurationError(f"{context}: 'path' is required")
        try:
            check_path_template(entry['path'])
        except ConfigurationError as e:
            raise ConfigurationError(f"{context}: {e}")
        return _build(FileDestination, entry, context)
    if kind == 'database':
        profile_id = entry.pop('connection', None)
        if profile_id not in profiles:
            raise ConfigurationError(f"{context}: unknown database connection {profile_id!r}")
        columns = entry.pop('columns', None) or {}
        if not isinstance(columns, Mapping):
            raise ConfigurationError(f"{context}: 'columns' must map event fields to columns")
        mapped: Tuple[Tuple[str, str], ...] = tuple((str(k), str(v)) for k, v in columns.items())
        destination = _build(DatabaseDestination, entry, context, profile=profiles[profile_id], columns=mapped)
        # Validates the driver and the identifiers.
        get_driver(destination.profile.driver)
        check_identifier(destination.table)
        for _, column in destination.columns:
            check_identifier(column)
        return destination
    raise ConfigurationError(f"{context}: type must be 'file' or 'database', got {kind!r}")


def parse_settings(data: Mapping[str, Any]) -> Settings:
    """
    Validates a configuration mapping.

    :raises ConfigurationError: The configuration is invalid
    """
    if not isinstance(data, Mapping):
        raise ConfigurationError("Configuration must be a mapping")
    gateway: Dict[str, Any] = _section(data, 'gateway', dict)
    backoff = _build(BackoffPolicy, _section(data, 'backoff', dict), 'Backoff')

    servers = [parse_server(entry, gateway) for entry in _section(data, 'servers')]
    names = [server.name for server in servers]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ConfigurationError(f"Duplicate server names {duplicates}")

    profiles: Dict[str, DatabaseProfile] = {}
    for entry in _section(data, 'databases'):
        profile = _build(DatabaseProfile, entry, f"Database {entry.get('id', '?')}")
        if profile.id in profiles:
            raise ConfigurationError(f"Duplicate database id {profile.id!r}")
        profiles[profile.id] = profile

    destinations = [parse_destination(entry, profiles) for entry in _section(data, 'destinations')]
    ids = [destination.id for destination in destinations]
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        raise ConfigurationError(f"Duplicate destination ids {duplicates}")

    clauses = [make_clause(entry) for entry in _section(data, 'clauses')]
    check_clauses(clauses, known_destinations=ids)

    return Settings(
        servers=servers,
        destinations=destinations,
        clauses=clauses,
        backoff=backoff,
        queue_size=_number(gateway.get('queue_size', 10000), int, 'queue_size', 'Gateway'),
        stop_timeout=_number(gateway.get('stop_timeout', 5.0), float, 'stop_timeout', 'Gateway'),
    )


def load_settings(path: str) -> Settings:
    if not os.path.exists(path):
        raise ConfigurationError(f"Configuration file {path} not found")
    with open(path, 'r', encoding='utf-8') as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"{path}: {e}")
    return parse_settings(data)
