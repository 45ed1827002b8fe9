import enum
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional, Tuple, Union


class SessionState(str, enum.Enum):
    DISCONNECTED = 'Disconnected'
    CONNECTING = 'Connecting'
    AUTHENTICATING = 'Authenticating'
    STREAMING = 'Streaming'
    BACKOFF = 'Backoff'


@dataclass(frozen=True)
class ServerConfig:
    """
    One Asterisk server to observe.

    :param name: Unique name, stamped on every event from this server
    :param host: The server host
    :param port: The manager port (5038 for TCP, 8088 for HTTP)
    :param username: Manager account
    :param secret: Manager secret
    :param tls: Wrap the connection in TLS
    :param cafile: CA bundle used to verify the server when TLS is on
    :param transport: ``tcp`` or ``http``
    :param encoding: Charset of the event stream
    :param connect_timeout: Seconds allowed for the socket to open
    :param login_timeout: Seconds allowed for the login acknowledgement
    :param idle_timeout: Seconds of silence after which the connection is considered dead
    :param keepalive_interval: Seconds between keepalive pings while streaming
    """
    name: str
    host: str
    port: int = 5038
    username: str = ''
    secret: str = field(default='', repr=False)
    tls: bool = False
    cafile: Optional[str] = None
    transport: str = 'tcp'
    encoding: str = 'utf-8'
    connect_timeout: float = 10.0
    login_timeout: float = 10.0
    idle_timeout: float = 30.0
    keepalive_interval: float = 10.0


@dataclass(frozen=True, eq=False)
class Event:
    """
    A decoded AMI event as received from one server.

    ``fields`` keeps the header order of the wire block and is read-only.
    """
    server: str
    sequence: int
    fields: Mapping[str, str]
    received_at: float = field(default_factory=time.time)

    def __post_init__(self):
        if not isinstance(self.fields, MappingProxyType):
            object.__setattr__(self, 'fields', MappingProxyType(dict(self.fields)))

    @property
    def name(self) -> Optional[str]:
        return self.fields.get('Event')

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.fields.get(key, default)

    def __repr__(self):
        return f"Event({self.server}#{self.sequence} {self.name})"


@dataclass(frozen=True)
class FileDestination:
    """
    Append-only log file.

    ``path`` may contain ``{server}`` and ``{date}`` (UTC, YYYY-MM-DD) placeholders.
    """
    id: str
    path: str
    queue_size: int = 10000
    batch_size: int = 100
    flush_interval: float = 0.5
    max_attempts: int = 3
    retry_delay: float = 0.5


@dataclass(frozen=True)
class DatabaseProfile:
    id: str
    driver: str = 'mysql'
    host: str = 'localhost'
    port: int = 3306
    user: str = ''
    password: str = field(default='', repr=False)
    database: str = ''


@dataclass(frozen=True)
class DatabaseDestination:
    """
    Table in a relational database, one row per event.

    :param project: Logical grouping of destinations sharing the gateway
    :param profile: Connection parameters
    :param table: Target table
    :param columns: Event field -> column. When empty the fields go to ``payload_column`` as JSON
    :param payload_column: Column receiving the JSON encoded fields
    :param include_meta: Also write the server, sequence, event and received_at columns
    """
    id: str
    profile: DatabaseProfile
    table: str
    project: str = 'default'
    columns: Tuple[Tuple[str, str], ...] = ()
    payload_column: str = 'fields'
    include_meta: bool = True
    queue_size: int = 10000
    batch_size: int = 200
    flush_interval: float = 1.0
    max_attempts: int = 5
    retry_delay: float = 1.0


Destination = Union[FileDestination, DatabaseDestination]
