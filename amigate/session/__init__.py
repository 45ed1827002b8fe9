from amigate.base import SessionBase
from amigate.errors import ConfigurationError
from amigate.models import ServerConfig
from amigate.session.http_session import HTTPSession
from amigate.session.tcp_session import TCPSession

TRANSPORTS = {
    'tcp': TCPSession,
    'http': HTTPSession,
}


def create_session(config: ServerConfig, *args, **kwargs) -> SessionBase:
    """
    Builds the session class matching ``config.transport``.

    :raises ConfigurationError: Unknown transport
    """
    try:
        session_class = TRANSPORTS[config.transport]
    except KeyError:
        raise ConfigurationError(f"Server {config.name}: unknown transport {config.transport!r}")
    return session_class(config, *args, **kwargs)
