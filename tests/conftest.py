import asyncio
import socket
from typing import Callable, Dict, List, Optional

import pytest

from amigate.backoff import BackoffPolicy
from amigate.codec import FrameDecoder, encode_action
from amigate.errors import FrameError
from amigate.models import ServerConfig

BANNER = b'Asterisk Call Manager/6.0.0\r\n'


class FakeAMIServer:
    """
    Speaks enough AMI for the sessions: greeting, Login, Ping, Logoff.

    ``events`` are sent right after every successful login; ``raw_after_login``
    is written verbatim after them.
    """

    def __init__(self, username: str = 'admin', secret: str = 'secret',
                 events: Optional[List[Dict[str, str]]] = None,
                 answer_pings: bool = True, raw_after_login: bytes = b'',
                 banner: bytes = BANNER):
        self.username = username
        self.secret = secret
        self.events = events or []
        self.answer_pings = answer_pings
        self.raw_after_login = raw_after_login
        self.banner = banner
        self.connections = 0
        self.logins = 0
        self.pings = 0
        self.logoffs = 0
        self._writers = []
        self._server = None
        self.port = None

    async def start(self):
        self._server = await asyncio.start_server(self._client, '127.0.0.1', 0)
        self.port = self._server.sockets[0].getsockname()[1]
        return self

    async def close(self):
        self._server.close()
        for writer in self._writers:
            writer.close()
        await self._server.wait_closed()

    async def _client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.connections += 1
        self._writers.append(writer)
        decoder = FrameDecoder()
        try:
            writer.write(self.banner)
            await writer.drain()
            while True:
                data = await reader.read(4096)
                if not data:
                    break
                for message in decoder.feed(data):
                    await self._answer(message, writer)
        except (ConnectionError, FrameError):
            pass
        finally:
            writer.close()

    async def _answer(self, message: Dict[str, str], writer: asyncio.StreamWriter):
        action = message.get('Action')
        action_id = message.get('ActionID', '')
        if action == 'Login':
            if message.get('Username') == self.username and message.get('Secret') == self.secret:
                self.logins += 1
                writer.write(encode_action({'Response': 'Success', 'ActionID': action_id,
                                            'Message': 'Authentication accepted'}))
                for event in self.events:
                    writer.write(encode_action(event))
                writer.write(self.raw_after_login)
            else:
                writer.write(encode_action({'Response': 'Error', 'ActionID': action_id,
                                            'Message': 'Authentication failed'}))
        elif action == 'Ping':
            self.pings += 1
            if self.answer_pings:
                writer.write(encode_action({'Response': 'Success', 'ActionID': action_id, 'Ping': 'Pong'}))
        elif action == 'Logoff':
            self.logoffs += 1
            writer.write(encode_action({'Response': 'Goodbye', 'ActionID': action_id}))
        await writer.drain()


def free_port() -> int:
    """A port nobody listens on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(('127.0.0.1', 0))
        return sock.getsockname()[1]


async def wait_until(condition: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("Condition not reached in time")
        await asyncio.sleep(interval)


def server_config(name: str, port: int, **kwargs) -> ServerConfig:
    options = dict(host='127.0.0.1', username='admin', secret='secret',
                   connect_timeout=1.0, login_timeout=1.0, idle_timeout=2.0, keepalive_interval=0.5)
    options.update(kwargs)
    return ServerConfig(name=name, port=port, **options)


@pytest.fixture
def fast_backoff():
    return BackoffPolicy(min_delay=0.05, max_delay=0.2, multiplier=2.0, jitter=0.0,
                         reset_after=60.0, auth_min_delay=0.2)


@pytest.fixture
async def ami_server():
    servers = []

    async def factory(**kwargs) -> FakeAMIServer:
        server = await FakeAMIServer(**kwargs).start()
        servers.append(server)
        return server

    yield factory
    for server in servers:
        await server.close()
