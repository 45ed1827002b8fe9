import asyncio

import pytest
from aiohttp import test_utils, web

from amigate.models import SessionState
from amigate.session import create_session
from amigate.session.http_session import HTTPSession

from .conftest import free_port, server_config, wait_until

EVENTS = (
    "Response: Success\r\nMessage: Waiting for Event completed.\r\n\r\n"
    "Event: Newchannel\r\nChannel: SIP/200-00000002\r\n\r\n"
    "Event: Hangup\r\nChannel: SIP/100-00000001\r\nCause: 16\r\n\r\n"
    "Event: WaitEventComplete\r\n"
)
EMPTY = (
    "Response: Success\r\nMessage: Waiting for Event completed.\r\n\r\n"
    "Event: WaitEventComplete\r\n"
)


class FakeRawman:
    """/rawman of the Asterisk HTTP server: cookie based manager session."""

    def __init__(self, secret='secret', wait_error=None, wait_delay=0.05):
        self.secret = secret
        self.wait_error = wait_error
        self.wait_delay = wait_delay
        self.actions = []
        self.sent = False
        app = web.Application()
        app.router.add_get('/rawman', self.rawman)
        self.server = test_utils.TestServer(app, host='127.0.0.1')

    async def rawman(self, request: web.Request) -> web.Response:
        action = request.query.get('Action')
        self.actions.append(action)
        if action == 'Login':
            if request.query.get('Secret') != self.secret:
                return web.Response(text="Response: Error\r\nMessage: Authentication failed\r\n")
            response = web.Response(text="Response: Success\r\nMessage: Authentication accepted\r\n")
            response.set_cookie('mansession_id', 'b3e1c0de')
            return response
        if request.cookies.get('mansession_id') != 'b3e1c0de':
            return web.Response(text="Response: Error\r\nMessage: Permission denied\r\n")
        if action == 'WaitEvent':
            if self.wait_error:
                return web.Response(text=f"Response: Error\r\nMessage: {self.wait_error}\r\n")
            if not self.sent and self.wait_delay < 1:
                self.sent = True
                return web.Response(text=EVENTS)
            await asyncio.sleep(self.wait_delay)
            return web.Response(text=EMPTY)
        if action == 'Logoff':
            return web.Response(text="Response: Goodbye\r\nMessage: Thanks for all the fish.\r\n")
        return web.Response(status=404)


@pytest.fixture
async def rawman_factory():
    started = []

    async def factory(**kwargs):
        fake = FakeRawman(**kwargs)
        await fake.server.start_server()
        started.append(fake)
        return fake

    yield factory
    for fake in started:
        await fake.server.close()


@pytest.fixture
async def rawman(rawman_factory):
    return await rawman_factory()


async def run_session(config, fast_backoff):
    queue = asyncio.Queue()
    session = create_session(config, queue, fast_backoff)
    task = asyncio.create_task(session.run())
    return session, queue, task


async def test_long_polls_events(rawman, fast_backoff):
    config = server_config('pbx-http', rawman.server.port, transport='http', idle_timeout=2.0)
    session, queue, task = await run_session(config, fast_backoff)
    assert isinstance(session, HTTPSession)

    await wait_until(lambda: queue.qsize() == 2)
    first, second = queue.get_nowait(), queue.get_nowait()
    assert (first.server, first.sequence, first.name) == ('pbx-http', 0, 'Newchannel')
    assert (second.sequence, second.name, second.get('Cause')) == (1, 'Hangup', '16')
    await wait_until(lambda: rawman.actions.count('WaitEvent') >= 3)
    assert session.state is SessionState.STREAMING
    assert queue.empty()

    session.stop()
    await asyncio.wait_for(task, 2)
    assert rawman.actions[-1] == 'Logoff'
    assert session.state is SessionState.DISCONNECTED


async def test_rejected_login(rawman, fast_backoff):
    config = server_config('pbx-http', rawman.server.port, transport='http', secret='wrong')
    session, queue, task = await run_session(config, fast_backoff)
    await wait_until(lambda: session.state is SessionState.BACKOFF)
    assert session.last_error == 'AuthError: Authentication failed'
    assert 'WaitEvent' not in rawman.actions
    session.stop()
    await asyncio.wait_for(task, 2)


def test_url():
    session = HTTPSession(server_config('pbx', 8089, transport='http', tls=True), asyncio.Queue())
    assert session.url == 'https://127.0.0.1:8089/rawman'


async def test_expired_manager_session_logs_in_again(rawman_factory, fast_backoff):
    rawman = await rawman_factory(wait_error='Permission denied')
    config = server_config('pbx-http', rawman.server.port, transport='http', idle_timeout=2.0)
    session, queue, task = await run_session(config, fast_backoff)

    await wait_until(lambda: rawman.actions.count('Login') >= 2)
    assert session.last_error == 'AuthError: Manager session rejected: Permission denied'
    assert session.connects >= 1
    assert queue.empty()
    session.stop()
    await asyncio.wait_for(task, 2)


async def test_wait_event_error_ends_stream(rawman_factory, fast_backoff):
    rawman = await rawman_factory(wait_error='Invalid timeout')
    config = server_config('pbx-http', rawman.server.port, transport='http', idle_timeout=2.0)
    session, queue, task = await run_session(config, fast_backoff)

    await wait_until(lambda: rawman.actions.count('Login') >= 2)
    assert session.last_error == 'TransportError: Invalid timeout'
    # Errors are not liveness: every WaitEvent is followed by a new login.
    assert rawman.actions.count('WaitEvent') <= rawman.actions.count('Login')
    session.stop()
    await asyncio.wait_for(task, 2)


async def test_wait_event_outliving_idle_timeout_reconnects(rawman_factory, fast_backoff):
    rawman = await rawman_factory(wait_delay=1.0)
    config = server_config('pbx-http', rawman.server.port, transport='http', idle_timeout=0.3)
    session, queue, task = await run_session(config, fast_backoff)

    await wait_until(lambda: session.state is SessionState.BACKOFF)
    assert session.last_error == 'TransportError: No data received for 0.3s'
    assert session.connects == 1
    await wait_until(lambda: rawman.actions.count('Login') >= 2)
    session.stop()
    await asyncio.wait_for(task, 2)


async def test_unreachable_http_server_backs_off(fast_backoff):
    config = server_config('pbx-http', free_port(), transport='http', connect_timeout=1.0)
    session, queue, task = await run_session(config, fast_backoff)

    await wait_until(lambda: session.backoff.failures >= 2)
    assert session.last_error.startswith('TransportError: Request Login failed')
    assert session.connects == 0
    assert session.running
    session.stop()
    await asyncio.wait_for(task, 2)
