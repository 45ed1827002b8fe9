import json
import sqlite3

import pytest

from amigate.errors import ConfigurationError
from amigate.gateway import Gateway
from amigate.models import DatabaseDestination, DatabaseProfile, FileDestination, SessionState
from amigate.rules import Equals, EventClause, Regex
from amigate.settings import Settings
from amigate.supervisor import Supervisor

from .conftest import free_port, server_config, wait_until

HANGUP = {'Event': 'Hangup', 'Channel': 'SIP/100-00000001', 'Cause': '16'}
NEWCHANNEL = {'Event': 'Newchannel', 'Channel': 'SIP/200-00000002'}
DIALBEGIN = {'Event': 'DialBegin', 'Channel': 'Local/300@from-internal'}


@pytest.fixture
def events_db(tmp_path):
    path = tmp_path / 'events.db'
    with sqlite3.connect(path) as connection:
        connection.execute('CREATE TABLE events (server TEXT, sequence INTEGER, event TEXT, '
                           'received_at TEXT, fields TEXT)')
    return path


def destinations(tmp_path, events_db):
    return [
        FileDestination(id='A', path=str(tmp_path / 'logs' / '{server}.log'), flush_interval=0.01),
        DatabaseDestination(id='B', profile=DatabaseProfile(id='local', driver='sqlite', database=str(events_db)),
                            table='events', flush_interval=0.01),
    ]


CLAUSES = [
    EventClause('hangups', Equals('Event', 'Hangup'), ('A',)),
    EventClause('sip-channels', Regex('Channel', '^SIP/'), ('B',)),
]


def read_log(path):
    records = []
    for line in path.read_text().splitlines():
        server, _, payload = line.split('::', 2)
        records.append((server, json.loads(payload)))
    return records


def db_rows(path):
    with sqlite3.connect(path) as connection:
        return connection.execute('SELECT server, sequence, event FROM events ORDER BY sequence').fetchall()


async def test_events_are_routed_to_matching_destinations(ami_server, fast_backoff, tmp_path, events_db):
    server = await ami_server(events=[HANGUP, NEWCHANNEL, DIALBEGIN])
    gateway = Gateway(Settings(
        servers=[server_config('pbx1', server.port)],
        destinations=destinations(tmp_path, events_db),
        clauses=CLAUSES,
        backoff=fast_backoff,
    ))
    await gateway.start()
    await wait_until(lambda: gateway.stats().rules.evaluated == 3)
    await gateway.stop()

    records = read_log(tmp_path / 'logs' / 'pbx1.log')
    assert records == [('pbx1', dict(HANGUP, sequence=0))]
    assert db_rows(events_db) == [('pbx1', 0, 'Hangup'), ('pbx1', 1, 'Newchannel')]

    stats = gateway.stats()
    assert stats.rules.matched == 2
    assert stats.rules.unmatched == 1
    assert stats.destinations['A'].delivered == 1
    assert stats.destinations['B'].delivered == 2
    assert stats.sessions['pbx1'].state is SessionState.DISCONNECTED
    assert stats.to_dict()['sessions']['pbx1']['state'] == 'Disconnected'


async def test_unreachable_server_does_not_stop_the_others(ami_server, fast_backoff, tmp_path, events_db):
    healthy = await ami_server(events=[HANGUP])
    gateway = Gateway(Settings(
        servers=[server_config('down', free_port()), server_config('pbx1', healthy.port)],
        destinations=destinations(tmp_path, events_db),
        clauses=CLAUSES,
        backoff=fast_backoff,
    ))
    await gateway.start()
    await wait_until(lambda: gateway.stats().destinations['A'].delivered == 1)
    await wait_until(lambda: gateway.supervisor.states()['down'] is SessionState.BACKOFF)

    status = gateway.stats().sessions
    assert status['pbx1'].state is SessionState.STREAMING
    assert status['down'].last_error.startswith('TransportError')
    assert status['down'].connects == 0
    await gateway.stop()

    assert read_log(tmp_path / 'logs' / 'pbx1.log') == [('pbx1', dict(HANGUP, sequence=0))]
    assert not (tmp_path / 'logs' / 'down.log').exists()


async def test_reload_swaps_clauses_and_destinations(ami_server, fast_backoff, tmp_path, events_db):
    gateway = Gateway(Settings(
        servers=[],
        destinations=destinations(tmp_path, events_db),
        clauses=CLAUSES,
        backoff=fast_backoff,
    ))
    await gateway.start()

    other = FileDestination(id='C', path=str(tmp_path / 'other.log'), flush_interval=0.01)
    await gateway.reload(Settings(
        destinations=[other],
        clauses=[EventClause('all-hangups', Equals('Event', 'Hangup'), ('C',))],
    ))
    assert set(gateway.dispatcher.workers) == {'C'}
    assert gateway.engine.ruleset.version == 2

    with pytest.raises(ConfigurationError):
        await gateway.reload(Settings(
            destinations=[other],
            clauses=[EventClause('lost', Equals('Event', 'Hangup'), ('A',))],
        ))
    assert gateway.engine.ruleset.version == 2
    await gateway.stop()


@pytest.mark.parametrize('queue_size', [0, -5])
def test_supervisor_needs_a_bounded_queue(queue_size):
    with pytest.raises(ConfigurationError):
        Supervisor([server_config('pbx1', 5038)], queue_size=queue_size)
