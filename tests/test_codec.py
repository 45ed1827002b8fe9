import pytest

from amigate.codec import (FrameDecoder, decode, encode_action, encode_keepalive, encode_login, is_banner,
                           is_success)
from amigate.errors import FrameError

STREAM = (
    b"Response: Success\r\nActionID: 1\r\nMessage: Authentication accepted\r\n\r\n"
    b"Event: Newchannel\r\nPrivilege: call,all\r\nChannel: SIP/200-00000001\r\nUniqueid: 1700000000.1\r\n\r\n"
    b"Event: Hangup\r\nChannel: SIP/100-00000002\r\nCause: 16\r\nCause-txt: Normal Clearing\r\n\r\n"
)


def test_blocks_are_parsed_in_order():
    blocks = FrameDecoder().feed(STREAM)
    assert [b.get('Event') or b.get('Response') for b in blocks] == ['Success', 'Newchannel', 'Hangup']
    assert blocks[2] == {'Event': 'Hangup', 'Channel': 'SIP/100-00000002', 'Cause': '16',
                         'Cause-txt': 'Normal Clearing'}
    assert list(blocks[1]) == ['Event', 'Privilege', 'Channel', 'Uniqueid']


def test_framing_does_not_depend_on_read_boundaries():
    expected = FrameDecoder().feed(STREAM)
    for split in range(1, len(STREAM)):
        decoder = FrameDecoder()
        blocks = decoder.feed(STREAM[:split]) + decoder.feed(STREAM[split:])
        assert blocks == expected, split
        assert not decoder.pending


def test_byte_by_byte_feed():
    decoder = FrameDecoder()
    blocks = []
    for i in range(len(STREAM)):
        blocks.extend(decoder.feed(STREAM[i:i + 1]))
    assert blocks == FrameDecoder().feed(STREAM)


def test_block_completes_only_at_blank_line():
    decoder = FrameDecoder()
    assert decoder.feed(b"Event: Hangup\r\nChannel: SIP/100\r\n") == []
    assert decoder.pending
    assert decoder.feed(b"\r\n") == [{'Event': 'Hangup', 'Channel': 'SIP/100'}]


def test_value_keeps_colons_and_bare_lf_is_accepted():
    blocks = FrameDecoder().feed(b"Event: VarSet\nValue: a: b:c\nEmpty:\n\n")
    assert blocks == [{'Event': 'VarSet', 'Value': 'a: b:c', 'Empty': ''}]


def test_unparsable_line_raises_and_keeps_previous_blocks():
    with pytest.raises(FrameError) as info:
        FrameDecoder().feed(b"Event: Hangup\r\n\r\nthis is not a header\r\n\r\n")
    assert info.value.blocks == [{'Event': 'Hangup'}]


def test_truncated_stream_is_an_error():
    decoder = FrameDecoder()
    decoder.feed(b"Event: Hangup\r\nChannel: SIP/1")
    with pytest.raises(FrameError):
        decoder.finish()


def test_decode_is_lazy_and_signals_truncation():
    events = decode([b"Event: A\r\n\r\nEvent: B\r\n", b"\r\nEvent: C\r\n"])
    assert next(events) == {'Event': 'A'}
    assert next(events) == {'Event': 'B'}
    with pytest.raises(FrameError):
        next(events)


def test_oversized_block():
    decoder = FrameDecoder(max_block_size=64)
    with pytest.raises(FrameError):
        decoder.feed(b"Event: X\r\n" + b"Data: " + b"x" * 100 + b"\r\n")


def test_undecodable_bytes_are_replaced():
    blocks = FrameDecoder(encoding='utf-8').feed(b"Event: X\r\nName: \xff\xfe\r\n\r\n")
    assert blocks[0]['Name'] == '\ufffd\ufffd'


def test_encode_login():
    data = encode_login('admin', 'secret', action_id='42')
    assert data == b"Action: Login\r\nActionID: 42\r\nUsername: admin\r\nSecret: secret\r\n\r\n"
    assert FrameDecoder().feed(data) == [{'Action': 'Login', 'ActionID': '42',
                                         'Username': 'admin', 'Secret': 'secret'}]


def test_encode_keepalive_uses_fresh_action_ids():
    first, second = encode_keepalive(), encode_keepalive()
    assert first.startswith(b"Action: Ping\r\nActionID: ")
    assert first.endswith(b"\r\n\r\n")
    assert first != second


def test_encode_action_strips_index_suffix():
    assert encode_action({'Variable[0]': 'a=1', 'Variable[1]': 'b=2'}) == b"Variable: a=1\r\nVariable: b=2\r\n\r\n"


def test_banner_and_success():
    assert is_banner(b"Asterisk Call Manager/5.0.1\r\n")
    assert not is_banner(b"SSH-2.0-OpenSSH_9.6\r\n")
    assert is_success({'Response': 'Success'})
    assert not is_success({'Response': 'Error', 'Message': 'Authentication failed'})
