"""
Framing for the AMI text protocol.

A message is a block of ``Key: Value`` lines terminated by CRLF, and the block
itself is terminated by an empty line::

    Event: Hangup
    Channel: SIP/100-00000001
    Cause: 16

The decoder is incremental: bytes may arrive split at any position and the
produced blocks are the same as when the whole stream is fed at once.
"""
import itertools
import re
from typing import Dict, Iterable, Iterator, List, Optional

from amigate.errors import FrameError

BANNER_PREFIX = 'Asterisk Call Manager'
DEFAULT_MAX_BLOCK_SIZE = 1024 * 1024

_action_ids = itertools.count(1)


class FrameDecoder:
    def __init__(self, encoding: str = 'utf-8', max_block_size: int = DEFAULT_MAX_BLOCK_SIZE):
        self.encoding = encoding
        self.max_block_size = max_block_size
        self._buffer = bytearray()
        self._lines: List[str] = []
        self._block_size = 0

    @property
    def pending(self) -> bool:
        """True while a started block or an unterminated line is buffered."""
        return bool(self._buffer or self._lines)

    def feed(self, data: bytes) -> List[Dict[str, str]]:
        """
        Adds received bytes and returns the blocks completed by them.

        :param data: Raw bytes as read from the connection
        :return: The completed blocks, in stream order
        :raises FrameError: A line is not ``Key: Value`` or a block is too large.
            Blocks completed before the bad one are attached as ``error.blocks``.
        """
        self._buffer.extend(data)
        blocks = []
        try:
            self._split(blocks)
        except FrameError as error:
            error.blocks = blocks
            raise
        return blocks

    def _split(self, blocks: List[Dict[str, str]]) -> None:
        while True:
            end = self._buffer.find(b'\n')
            if end < 0:
                break
            raw = bytes(self._buffer[:end])
            del self._buffer[:end + 1]
            if raw.endswith(b'\r'):
                raw = raw[:-1]
            if not raw.strip():
                if self._lines:
                    blocks.append(self._message_to_dict(self._lines))
                    self._lines = []
                    self._block_size = 0
                continue
            self._block_size += len(raw) + 2
            if self._block_size > self.max_block_size:
                raise FrameError(f"Block exceeds {self.max_block_size} bytes")
            self._lines.append(raw.decode(self.encoding, errors='replace'))
        if len(self._buffer) + self._block_size > self.max_block_size:
            raise FrameError(f"Block exceeds {self.max_block_size} bytes")

    def finish(self) -> None:
        """
        Signals the end of the stream.

        :raises FrameError: A block was started but never terminated
        """
        if self.pending:
            lines, self._lines = self._lines, []
            self._buffer.clear()
            self._block_size = 0
            raise FrameError(f"Stream ended inside a block ({len(lines)} lines buffered)")

    @staticmethod
    def _message_to_dict(data: List[str]) -> Dict[str, str]:
        """
        Converts the lines of one block into an ordered dictionary.

        :param data: The lines of the block, without terminators.
        :return: The dictionary with the converted key-value pairs.
        """
        result = {}
        for row in data:
            key, sep, value = row.partition(':')
            key = key.strip()
            if not sep or not key:
                raise FrameError(f"Unparsable line {row!r}")
            result[key] = value.lstrip()
        return result


def decode(chunks: Iterable[bytes], encoding: str = 'utf-8') -> Iterator[Dict[str, str]]:
    """
    Lazily decodes a finite sequence of reads into blocks.

    :raises FrameError: On a malformed block or when the stream stops mid-block
    """
    decoder = FrameDecoder(encoding)
    for chunk in chunks:
        yield from decoder.feed(chunk)
    decoder.finish()


def is_banner(line: bytes) -> bool:
    return line.decode('ascii', errors='replace').startswith(BANNER_PREFIX)


def next_action_id(prefix: str = 'amigate') -> str:
    return f"{prefix}-{next(_action_ids)}"


def encode_action(data: Dict[str, object], encoding: str = 'utf-8') -> bytes:
    """
    Converts a dictionary into a header block ready to be written.

    :param data: The dictionary containing the headers.
    :return: The encoded block, terminated by an empty line.
    """
    result = ''
    for key, value in data.items():
        key_name = re.sub(r"\[\d+]", "", key)
        result += f"{key_name}: {value}\r\n"
    result += '\r\n'
    return result.encode(encoding)


def encode_login(username: str, secret: str, action_id: Optional[str] = None) -> bytes:
    return encode_action({
        "Action": "Login",
        "ActionID": action_id or next_action_id(),
        "Username": username,
        "Secret": secret,
    })


def encode_keepalive(action_id: Optional[str] = None) -> bytes:
    return encode_action({"Action": "Ping", "ActionID": action_id or next_action_id()})


def encode_logoff(action_id: Optional[str] = None) -> bytes:
    return encode_action({"Action": "Logoff", "ActionID": action_id or next_action_id()})


def is_success(message: Dict[str, str]) -> bool:
    return message.get('Response', '').lower() in ('success', 'pong', 'goodbye')
