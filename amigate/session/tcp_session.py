import asyncio
import logging
import ssl
from typing import Dict, List, Optional, Union

from amigate.base import SessionBase
from amigate.codec import FrameDecoder, encode_keepalive, encode_login, encode_logoff, is_banner, is_success
from amigate.errors import AuthError, FrameError, TransportError

READ_SIZE = 65536


class TCPSession(SessionBase):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.logger = logging.getLogger('TCP Session')
        self._reader: Union[asyncio.StreamReader, None] = None
        self._writer: Union[asyncio.StreamWriter, None] = None
        self._decoder: Optional[FrameDecoder] = None
        self._pending: List[Dict[str, str]] = []
        self._deferred_error: Optional[FrameError] = None

    def _ssl_context(self) -> Optional[ssl.SSLContext]:
        if not self.config.tls:
            return None
        context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
        context.verify_mode = ssl.VerifyMode.CERT_REQUIRED
        if self.config.cafile is not None:
            context.load_verify_locations(self.config.cafile)
        return context

    async def _open(self) -> None:
        host, port = self.config.host, self.config.port
        try:
            self._reader, self._writer = await self._interruptible(
                asyncio.open_connection(host=host, port=port, ssl=self._ssl_context()),
                self.config.connect_timeout)
        except asyncio.TimeoutError:
            raise TransportError(f"Connection to {host}:{port} timed out")
        except (OSError, ssl.SSLError) as e:
            raise TransportError(f"Connection to {host}:{port} failed: {e}")

        try:
            banner = await self._interruptible(self._reader.readline(), self.config.connect_timeout)
        except asyncio.TimeoutError:
            raise TransportError("No greeting from the manager")
        except (ValueError, asyncio.LimitOverrunError) as e:
            raise TransportError(f"Greeting line too long: {e}")
        except OSError as e:
            raise TransportError(f"Read failed: {e}")
        if not is_banner(banner):
            raise TransportError(f"Unexpected greeting {banner[:64]!r}")
        self.logger.debug(f"[{self.name}] Greeting: {banner.strip().decode('ascii', errors='replace')}")
        self._decoder = FrameDecoder(self.config.encoding)
        self._pending = []
        self._deferred_error = None

    async def _write(self, data: bytes) -> None:
        try:
            self._writer.write(data)
            await self._writer.drain()
        except OSError as e:
            raise TransportError(f"Write failed: {e}")

    async def _read_blocks(self, timeout: float) -> List[Dict[str, str]]:
        """
        Reads once from the socket and returns the blocks completed by the read.

        :raises asyncio.TimeoutError: Nothing was received within the timeout
        """
        try:
            data = await self._interruptible(self._reader.read(READ_SIZE), timeout)
        except asyncio.TimeoutError:
            raise
        except OSError as e:
            raise TransportError(f"Read failed: {e}")
        if not data:
            self._decoder.finish()
            raise TransportError("Connection closed by the server")
        return self._decoder.feed(data)

    async def _login(self) -> None:
        await self._write(encode_login(self.config.username, self.config.secret))
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.login_timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise AuthError(f"No login response within {self.config.login_timeout}s")
            try:
                blocks = await self._read_blocks(remaining)
            except asyncio.TimeoutError:
                continue
            except FrameError as e:
                # The login may have been accepted in the same read as the bad block.
                if not self._login_response(e.blocks):
                    raise
                self._deferred_error = e
                return
            if self._login_response(blocks):
                return

    def _login_response(self, blocks: List[Dict[str, str]]) -> bool:
        """
        Looks for the login response among ``blocks``; what follows it is kept
        for _stream.

        :return: True when the login was accepted
        :raises AuthError: The login was rejected
        """
        for n, message in enumerate(blocks):
            if 'Response' not in message:
                self.logger.debug(f"[{self.name}] Ignored before login: {message}")
                continue
            if not is_success(message):
                raise AuthError(message.get('Message', 'Authentication failed'))
            self.logger.info(f"[{self.name}] {message.get('Message', 'Authentication accepted')}")
            self._pending = blocks[n + 1:]
            return True
        return False

    async def _stream(self) -> None:
        loop = asyncio.get_running_loop()
        idle_timeout = self.config.idle_timeout
        keepalive = self.config.keepalive_interval
        last_seen = loop.time()
        next_ping = last_seen + keepalive

        pending, self._pending = self._pending, []
        for message in pending:
            await self._handle(message)
        if self._deferred_error is not None:
            error, self._deferred_error = self._deferred_error, None
            raise error

        while True:
            now = loop.time()
            if now - last_seen >= idle_timeout:
                raise TransportError(f"No data received for {idle_timeout}s")
            if now >= next_ping:
                await self._write(encode_keepalive())
                next_ping = now + keepalive
            timeout = min(last_seen + idle_timeout, next_ping) - now
            try:
                blocks = await self._read_blocks(max(timeout, 0))
            except asyncio.TimeoutError:
                continue
            except FrameError as e:
                for message in e.blocks:
                    await self._handle(message)
                raise
            last_seen = loop.time()
            for message in blocks:
                await self._handle(message)

    async def _close(self) -> None:
        writer, self._writer = self._writer, None
        self._reader = None
        self._decoder = None
        if writer is None:
            return
        if self.stopping and not writer.is_closing():
            try:
                writer.write(encode_logoff())
            except OSError as e:
                self.logger.debug(f"[{self.name}] Logoff not sent: {e}")
        writer.close()
        try:
            await asyncio.wait_for(writer.wait_closed(), timeout=1)
        except (OSError, ssl.SSLError, asyncio.TimeoutError) as e:
            self.logger.debug(f"[{self.name}] Close: {e!r}")
