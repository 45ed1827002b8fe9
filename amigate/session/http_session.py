import asyncio
import logging
import ssl
from typing import Dict, List, Optional

import aiohttp

from amigate.base import SessionBase
from amigate.codec import FrameDecoder, is_success, next_action_id
from amigate.errors import AuthError, TransportError
from amigate.models import SessionState


class HTTPSession(SessionBase):
    """
    Reads events through the manager embedded in the Asterisk HTTP server
    (``/rawman``), long polling with the WaitEvent action.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.logger = logging.getLogger('HTTP Session')
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def url(self) -> str:
        scheme = 'https' if self.config.tls else 'http'
        return f"{scheme}://{self.config.host}:{self.config.port}/rawman"

    def _ssl_context(self):
        if not self.config.tls:
            return None
        context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
        if self.config.cafile is not None:
            context.load_verify_locations(self.config.cafile)
        return context

    async def _open(self) -> None:
        # Cookies from IP address hosts are only kept by an unsafe jar.
        self._session = aiohttp.ClientSession(
            cookie_jar=aiohttp.CookieJar(unsafe=True),
            connector=aiohttp.TCPConnector(ssl=self._ssl_context()) if self.config.tls else None,
            timeout=aiohttp.ClientTimeout(connect=self.config.connect_timeout),
        )

    async def ami_request(self, query: Dict[str, object], timeout: float) -> List[Dict[str, str]]:
        """
        Sends an AMI request to the server

        :param query: The action and its headers
        :param timeout: Seconds allowed for the whole request
        :return: The blocks of the response
        :raises TransportError: The request failed or the response is malformed
        :raises asyncio.TimeoutError: No response within the timeout
        """
        params = {key: str(value) for key, value in query.items()}
        try:
            response = await self._interruptible(self._get(params), timeout)
        except aiohttp.ClientError as e:
            raise TransportError(f"Request {query.get('Action')} failed: {e}")
        return FrameDecoder(self.config.encoding).feed(response + b'\r\n\r\n')

    async def _get(self, params: Dict[str, str], session: Optional[aiohttp.ClientSession] = None) -> bytes:
        async with (session or self._session).get(self.url, params=params) as resp:
            if resp.status != 200:
                raise TransportError(f"HTTP {resp.status} {resp.reason}")
            return await resp.read()

    async def _login(self) -> None:
        query = {
            "Action": "Login",
            "ActionID": next_action_id(),
            "Username": self.config.username,
            "Secret": self.config.secret,
        }
        try:
            response = await self.ami_request(query, self.config.login_timeout)
        except asyncio.TimeoutError:
            raise AuthError(f"No login response within {self.config.login_timeout}s")
        if not response or not is_success(response[0]):
            message = response[0].get('Message') if response else None
            raise AuthError(message or 'Authentication failed')
        self.logger.info(f"[{self.name}] {response[0].get('Message', 'Authentication accepted')}")

    async def _stream(self) -> None:
        idle_timeout = self.config.idle_timeout
        # The server holds WaitEvent for at most this long, well inside the idle deadline.
        wait = max(1, int(idle_timeout / 2))
        while True:
            query = {"Action": "WaitEvent", "ActionID": next_action_id(), "Timeout": wait}
            try:
                response = await self.ami_request(query, idle_timeout)
            except asyncio.TimeoutError:
                raise TransportError(f"No data received for {idle_timeout}s")
            if not response or not is_success(response[0]):
                message = response[0].get('Message', 'WaitEvent failed') if response else 'Empty WaitEvent response'
                if message.lower() == 'permission denied':
                    # The manager session expired or the server restarted: log in again.
                    raise AuthError(f"Manager session rejected: {message}")
                raise TransportError(message)
            for message in response:
                if message.get('Event') == 'WaitEventComplete':
                    continue
                await self._handle(message)

    async def _close(self) -> None:
        session, self._session = self._session, None
        if session is None:
            return
        if self.stopping and self.state is SessionState.STREAMING:
            try:
                await asyncio.wait_for(
                    self._get({"Action": "Logoff", "ActionID": next_action_id()}, session), timeout=1)
            except (aiohttp.ClientError, TransportError, asyncio.TimeoutError) as e:
                self.logger.debug(f"[{self.name}] Logoff not sent: {e!r}")
        await session.close()
