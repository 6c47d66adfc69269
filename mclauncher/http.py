"""
The fetch-with-range capability the launcher needs from a transport.

Everything above this module only talks to ``Fetcher``; ``AiohttpFetcher`` is the
production implementation, tests plug in an in-memory one.
"""
import contextlib
import json
import logging
from typing import Any, AsyncContextManager, AsyncIterator, Optional

import aiohttp

log = logging.getLogger(__name__)

USER_AGENT = 'mclauncher/1.0'


class FetchError(Exception):
    """Transport-level failure: connection problem or unexpected HTTP status."""

    def __init__(self, url: str, status: Optional[int] = None, message: str = ''):
        detail = f"HTTP {status}" if status is not None else "transport error"
        super().__init__(f"{detail} for {url}{': ' + message if message else ''}")
        self.url = url
        self.status = status


class FetchResponse:
    """An opened download.

    ``resumed`` is true when the server honoured the requested start offset, in which
    case ``chunks`` yields the bytes after that offset only. ``total`` is the full
    length of the resource when the server reported it.
    """

    def __init__(self, chunks: AsyncIterator[bytes], total: Optional[int] = None, resumed: bool = False):
        self.chunks = chunks
        self.total = total
        self.resumed = resumed


class Fetcher:
    def open(self, url: str, offset: int = 0) -> AsyncContextManager[FetchResponse]:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class AiohttpFetcher(Fetcher):

    def __init__(self, session: Optional[aiohttp.ClientSession] = None, chunk_size: int = 64 * 1024,
                 timeout: float = 60.0):
        self._session = session
        self._owns_session = session is None
        self.chunk_size = chunk_size
        self.timeout = timeout

    async def get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={'User-Agent': USER_AGENT},
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=self.timeout, sock_read=self.timeout),
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    @contextlib.asynccontextmanager
    async def open(self, url: str, offset: int = 0) -> AsyncIterator[FetchResponse]:
        session = await self.get_session()
        headers = {'Range': f'bytes={offset}-'} if offset > 0 else {}
        try:
            async with session.get(url, headers=headers) as response:
                if not response.ok:
                    raise FetchError(url, response.status, response.reason or '')
                resumed = offset > 0 and response.status == 206
                total = None
                if response.content_length is not None:
                    total = response.content_length + (offset if resumed else 0)
                yield FetchResponse(response.content.iter_chunked(self.chunk_size), total, resumed)
        except aiohttp.ClientError as e:
            raise FetchError(url, message=str(e)) from e


async def fetch_bytes(fetcher: Fetcher, url: str) -> bytes:
    async with fetcher.open(url) as response:
        parts = [chunk async for chunk in response.chunks]
    return b''.join(parts)


async def fetch_json(fetcher: Fetcher, url: str) -> Any:
    data = await fetch_bytes(fetcher, url)
    try:
        return json.loads(data)
    except ValueError as e:
        raise FetchError(url, message=f"invalid JSON: {e}") from e
