"""Outbound transports for live streams.

Primary: a persistent WebSocket push channel, one binary message per
frame. Fallback: periodic multipart POSTs of encoded segments to a chunk
endpoint. Both are aiohttp based and raise TransportFailed on any
connection problem.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Optional

import aiohttp

from camstream.errors import TransportFailed

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 5.0


class PushChannel(ABC):
    """Persistent low-latency channel to a stream consumer."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """True while frames can be pushed."""

    @abstractmethod
    async def send(self, data: bytes) -> None:
        """Push one encoded frame. Raises TransportFailed."""

    @abstractmethod
    async def close(self) -> None:
        """Close the channel. Idempotent."""


class FallbackChannel(ABC):
    """Chunked upload channel used when no push channel is available."""

    @abstractmethod
    async def send(self, data: bytes, timestamp: Optional[float] = None) -> None:
        """Upload one encoded segment. Raises TransportFailed."""

    @abstractmethod
    async def close(self) -> None:
        """Release the channel. Idempotent."""


class TransportFactory(ABC):
    """Opens primary and fallback channels for a stream."""

    @abstractmethod
    async def open_push_channel(self, target: str) -> PushChannel:
        """Open the primary channel. Raises TransportFailed."""

    @abstractmethod
    async def open_fallback_channel(self, target: str, stream_id: str) -> FallbackChannel:
        """Open the fallback channel. Raises TransportFailed."""


class WebSocketPushChannel(PushChannel):
    """aiohttp WebSocket push channel.

    A watcher task drains inbound messages so a close frame or error from
    the consumer is noticed even though we only ever send.
    """

    def __init__(self, session: aiohttp.ClientSession, ws: aiohttp.ClientWebSocketResponse, target: str):
        self._session = session
        self._ws = ws
        self.target = target
        self._closed = False
        self._watcher = asyncio.create_task(self._watch(), name=f"ws-watch-{target}")

    @property
    def is_open(self) -> bool:
        return not self._closed and not self._ws.closed

    async def _watch(self) -> None:
        async for msg in self._ws:
            if msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning(f"WebSocket error from {self.target}: {self._ws.exception()}")
                break
        logger.debug(f"WebSocket to {self.target} closed by peer")

    async def send(self, data: bytes) -> None:
        if not self.is_open:
            raise TransportFailed(f"Push channel to {self.target} is closed")
        try:
            await self._ws.send_bytes(data)
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            raise TransportFailed(f"Push to {self.target} failed: {e}")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._watcher.cancel()
        try:
            await self._ws.close()
        finally:
            await self._session.close()
        logger.debug(f"Closed push channel to {self.target}")


class HTTPChunkChannel(FallbackChannel):
    """Uploads segments as multipart form posts (fields: chunk, streamId, timestamp)."""

    def __init__(self, session: aiohttp.ClientSession, target: str, stream_id: str):
        self._session = session
        self.target = target
        self.stream_id = stream_id
        self._closed = False

    async def send(self, data: bytes, timestamp: Optional[float] = None) -> None:
        if self._closed:
            raise TransportFailed(f"Fallback channel to {self.target} is closed")

        timestamp_ms = int((timestamp if timestamp is not None else time.time()) * 1000)
        form = aiohttp.FormData()
        form.add_field("chunk", data, filename="chunk.jpg", content_type="image/jpeg")
        form.add_field("streamId", self.stream_id)
        form.add_field("timestamp", str(timestamp_ms))

        try:
            async with self._session.post(self.target, data=form) as response:
                if response.status >= 400:
                    raise TransportFailed(f"Chunk upload to {self.target} returned HTTP {response.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportFailed(f"Chunk upload to {self.target} failed: {e}")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._session.close()


class AiohttpTransportFactory(TransportFactory):
    """Default transports over aiohttp."""

    def __init__(self, connect_timeout: float = DEFAULT_CONNECT_TIMEOUT):
        self.connect_timeout = connect_timeout

    async def open_push_channel(self, target: str) -> PushChannel:
        session = aiohttp.ClientSession()
        try:
            ws = await asyncio.wait_for(session.ws_connect(target), timeout=self.connect_timeout)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            await session.close()
            raise TransportFailed(f"Cannot open push channel to {target}: {e}")

        logger.info(f"Streaming WebSocket connected to {target}")
        return WebSocketPushChannel(session, ws, target)

    async def open_fallback_channel(self, target: str, stream_id: str) -> FallbackChannel:
        timeout = aiohttp.ClientTimeout(total=self.connect_timeout)
        session = aiohttp.ClientSession(timeout=timeout)
        return HTTPChunkChannel(session, target, stream_id)
