"""
StubTap Response Delivery

Response sinks the core writes to. A sink receives the status line and
headers once, then any number of body chunks, then an end signal.

Implementations:
- ASGIResponseSink: writes to an ASGI ``send`` callable
- BufferedResponseSink: collects the whole response in memory
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional


class ResponseSink:
    """Interface for writing a response back to a transport."""

    async def write_status_and_headers(self, status_code: int, headers: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def write_chunk(self, data: bytes) -> None:
        raise NotImplementedError

    async def end(self) -> None:
        raise NotImplementedError


class ASGIResponseSink(ResponseSink):
    """
    Sink backed by an ASGI ``send`` callable.

    Body chunks are sent as ``http.response.body`` messages with
    ``more_body=True``; ``end()`` sends the closing empty message.
    With ``head_only`` set, body chunks are dropped.
    """

    def __init__(self, send: Callable[[Dict[str, Any]], Awaitable[None]], head_only: bool = False):
        self._send = send
        self.head_only = head_only

    async def write_status_and_headers(self, status_code: int, headers: Dict[str, Any]) -> None:
        raw_headers = [
            (str(key).lower().encode('latin-1'), str(value).encode('latin-1'))
            for key, value in (headers or {}).items()
        ]
        await self._send({
            'type': 'http.response.start',
            'status': status_code,
            'headers': raw_headers
        })

    async def write_chunk(self, data: bytes) -> None:
        if not data or self.head_only:
            return
        await self._send({
            'type': 'http.response.body',
            'body': data,
            'more_body': True
        })

    async def end(self) -> None:
        await self._send({
            'type': 'http.response.body',
            'body': b'',
            'more_body': False
        })


class BufferedResponseSink(ResponseSink):
    """Sink that keeps the full response in memory."""

    def __init__(self):
        self.status_code: Optional[int] = None
        self.headers: Dict[str, Any] = {}
        self.chunks: List[bytes] = []
        self.finished = False

    async def write_status_and_headers(self, status_code: int, headers: Dict[str, Any]) -> None:
        self.status_code = status_code
        self.headers = dict(headers or {})

    async def write_chunk(self, data: bytes) -> None:
        self.chunks.append(data)

    async def end(self) -> None:
        self.finished = True

    @property
    def body(self) -> bytes:
        """Everything written so far, concatenated."""
        return b''.join(self.chunks)

    @property
    def text(self) -> str:
        return self.body.decode('utf-8')
