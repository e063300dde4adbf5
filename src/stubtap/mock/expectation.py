"""
StubTap Request Expectation

One expected request, the canned response to send back and the repetition
bounds that decide when it is satisfied and when it is used up.

Lifecycle:
- created by a per-method factory on StubServer (get, post, ...)
- configured with chained calls (once, twice, any, many, min, max, delay)
- enqueued when reply() or reply_with_file() attaches the response
- count incremented on every delivery
- removed from the live queue once exhausted

Response bodies are a tagged union decided when the response is attached:
BytesBody, TextBody, JsonBody or StreamBody. A StreamBody on an expectation
that may be delivered more than once is drained a single time; the drained
bytes are teed to the first caller and then replace the body as a BytesBody,
so every later delivery replays the same buffer. If the source raises while
being drained, later deliveries raise ResponseStreamError instead of
replaying a partial buffer.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional, Union

from fastapi.concurrency import iterate_in_threadpool, run_in_threadpool

from ..common import file_chunks, normalize_body, normalize_headers, to_canonical_json
from ..errors import ResponseStreamError
from .delivery import ResponseSink
from .matcher import PathFilter, matches as request_matches

DEFAULT_CHUNK_SIZE = 65536

logger = logging.getLogger("stubtap.mock")


class HttpMethod(str, Enum):
    """HTTP methods an expectation can be registered for."""

    GET = 'GET'
    HEAD = 'HEAD'
    PUT = 'PUT'
    PATCH = 'PATCH'
    POST = 'POST'
    DELETE = 'DELETE'
    COPY = 'COPY'


@dataclass
class BytesBody:
    """Raw bytes, written as-is."""

    data: bytes

    def to_bytes(self) -> bytes:
        return self.data


@dataclass
class TextBody:
    """Plain text, written UTF-8 encoded."""

    text: str

    def to_bytes(self) -> bytes:
        return self.text.encode('utf-8')


@dataclass
class JsonBody:
    """Structured value, serialized to JSON when written."""

    value: Any

    def to_bytes(self) -> bytes:
        return to_canonical_json(self.value).encode('utf-8')


@dataclass
class StreamBody:
    """
    Lazy byte source.

    The source may be an async iterable, a sync iterable of chunks, or a
    file-like object with ``read()``. Most sources can only be consumed once.
    """

    source: Any
    chunk_size: int = DEFAULT_CHUNK_SIZE

    async def iter_chunks(self) -> AsyncIterator[bytes]:
        """
        Yield the source's chunks as bytes.

        Sync iterables and file reads run in the threadpool so a slow or
        blocking source does not stall other requests on the event loop.
        """
        source = self.source

        if hasattr(source, '__aiter__'):
            async for chunk in source:
                yield _as_bytes(chunk)
        elif hasattr(source, 'read'):
            try:
                while True:
                    chunk = await run_in_threadpool(source.read, self.chunk_size)
                    if not chunk:
                        break
                    yield _as_bytes(chunk)
            finally:
                if hasattr(source, 'close'):
                    await run_in_threadpool(source.close)
        else:
            async for chunk in iterate_in_threadpool(source):
                yield _as_bytes(chunk)


ResponseBody = Union[BytesBody, TextBody, JsonBody, StreamBody]


def _as_bytes(chunk: Union[bytes, bytearray, str]) -> bytes:
    if isinstance(chunk, str):
        return chunk.encode('utf-8')
    return bytes(chunk)


def make_response_body(body: Any) -> ResponseBody:
    """
    Classify a reply body into the ResponseBody union.

    Args:
        body: Value passed to reply()

    Returns:
        Tagged response body
    """
    if isinstance(body, (BytesBody, TextBody, JsonBody, StreamBody)):
        return body
    if body is None:
        return TextBody('')
    if isinstance(body, (bytes, bytearray, memoryview)):
        return BytesBody(bytes(body))
    if isinstance(body, str):
        return TextBody(body)
    if isinstance(body, (dict, list, tuple, int, float, bool)):
        return JsonBody(body)
    if hasattr(body, 'read') or hasattr(body, '__aiter__') or hasattr(body, '__next__'):
        return StreamBody(body)
    return JsonBody(body)


@dataclass
class ResponseDescriptor:
    """Canned response attached to an expectation."""

    status_code: int = 200
    body: ResponseBody = field(default_factory=lambda: TextBody(''))
    headers: Optional[Dict[str, Any]] = None
    # Set when a teed stream source raised before it was fully buffered
    stream_error: Optional[BaseException] = field(default=None, repr=False, compare=False)


class RequestExpectation:
    """
    An expected request and its canned response.

    Instances are created through StubServer's per-method factories and are
    not visible to matching until a response is attached.

    Example:
        server.post('/users', {'name': 'Jane'}).twice().reply(201, {'id': 1})
    """

    def __init__(
        self,
        server,
        method: str,
        url: str,
        body: Any = None,
        headers: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize expectation.

        Args:
            server: Owning StubServer; receives the expectation on reply()
            method: HTTP method, one of HttpMethod
            url: Exact path and query string to match
            body: Expected request body (str, bytes or structured value)
            headers: Expected request headers, matched as a subset
        """
        self.method = HttpMethod(method).value
        self.url = url
        self.body = normalize_body(body)
        self.headers = normalize_headers(headers)

        self.response: Optional[ResponseDescriptor] = None
        self.default_reply_headers: Dict[str, Any] = {}
        self.delay_ms = 0

        self.min_count = 1
        self.max_count: Union[int, float] = 1
        self.count = 0

        self._server = server
        self._enqueued = False
        self._body_lock = asyncio.Lock()

    # Response attachment

    def reply(
        self,
        status_code: int = 200,
        body: Any = None,
        headers: Optional[Dict[str, Any]] = None
    ):
        """
        Attach the response and enqueue this expectation.

        Calling reply() again overwrites the response; the expectation is
        not enqueued twice.

        Args:
            status_code: Response status (default 200)
            body: str, bytes, structured value, or a byte source
            headers: Response headers; server defaults are used if omitted

        Returns:
            The owning StubServer, for chaining further registrations
        """
        self.response = ResponseDescriptor(
            status_code=status_code or 200,
            body=make_response_body(body),
            headers=headers
        )
        return self._enqueue()

    def reply_with_file(
        self,
        status_code: int,
        file_path: Union[str, Path],
        headers: Optional[Dict[str, Any]] = None
    ):
        """
        Attach a response whose body is streamed from a file.

        Args:
            status_code: Response status
            file_path: File to stream; opened lazily on first delivery
            headers: Response headers

        Returns:
            The owning StubServer

        Raises:
            FileNotFoundError: If the file does not exist
        """
        path = Path(file_path)
        if not path.is_file():
            raise FileNotFoundError(f"Reply file not found: {path}")

        self.response = ResponseDescriptor(
            status_code=status_code or 200,
            body=StreamBody(file_chunks(path, DEFAULT_CHUNK_SIZE)),
            headers=headers
        )
        return self._enqueue()

    def _enqueue(self):
        if not self._enqueued:
            self._enqueued = True
            self._server.enqueue(self)
        return self._server

    # Repetition

    def many(
        self,
        min_count: Optional[int] = None,
        max_count: Optional[Union[int, float]] = None
    ) -> 'RequestExpectation':
        """
        Allow this expectation to match several requests.

        With no arguments the bounds become min=1, max=infinity. Setting one
        bound clamps the other so that min never exceeds max.

        Args:
            min_count: Minimum number of matching requests
            max_count: Maximum number of matching requests (math.inf for unbounded)

        Returns:
            This expectation

        Raises:
            ValueError: If a bound is negative
        """
        if min_count is None and max_count is None:
            min_count, max_count = 1, math.inf

        if min_count is not None:
            _check_bound(min_count)
            self.min_count = min_count
            if self.min_count > self.max_count:
                self.max_count = self.min_count

        if max_count is not None:
            _check_bound(max_count)
            self.max_count = max_count
            if self.min_count > self.max_count:
                self.min_count = self.max_count

        return self

    def min(self, number: int) -> 'RequestExpectation':
        return self.many(min_count=number)

    def max(self, number: Union[int, float]) -> 'RequestExpectation':
        return self.many(max_count=number)

    def once(self) -> 'RequestExpectation':
        return self.many(min_count=1, max_count=1)

    def twice(self) -> 'RequestExpectation':
        return self.many(min_count=1, max_count=2)

    def any(self) -> 'RequestExpectation':
        """Zero or more matching requests."""
        return self.many(min_count=0, max_count=math.inf)

    def delay(self, ms: int) -> 'RequestExpectation':
        """Wait ``ms`` milliseconds (without blocking the loop) before responding."""
        self.delay_ms = max(ms, 0)
        return self

    # State

    @property
    def is_satisfied(self) -> bool:
        return self.min_count <= self.count <= self.max_count

    @property
    def is_exhausted(self) -> bool:
        return self.count >= self.max_count

    def matches(
        self,
        method: str,
        url: str,
        body: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None,
        path_filter: Optional[PathFilter] = None
    ) -> bool:
        """Check an incoming request against this expectation."""
        return request_matches(self, method, url, body, headers, path_filter)

    def record_call(self) -> bool:
        """
        Count one delivery.

        Returns:
            True if the expectation is now exhausted and must be pruned
        """
        self.count += 1
        return self.is_exhausted

    # Delivery

    async def deliver(self, sink: ResponseSink) -> bool:
        """
        Count this call and write the response to the sink.

        Returns:
            True if the expectation is now exhausted
        """
        exhausted = self.record_call()
        await self.write_response(sink)
        return exhausted

    async def write_response(self, sink: ResponseSink) -> None:
        """
        Write status, headers and body to the sink.

        Stream bodies are piped straight through when the expectation is
        used at most once; otherwise they are teed into a buffer that
        replaces the body for later deliveries.
        """
        if self.delay_ms:
            await asyncio.sleep(self.delay_ms / 1000)

        response = self.response or ResponseDescriptor()
        headers = response.headers if response.headers is not None else self.default_reply_headers

        await sink.write_status_and_headers(response.status_code, headers)

        if isinstance(response.body, StreamBody):
            if self.max_count > 1:
                await self._tee_stream(response, sink)
            else:
                async for chunk in response.body.iter_chunks():
                    await sink.write_chunk(chunk)
        else:
            await sink.write_chunk(response.body.to_bytes())

        await sink.end()

    async def _tee_stream(self, response: ResponseDescriptor, sink: ResponseSink) -> None:
        async with self._body_lock:
            if response.stream_error is not None:
                raise ResponseStreamError(self.method, self.url) from response.stream_error

            body = response.body
            # A concurrent delivery may have finished draining while we waited
            if not isinstance(body, StreamBody):
                await sink.write_chunk(body.to_bytes())
                return

            buffered = []
            try:
                async for chunk in body.iter_chunks():
                    buffered.append(chunk)
                    await sink.write_chunk(chunk)
            except Exception as e:
                # The source is spent; later deliveries must not replay a partial buffer
                response.stream_error = e
                logger.error(f"Response stream for {self.method} {self.url} failed: {e}")
                raise

            response.body = BytesBody(b''.join(buffered))

    # Diagnostics

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'method': self.method,
            'url': self.url,
            'body': self.body,
            'headers': self.headers,
            'stats': {
                'count': self.count,
                'min': self.min_count,
                'max': self.max_count,
                'is_satisfied': self.is_satisfied,
                'is_exhausted': self.is_exhausted
            }
        }

    def __repr__(self) -> str:
        return (
            f"RequestExpectation({self.method} {self.url}, "
            f"count={self.count}, min={self.min_count}, max={self.max_count})"
        )


def _check_bound(value: Union[int, float]) -> None:
    if value < 0:
        raise ValueError(f"Repetition bounds must be >= 0, got {value}")
