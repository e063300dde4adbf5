"""
StubTap Stub Server

Expectation queue and request dispatcher, with a FastAPI front end.

Features:
- Per-method registration (get, head, put, patch, post, delete, copy)
- First-match dispatch in registration order
- Repetition bounds with automatic pruning of exhausted expectations
- Streaming responses with buffer-and-replay for reusable expectations
- Body and path filters for volatile values
- Teardown verification via done()
"""

from __future__ import annotations  # Enable forward references for type hints

import json
import logging
import re
import threading
from dataclasses import dataclass
from typing import Any, AsyncIterable, Awaitable, Callable, Dict, List, Optional, Union

from fastapi import FastAPI, Request, Response
import uvicorn

from ..common import decode_body
from ..errors import UnmatchedRequestError, UnprocessedRequestsError
from .delivery import ASGIResponseSink, ResponseSink
from .expectation import HttpMethod, RequestExpectation
from .matcher import PathFilter

BodyFilter = Callable[[str], str]

NOT_FOUND_STATUS = 404
NOT_FOUND_HEADERS = {'Content-Type': 'text/plain'}
NOT_FOUND_BODY = b'No Matching Response!\n'

# Methods whose unmatched body is worth logging
BODY_LOGGED_METHODS = ('PUT', 'PATCH', 'POST')


@dataclass
class StubConfig:
    """Configuration for stub server behavior."""

    # Unmatched requests
    log_on_unmatched: bool = True
    throw_on_unmatched: bool = True

    # Teardown verification
    throw_on_unprocessed_requests: bool = True

    # Server options
    host: str = "127.0.0.1"
    port: int = 5678
    log_level: str = "info"


class ExpectationQueue:
    """
    Ordered, lock-guarded collection of live expectations.

    Insertion order is match priority. The only mutating operations are
    append() and claim(); claim() finds the first match, counts the call and
    prunes the entry if it is exhausted, all under one lock.
    """

    def __init__(self):
        self._items: List[RequestExpectation] = []
        self._lock = threading.Lock()

    def append(self, expectation: RequestExpectation) -> None:
        with self._lock:
            self._items.append(expectation)

    def claim(
        self,
        method: str,
        url: str,
        body: Optional[str],
        headers: Optional[Dict[str, Any]],
        path_filter: Optional[PathFilter] = None
    ) -> Optional[RequestExpectation]:
        """
        Atomically select the first matching expectation and count the call.

        Args:
            method: Incoming HTTP method
            url: Incoming path and query
            body: Incoming body text
            headers: Incoming headers
            path_filter: Filter applied to the incoming url

        Returns:
            The claimed expectation, or None if nothing matched
        """
        with self._lock:
            for index, expectation in enumerate(self._items):
                # max(0) leaves an expectation queued that can never answer
                if expectation.is_exhausted:
                    continue
                if expectation.matches(method, url, body, headers, path_filter):
                    if expectation.record_call():
                        del self._items[index]
                    return expectation
        return None

    def contains(
        self,
        method: str,
        url: str,
        body: Optional[str],
        headers: Optional[Dict[str, Any]],
        path_filter: Optional[PathFilter] = None
    ) -> bool:
        """Same predicate as claim(), without touching any state."""
        with self._lock:
            return any(
                not expectation.is_exhausted
                and expectation.matches(method, url, body, headers, path_filter)
                for expectation in self._items
            )

    def snapshot(self) -> List[RequestExpectation]:
        with self._lock:
            return list(self._items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class DeliveryResponse(Response):
    """
    Starlette response that hands the ASGI ``send`` to a sink writer.

    Lets a FastAPI route return a response whose status, headers and body
    are produced incrementally by the stub core.
    """

    def __init__(self, writer: Callable[[ResponseSink], Awaitable[None]]):
        super().__init__()
        self.writer = writer

    async def __call__(self, scope, receive, send) -> None:
        sink = ASGIResponseSink(send, head_only=scope.get('method') == 'HEAD')
        await self.writer(sink)

        if self.background is not None:
            await self.background()


class StubServer:
    """
    HTTP test double that serves canned responses for expected requests.

    Example:
        server = StubServer()
        server.get('/users/1').reply(200, {'id': 1}) \\
              .post('/users', {'name': 'Jane'}).reply(201)

        client = TestClient(server.get_app())
        client.get('/users/1')
        client.post('/users', json={'name': 'Jane'})

        server.done()  # raises if any expectation was not met
    """

    def __init__(self, config: Optional[StubConfig] = None):
        """
        Initialize stub server.

        Args:
            config: Optional StubConfig for server behavior
        """
        self.config = config or StubConfig()
        self.queue = ExpectationQueue()

        self._body_filter: Optional[BodyFilter] = None
        self._path_filter: Optional[PathFilter] = None
        self._default_reply_headers: Optional[Dict[str, Any]] = None

        self.logger = logging.getLogger("stubtap.mock")
        self.logger.setLevel(getattr(logging, self.config.log_level.upper()))

        self.app = self._create_app()

    # Registration

    def get(self, url: str, headers: Optional[Dict[str, Any]] = None) -> RequestExpectation:
        """Expect a GET request to ``url``."""
        return RequestExpectation(self, HttpMethod.GET, url, headers=headers)

    def head(self, url: str, headers: Optional[Dict[str, Any]] = None) -> RequestExpectation:
        """Expect a HEAD request to ``url``."""
        return RequestExpectation(self, HttpMethod.HEAD, url, headers=headers)

    def put(self, url: str, body: Any = None, headers: Optional[Dict[str, Any]] = None) -> RequestExpectation:
        """Expect a PUT request to ``url`` carrying ``body``."""
        return RequestExpectation(self, HttpMethod.PUT, url, body, headers)

    def patch(self, url: str, body: Any = None, headers: Optional[Dict[str, Any]] = None) -> RequestExpectation:
        """Expect a PATCH request to ``url`` carrying ``body``."""
        return RequestExpectation(self, HttpMethod.PATCH, url, body, headers)

    def post(self, url: str, body: Any = None, headers: Optional[Dict[str, Any]] = None) -> RequestExpectation:
        """Expect a POST request to ``url`` carrying ``body``."""
        return RequestExpectation(self, HttpMethod.POST, url, body, headers)

    def delete(self, url: str, body: Any = None, headers: Optional[Dict[str, Any]] = None) -> RequestExpectation:
        """Expect a DELETE request to ``url``. The body is stored but never compared."""
        return RequestExpectation(self, HttpMethod.DELETE, url, body, headers)

    def copy(self, url: str, body: Any = None, headers: Optional[Dict[str, Any]] = None) -> RequestExpectation:
        """Expect a COPY request to ``url`` carrying ``body``."""
        return RequestExpectation(self, HttpMethod.COPY, url, body, headers)

    def enqueue(self, expectation: RequestExpectation) -> None:
        """
        Make an expectation visible to matching.

        Called by RequestExpectation.reply(). The body filter and default
        reply headers in effect at this moment are applied to the expectation.

        Args:
            expectation: Expectation with an attached response
        """
        if self._body_filter and expectation.body:
            expectation.body = self._body_filter(expectation.body)

        if self._default_reply_headers:
            expectation.default_reply_headers = dict(self._default_reply_headers)

        self.queue.append(expectation)
        self.logger.debug(f"Registered expectation: {expectation.method} {expectation.url}")

    # Filters and defaults

    def filtering_request_body(self, body_filter: BodyFilter) -> StubServer:
        """Install a function applied to each registered expectation's body."""
        self._body_filter = body_filter
        return self

    def filtering_request_body_regex(
        self,
        pattern: Union[str, re.Pattern],
        replacement: str,
        count: int = 0
    ) -> StubServer:
        """
        Rewrite registered expectation bodies with a regex substitution.

        Args:
            pattern: Regular expression (string or compiled)
            replacement: Replacement string, as for re.sub
            count: Maximum replacements per body (0 = all)

        Returns:
            This server
        """
        self._body_filter = _regex_filter(pattern, replacement, count)
        return self

    def clear_body_filter(self) -> StubServer:
        self._body_filter = None
        return self

    def filtering_path(self, path_filter: PathFilter) -> StubServer:
        """Install a function applied to each incoming request url before matching."""
        self._path_filter = path_filter
        return self

    def filtering_path_regex(
        self,
        pattern: Union[str, re.Pattern],
        replacement: str,
        count: int = 0
    ) -> StubServer:
        """
        Rewrite incoming request urls with a regex substitution before matching.

        Example:
            server.filtering_path_regex(r'password=[^&]*', 'password=XXX')
            server.get('/url?password=XXX').reply(200)
            # matches GET /url?password=artischocko

        Args:
            pattern: Regular expression (string or compiled)
            replacement: Replacement string, as for re.sub
            count: Maximum replacements per url (0 = all)

        Returns:
            This server
        """
        self._path_filter = _regex_filter(pattern, replacement, count)
        return self

    def default_reply_headers(self, headers: Dict[str, Any]) -> StubServer:
        """Headers sent with every response that does not set its own."""
        self._default_reply_headers = headers
        return self

    # Inspection and verification

    @property
    def expectations(self) -> List[RequestExpectation]:
        """Snapshot of the live queue, in match order."""
        return self.queue.snapshot()

    def pending_expectations(self) -> List[RequestExpectation]:
        """Live expectations whose call count is outside their [min, max] bounds."""
        return [expectation for expectation in self.queue.snapshot() if not expectation.is_satisfied]

    def has_route(
        self,
        method: str,
        url: str,
        body: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Check whether a request would currently match, without consuming anything.

        Args:
            method: HTTP method
            url: Path and query
            body: Optional request body
            headers: Optional request headers

        Returns:
            True if a live expectation matches
        """
        return self.queue.contains(method, url, body or '', headers or {}, self._path_filter)

    def done(self, callback: Optional[Callable[[Optional[Exception]], Any]] = None) -> Any:
        """
        Verify every expectation reached its minimum call count.

        Args:
            callback: If given, receives the error (or None) instead of it
                being raised

        Returns:
            The callback's return value, if a callback was given

        Raises:
            UnprocessedRequestsError: If expectations are unmet, the policy
                is enabled and no callback was given
        """
        if not self.config.throw_on_unprocessed_requests:
            return callback(None) if callback else None

        error = None
        pending = self.pending_expectations()

        if pending:
            descriptions = [f"{expectation.method} {expectation.url}" for expectation in pending]
            error = UnprocessedRequestsError(
                'Unprocessed Requests in Assertions Queue: \n' + json.dumps(descriptions),
                descriptions
            )
            self.logger.warning(f"{len(pending)} expectation(s) not satisfied: {descriptions}")

        if callback:
            return callback(error)

        if error:
            raise error

        return None

    # Dispatch

    async def receive_body(self, chunks: AsyncIterable[bytes]) -> str:
        """Accumulate the request body until the transport signals end of input."""
        data = bytearray()
        async for chunk in chunks:
            data.extend(chunk)
        return decode_body(bytes(data))

    async def handle(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, Any]],
        body_chunks: AsyncIterable[bytes],
        sink: ResponseSink
    ) -> Optional[RequestExpectation]:
        """
        Transport entry point: read the body, then dispatch.

        Args:
            method: HTTP method
            url: Path and query
            headers: Request headers
            body_chunks: Async byte source for the body
            sink: Where the response is written

        Returns:
            The expectation that answered, or None if unmatched
        """
        body = await self.receive_body(body_chunks)
        return await self.dispatch(method, url, headers, body, sink)

    async def dispatch(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, Any]],
        body: str,
        sink: ResponseSink
    ) -> Optional[RequestExpectation]:
        """
        Match a fully received request and write the response.

        Raises:
            UnmatchedRequestError: If nothing matched and throw_on_unmatched is set
        """
        expectation = self._select(method, url, headers, body)

        if expectation is None:
            await self._write_not_found(sink)
        else:
            await expectation.write_response(sink)

        return expectation

    def _select(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, Any]],
        body: str
    ) -> Optional[RequestExpectation]:
        expectation = self.queue.claim(method, url, body, headers, self._path_filter)

        if expectation is not None:
            self.logger.debug(
                f"Matched: {method} {url} (count={expectation.count}, max={expectation.max_count})"
            )
            if expectation.is_exhausted:
                self.logger.debug(f"Pruned exhausted expectation: {expectation.method} {expectation.url}")
            return expectation

        if self.config.throw_on_unmatched:
            raise UnmatchedRequestError(method, url, body)

        if self.config.log_on_unmatched:
            self.logger.error(f"No Match For: {method} {url}")
            if method in BODY_LOGGED_METHODS:
                self.logger.error(body)

        return None

    async def _write_not_found(self, sink: ResponseSink) -> None:
        await sink.write_status_and_headers(NOT_FOUND_STATUS, NOT_FOUND_HEADERS)
        await sink.write_chunk(NOT_FOUND_BODY)
        await sink.end()

    # FastAPI front end

    def _create_app(self) -> FastAPI:
        """Create FastAPI application with a catch-all stub route."""
        app = FastAPI(
            title="StubTap Stub Server",
            description="HTTP test double serving canned responses",
            version="1.0.0",
            docs_url=None,
            redoc_url=None,
            openapi_url=None
        )

        @app.api_route("/{path:path}", methods=[method.value for method in HttpMethod])
        async def stub_request(request: Request, path: str):
            """Handle incoming requests and serve stubbed responses."""
            return await self._handle_request(request)

        return app

    async def _handle_request(self, request: Request) -> Response:
        url = _request_target(request.scope)
        body = await self.receive_body(request.stream())
        headers = dict(request.headers)

        expectation = self._select(request.method, url, headers, body)

        if expectation is None:
            return DeliveryResponse(self._write_not_found)

        return DeliveryResponse(expectation.write_response)

    def get_app(self) -> FastAPI:
        """
        Get the FastAPI app instance for testing or custom deployment.

        Returns:
            FastAPI application instance
        """
        return self.app

    def start(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        access_log: bool = True
    ):
        """
        Start the stub server (blocking).

        Args:
            host: Host to bind to (overrides config)
            port: Port to bind to (overrides config)
            access_log: Enable access logging
        """
        actual_host = host or self.config.host
        actual_port = port or self.config.port

        print("StubTap Stub Server starting...")
        print(f"   Host: {actual_host}:{actual_port}")
        print(f"   Expectations queued: {len(self.queue)}")
        print()

        uvicorn.run(
            self.app,
            host=actual_host,
            port=actual_port,
            log_level=self.config.log_level,
            access_log=access_log
        )


def _regex_filter(pattern: Union[str, re.Pattern], replacement: str, count: int = 0) -> Callable[[str], str]:
    compiled = re.compile(pattern)

    def apply(value: str) -> str:
        if value:
            value = compiled.sub(replacement, value, count=count)
        return value

    return apply


def _request_target(scope: Dict[str, Any]) -> str:
    """Rebuild the raw path and query string of an ASGI request."""
    raw_path = scope.get('raw_path')
    if raw_path:
        path = raw_path.split(b'?', 1)[0].decode('latin-1')
    else:
        path = scope.get('path', '/')
    query = scope.get('query_string', b'').decode('latin-1')
    return f"{path}?{query}" if query else path


def create_stub_server(
    log_on_unmatched: bool = True,
    throw_on_unmatched: bool = True,
    throw_on_unprocessed_requests: bool = True,
    host: str = "127.0.0.1",
    port: int = 5678,
    log_level: str = "info"
) -> StubServer:
    """
    Convenience function to create and configure a stub server.

    Args:
        log_on_unmatched: Log unmatched requests when not raising
        throw_on_unmatched: Raise UnmatchedRequestError for unmatched requests
        throw_on_unprocessed_requests: Make done() fail on unmet expectations
        host: Host to bind to
        port: Port to bind to
        log_level: Logging level name

    Returns:
        Configured StubServer instance

    Example:
        server = create_stub_server(throw_on_unmatched=False)
        server.get('/health').any().reply(200, 'ok')
    """
    config = StubConfig(
        log_on_unmatched=log_on_unmatched,
        throw_on_unmatched=throw_on_unmatched,
        throw_on_unprocessed_requests=throw_on_unprocessed_requests,
        host=host,
        port=port,
        log_level=log_level
    )

    return StubServer(config=config)
