"""
StubTap - embeddable HTTP test double

Declare the requests a test expects and the responses to return, serve them
over HTTP, then verify every expected request arrived.

Usage:
    from stubtap import create_stub_server

    server = create_stub_server()
    server.get('/users/1').reply(200, {'id': 1})
    ...
    server.done()
"""

from .mock import (
    StubServer,
    StubConfig,
    RequestExpectation,
    HttpMethod,
    BufferedResponseSink,
    create_stub_server
)
from .errors import (
    ResponseStreamError,
    StubTapError,
    UnmatchedRequestError,
    UnprocessedRequestsError
)

__all__ = [
    'StubServer',
    'StubConfig',
    'RequestExpectation',
    'HttpMethod',
    'BufferedResponseSink',
    'create_stub_server',
    'ResponseStreamError',
    'StubTapError',
    'UnmatchedRequestError',
    'UnprocessedRequestsError',
]

__version__ = '1.0.0'
