"""
StubTap Mock Module

HTTP test double: expectation queue, request matching and response delivery.

This module provides:
- FastAPI-based stub server
- Exact request matcher (method, url, header subset, JSON-aware body)
- Request expectations with repetition bounds
- Streaming response delivery with buffer-and-replay
"""

from .server import StubServer, StubConfig, ExpectationQueue, DeliveryResponse, create_stub_server
from .matcher import matches, does_body_match, do_headers_match
from .expectation import (
    HttpMethod,
    RequestExpectation,
    ResponseDescriptor,
    BytesBody,
    TextBody,
    JsonBody,
    StreamBody,
    make_response_body
)
from .delivery import ResponseSink, ASGIResponseSink, BufferedResponseSink

__all__ = [
    # Server
    'StubServer',
    'StubConfig',
    'ExpectationQueue',
    'DeliveryResponse',
    'create_stub_server',

    # Matcher
    'matches',
    'does_body_match',
    'do_headers_match',

    # Expectation
    'HttpMethod',
    'RequestExpectation',
    'ResponseDescriptor',
    'BytesBody',
    'TextBody',
    'JsonBody',
    'StreamBody',
    'make_response_body',

    # Delivery
    'ResponseSink',
    'ASGIResponseSink',
    'BufferedResponseSink',
]
