"""
Tests for StubTap Request Expectation

Tests the expectation entity including:
- Body and header normalisation
- Repetition bounds and convenience shortcuts
- Response body classification
- Delivery to a sink, count tracking and pruning signal
"""

import asyncio
import math

import pytest

from stubtap.mock.delivery import BufferedResponseSink
from stubtap.mock.expectation import (
    BytesBody,
    JsonBody,
    RequestExpectation,
    ResponseDescriptor,
    StreamBody,
    TextBody,
    make_response_body
)
from stubtap.mock.server import StubServer


@pytest.fixture
def server():
    """Fresh stub server."""
    return StubServer()


def deliver(expectation):
    """Deliver once into a buffered sink and return (exhausted, sink)."""
    sink = BufferedResponseSink()
    exhausted = asyncio.run(expectation.deliver(sink))
    return exhausted, sink


class TestExpectationConstruction:
    """Test RequestExpectation construction."""

    def test_defaults(self, server):
        """Test default bounds and state."""
        expectation = server.get('/url')

        assert expectation.method == 'GET'
        assert expectation.url == '/url'
        assert expectation.body == ''
        assert expectation.headers == {}
        assert expectation.min_count == 1
        assert expectation.max_count == 1
        assert expectation.count == 0
        assert expectation.response is None

    def test_structured_body_serialized(self, server):
        """Test dict bodies are stored as canonical JSON."""
        expectation = server.post('/url', {'a': 1, 'b': [1, 2]})

        assert expectation.body == '{"a":1,"b":[1,2]}'

    def test_bytes_body_decoded(self, server):
        """Test bytes bodies are stored as text."""
        expectation = server.put('/url', b'raw text')

        assert expectation.body == 'raw text'

    def test_headers_lowercased(self, server):
        """Test header names are lowercased at construction."""
        expectation = server.get('/url', {'Content-Type': 'application/json', 'X-Token': 'abc'})

        assert expectation.headers == {'content-type': 'application/json', 'x-token': 'abc'}

    def test_unknown_method_rejected(self, server):
        """Test methods outside the fixed set are refused."""
        with pytest.raises(ValueError):
            RequestExpectation(server, 'TRACE', '/url')

    def test_not_queued_before_reply(self, server):
        """Test an expectation is invisible until a response is attached."""
        server.get('/url')

        assert server.expectations == []
        assert server.has_route('GET', '/url') is False


class TestRepetition:
    """Test repetition bounds."""

    def test_once(self, server):
        expectation = server.get('/url').once()

        assert (expectation.min_count, expectation.max_count) == (1, 1)

    def test_twice(self, server):
        expectation = server.get('/url').twice()

        assert (expectation.min_count, expectation.max_count) == (1, 2)

    def test_any(self, server):
        """Test zero or more."""
        expectation = server.get('/url').any()

        assert expectation.min_count == 0
        assert expectation.max_count == math.inf

    def test_many_default(self, server):
        """Test many() with no bounds means one or more."""
        expectation = server.get('/url').many()

        assert expectation.min_count == 1
        assert expectation.max_count == math.inf

    def test_min_raises_max(self, server):
        """Test setting min above max raises max."""
        expectation = server.get('/url').min(3)

        assert (expectation.min_count, expectation.max_count) == (3, 3)

    def test_max_keeps_min(self, server):
        """Test raising max leaves min alone."""
        expectation = server.get('/url').max(4)

        assert (expectation.min_count, expectation.max_count) == (1, 4)

    def test_max_lowers_min(self, server):
        """Test lowering max below min clamps min."""
        expectation = server.get('/url').min(5).max(2)

        assert (expectation.min_count, expectation.max_count) == (2, 2)

    def test_negative_bound_rejected(self, server):
        """Test negative bounds raise ValueError."""
        with pytest.raises(ValueError):
            server.get('/url').min(-1)

    def test_chaining_returns_expectation(self, server):
        """Test repetition calls return the same expectation."""
        expectation = server.get('/url')

        assert expectation.twice() is expectation
        assert expectation.delay(10) is expectation

    def test_satisfied_and_exhausted(self, server):
        """Test derived state across deliveries."""
        expectation = server.get('/url').min(1).max(2)
        expectation.reply(200, 'ok')

        assert expectation.is_satisfied is False
        assert expectation.is_exhausted is False

        expectation.record_call()
        assert expectation.is_satisfied is True
        assert expectation.is_exhausted is False

        expectation.record_call()
        assert expectation.is_satisfied is True
        assert expectation.is_exhausted is True


class TestReply:
    """Test response attachment."""

    def test_reply_returns_server(self, server):
        """Test reply() returns the server for chaining."""
        result = server.get('/url').reply(200, 'ok')

        assert result is server
        assert len(server.expectations) == 1

    def test_reply_twice_overwrites(self, server):
        """Test a second reply() overwrites without enqueuing again."""
        expectation = server.get('/url')
        expectation.reply(200, 'first')
        expectation.reply(201, 'second')

        assert len(server.expectations) == 1
        assert expectation.response.status_code == 201
        assert expectation.response.body == TextBody('second')

    def test_default_descriptor_body(self):
        """Test a bare descriptor carries an empty text body."""
        descriptor = ResponseDescriptor()

        assert descriptor.status_code == 200
        assert descriptor.body == TextBody('')
        assert descriptor.headers is None

    def test_default_descriptor_bodies_not_shared(self):
        descriptor_a, descriptor_b = ResponseDescriptor(), ResponseDescriptor()

        assert descriptor_a.body is not descriptor_b.body

    def test_reply_with_missing_file(self, server):
        """Test reply_with_file() rejects a missing file."""
        with pytest.raises(FileNotFoundError):
            server.get('/url').reply_with_file(200, '/nonexistent/file.txt')


class TestMakeResponseBody:
    """Test ResponseBody classification."""

    def test_none(self):
        assert make_response_body(None) == TextBody('')

    def test_text(self):
        assert make_response_body('hello') == TextBody('hello')

    def test_bytes(self):
        assert make_response_body(b'\x00\x01') == BytesBody(b'\x00\x01')

    def test_structured(self):
        assert make_response_body({'a': 1}) == JsonBody({'a': 1})
        assert make_response_body([1, 2]) == JsonBody([1, 2])

    def test_generator_is_stream(self):
        """Test generators are lazy byte sources."""
        body = make_response_body(chunk for chunk in [b'a', b'b'])

        assert isinstance(body, StreamBody)

    def test_already_tagged(self):
        """Test tagged bodies pass through."""
        body = BytesBody(b'x')

        assert make_response_body(body) is body


class TestDeliver:
    """Test delivery to a sink."""

    def test_deliver_text(self, server):
        """Test status, headers and text body are written."""
        expectation = server.get('/url')
        expectation.reply(201, 'created', {'X-Test': 'yes'})

        exhausted, sink = deliver(expectation)

        assert exhausted is True
        assert expectation.count == 1
        assert sink.status_code == 201
        assert sink.headers == {'X-Test': 'yes'}
        assert sink.text == 'created'
        assert sink.finished is True

    def test_deliver_json(self, server):
        """Test structured bodies are serialized."""
        expectation = server.get('/url')
        expectation.reply(200, {'id': 1, 'tags': ['a']})

        _, sink = deliver(expectation)

        assert sink.text == '{"id":1,"tags":["a"]}'

    def test_deliver_counts_once_per_call(self, server):
        """Test count increments once per delivery."""
        expectation = server.get('/url').max(3)
        expectation.reply(200, 'ok')

        assert deliver(expectation)[0] is False
        assert deliver(expectation)[0] is False
        assert deliver(expectation)[0] is True
        assert expectation.count == 3

    def test_default_reply_headers(self, server):
        """Test server defaults apply when the reply sets no headers."""
        server.default_reply_headers({'X-Default': '1'})
        expectation = server.get('/url')
        expectation.reply(200, 'ok')

        _, sink = deliver(expectation)

        assert sink.headers == {'X-Default': '1'}

    def test_explicit_headers_override_defaults(self, server):
        """Test reply headers replace the server defaults."""
        server.default_reply_headers({'X-Default': '1'})
        expectation = server.get('/url')
        expectation.reply(200, 'ok', {'X-Own': '2'})

        _, sink = deliver(expectation)

        assert sink.headers == {'X-Own': '2'}

    def test_to_dict(self, server):
        """Test diagnostic view."""
        expectation = server.post('/url', 'body').twice()
        expectation.reply(200)

        data = expectation.to_dict()

        assert data['method'] == 'POST'
        assert data['url'] == '/url'
        assert data['body'] == 'body'
        assert data['stats'] == {
            'count': 0,
            'min': 1,
            'max': 2,
            'is_satisfied': False,
            'is_exhausted': False
        }
