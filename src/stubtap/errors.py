"""
StubTap Errors

Failures that can reach the embedding test:
- an inbound request that no expectation matched
- expectations left unsatisfied at teardown
- a reusable stream response whose source failed while being buffered
"""

from typing import List, Optional


class StubTapError(Exception):
    """Base class for errors raised by the stub server."""


class UnmatchedRequestError(StubTapError):
    """Raised when an inbound request matches no live expectation."""

    def __init__(self, method: str, url: str, body: Optional[str] = None):
        self.method = method
        self.url = url
        self.body = body
        super().__init__(f"No Match For: {method} {url}")


class UnprocessedRequestsError(StubTapError):
    """Raised by ``done()`` when expectations never reached their minimum count."""

    def __init__(self, message: str, pending: List[str]):
        self.pending = pending
        super().__init__(message)


class ResponseStreamError(StubTapError):
    """Raised when a reusable stream response failed before it was fully buffered."""

    def __init__(self, method: str, url: str):
        self.method = method
        self.url = url
        super().__init__(f"Response stream for {method} {url} failed on an earlier delivery")
