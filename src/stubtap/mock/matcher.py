"""
StubTap Request Matcher

Exact request matching used to pair an inbound request with an expectation.

Checks, evaluated in order and short-circuiting on the first failure:
- HTTP method (case-sensitive)
- URL, after the server's path filter is applied to the incoming url
- Header subset (only truthy expected values are enforced)
- Body equivalence (JSON-aware, skipped for GET and DELETE)
"""

from typing import Any, Callable, Dict, Optional

from ..common import safe_json_parse

PathFilter = Callable[[str], str]

# Methods whose body is never compared
BODYLESS_METHODS = frozenset({'GET', 'DELETE'})

_NOT_JSON = object()


def does_body_match(expected: str, actual: str) -> bool:
    """
    Compare two bodies, structurally when both are JSON.

    Both bodies are parsed as JSON first. If both parse, the decoded values
    are compared (dict key order is irrelevant). Otherwise the raw strings
    must be identical.

    Args:
        expected: Body stored on the expectation
        actual: Body received from the client

    Returns:
        True if the bodies are equivalent
    """
    parsed_expected = safe_json_parse(expected, default=_NOT_JSON)
    parsed_actual = safe_json_parse(actual, default=_NOT_JSON)

    if parsed_expected is _NOT_JSON or parsed_actual is _NOT_JSON:
        return expected == actual

    return parsed_expected == parsed_actual


def do_headers_match(expected: Dict[str, Any], actual: Optional[Dict[str, Any]]) -> bool:
    """
    One-directional header check.

    Every expected header with a truthy value must be present on the incoming
    request with exactly that value. Extra incoming headers are ignored.

    Args:
        expected: Expectation headers (keys already lowercased)
        actual: Incoming request headers

    Returns:
        True if every enforced header matches
    """
    incoming = {key.lower(): value for key, value in (actual or {}).items()}

    for key, value in expected.items():
        if value and incoming.get(key) != value:
            return False

    return True


def apply_path_filter(url: str, path_filter: Optional[PathFilter]) -> str:
    """Run the incoming url through the path filter, if one is installed."""
    if path_filter and url:
        return path_filter(url)
    return url


def matches(
    expectation,
    method: str,
    url: str,
    body: Optional[str] = None,
    headers: Optional[Dict[str, Any]] = None,
    path_filter: Optional[PathFilter] = None
) -> bool:
    """
    Decide whether an incoming request satisfies an expectation.

    Args:
        expectation: RequestExpectation to test
        method: Incoming HTTP method
        url: Incoming path and query string
        body: Incoming body as text
        headers: Incoming headers
        path_filter: Optional transform applied to the incoming url only

    Returns:
        True on match
    """
    if expectation.method != method:
        return False

    if expectation.url != apply_path_filter(url, path_filter):
        return False

    if not do_headers_match(expectation.headers, headers):
        return False

    if method in BODYLESS_METHODS:
        return True

    return does_body_match(expectation.body, body or '')
