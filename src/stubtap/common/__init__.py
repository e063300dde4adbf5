"""
StubTap Common Utilities

Shared utilities and helpers used across StubTap modules.
"""

from .utils import (
    safe_json_parse,
    to_canonical_json,
    normalize_body,
    decode_body,
    normalize_headers,
    file_chunks
)

__all__ = [
    'safe_json_parse',
    'to_canonical_json',
    'normalize_body',
    'decode_body',
    'normalize_headers',
    'file_chunks'
]
