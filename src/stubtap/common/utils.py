"""
StubTap Common Utilities

Shared helpers for body normalisation, header handling and byte sources.
"""

import json
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Union


def safe_json_parse(json_string: Optional[str], default: Any = None) -> Any:
    """
    Safely parse JSON string with error handling.

    Args:
        json_string: JSON string to parse
        default: Default value to return if parsing fails

    Returns:
        Parsed JSON object, or default if parsing fails

    Example:
        body = safe_json_parse(expectation.body, default={})
    """
    if not json_string:
        return default

    try:
        return json.loads(json_string, parse_constant=_reject_constant)
    except (json.JSONDecodeError, TypeError, ValueError):
        return default


def _reject_constant(name: str) -> Any:
    # NaN never equals itself, so NaN/Infinity are not treated as JSON
    raise ValueError(f"Non-standard JSON constant: {name}")


def to_canonical_json(value: Any) -> str:
    """Serialize a structured value to compact JSON (no whitespace between tokens)."""
    return json.dumps(value, separators=(',', ':'))


def normalize_body(body: Union[str, bytes, Dict[str, Any], list, None]) -> str:
    """
    Normalize an expected request body to a string.

    Structured values (dicts, lists) are serialized to canonical JSON,
    bytes are decoded as UTF-8 and None becomes the empty string.

    Args:
        body: Body as given by the caller

    Returns:
        Body as a string
    """
    if body is None:
        return ''
    if isinstance(body, (bytes, bytearray)):
        return decode_body(bytes(body))
    if isinstance(body, str):
        return body
    return to_canonical_json(body)


def decode_body(data: bytes) -> str:
    """Decode request bytes as UTF-8, replacing undecodable sequences."""
    return data.decode('utf-8', errors='replace')


def normalize_headers(headers: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Lowercase all header names.

    Args:
        headers: Header mapping, may be None

    Returns:
        New dictionary keyed by lowercased header names
    """
    if not headers:
        return {}
    return {str(key).lower(): value for key, value in headers.items()}


def file_chunks(file_path: Union[str, Path], chunk_size: int = 65536) -> Iterator[bytes]:
    """
    Lazily read a file in chunks.

    The file is opened on first iteration, not when the generator is created.

    Args:
        file_path: Path of the file to stream
        chunk_size: Maximum bytes per chunk

    Yields:
        Successive chunks of the file
    """
    with open(file_path, 'rb') as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            yield chunk
