"""Encode batch requests and decode ``multipart/mixed`` batch responses.

Response grammar accepted by the decoder::

    response    := preamble? (delimiter CRLF part)* close-delimiter epilogue?
    delimiter   := "--" boundary
    close       := "--" boundary "--"
    part        := outer-headers CRLF status-line CRLF inner-headers CRLF body?
    status-line := "HTTP/" version SP status-code (SP reason)?

Line endings may be CRLF or bare LF. A part without a body (for example a
204) decodes to a bodiless result; a part without a status line decodes to a
500 result so that one malformed part never hides its siblings.
"""

from __future__ import annotations

import json
import logging
import re
import secrets
from typing import Iterable, Iterator, Optional, Sequence
from urllib.parse import urlsplit

from .errors import TransportError
from .models import Operation, OperationResult

logger = logging.getLogger(__name__)

CONTENT_ID_PREFIX = "item-"

_BOUNDARY_PARAM = re.compile(r'boundary\s*=\s*"?([^";,\s]+)"?', re.IGNORECASE)
_STATUS_LINE = re.compile(r"^HTTP/\d(?:\.\d)?\s+(\d{3})\b")
_ITEM_ID = re.compile(r"^item-(\d+)$")


def new_boundary() -> str:
    return f"batch_{secrets.token_hex(16)}"


def normalize_path(path: str) -> str:
    """Reduce a URL or path to an absolute request path."""

    if path.startswith(("http://", "https://")):
        parts = urlsplit(path)
        path = parts.path + (f"?{parts.query}" if parts.query else "")
    if not path.startswith("/"):
        path = "/" + path
    return path


def encode_batch(operations: Sequence[Operation], boundary: str) -> str:
    """Render one ``multipart/mixed`` body with a part per operation.

    Parts carry ``Content-ID: <item-N>`` where N is the 1-based position, so
    responses can be matched back regardless of their order.
    """
    chunks: list[str] = []
    for index, operation in enumerate(operations, start=1):
        chunks.append(f"--{boundary}\r\n")
        chunks.append("Content-Type: application/http\r\n")
        chunks.append(f"Content-ID: <{CONTENT_ID_PREFIX}{index}>\r\n\r\n")
        chunks.append(f"{operation.method} {normalize_path(operation.path)}\r\n")
        for name, value in operation.headers.items():
            chunks.append(f"{name}: {value}\r\n")
        if operation.body is not None:
            chunks.append("Content-Type: application/json; charset=UTF-8\r\n\r\n")
            chunks.append(json.dumps(operation.body, ensure_ascii=False, separators=(",", ":")))
        else:
            chunks.append("\r\n")
        chunks.append("\r\n")
    chunks.append(f"--{boundary}--\r\n")
    return "".join(chunks)


def normalize_content_id(value: Optional[str]) -> Optional[str]:
    """``<response-item-3>`` becomes ``item-3``."""

    if not value:
        return None
    cleaned = value.strip().strip("<>").strip()
    if cleaned.startswith("response-"):
        cleaned = cleaned[len("response-"):]
    return cleaned or None


def find_boundary(content_type: Optional[str], body: str) -> Optional[str]:
    """Take the boundary from the content type, else from the first delimiter."""

    if content_type:
        match = _BOUNDARY_PARAM.search(content_type)
        if match:
            return match.group(1)
    for line in body.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if stripped.startswith("--") and len(stripped) > 2:
            candidate = stripped[2:]
            if candidate.endswith("--"):
                candidate = candidate[:-2]
            return candidate or None
        # Only leading blank lines may precede the first delimiter.
        return None
    return None


class MultipartResponseParser:
    """Split a batch response into parts and decode each part."""

    def __init__(self, boundary: str) -> None:
        self._delimiter = f"--{boundary}"
        self._close = f"--{boundary}--"

    def parse(self, body: str) -> list[OperationResult]:
        results = [self._parse_part(lines) for lines in self._split(body.splitlines())]
        return sort_by_content_id(results)

    def _split(self, lines: Iterable[str]) -> Iterator[list[str]]:
        current: Optional[list[str]] = None
        for line in lines:
            marker = line.rstrip()
            if marker == self._close:
                if current is not None:
                    yield current
                return
            if marker == self._delimiter:
                if current is not None:
                    yield current
                current = []
                continue
            if current is not None:
                current.append(line)
        # Missing close delimiter: keep what was read.
        if current is not None:
            yield current

    def _parse_part(self, lines: list[str]) -> OperationResult:
        position = 0
        outer, position = _read_headers(lines, position)
        content_id = normalize_content_id(outer.get("content-id"))

        while position < len(lines) and not lines[position].strip():
            position += 1
        status_match = (
            _STATUS_LINE.match(lines[position].strip()) if position < len(lines) else None
        )
        if status_match is None:
            logger.warning("Batch part %s has no HTTP status line", content_id)
            return OperationResult(
                status=500,
                body={"error": {"message": "Failed to parse batch response part."}},
                content_id=content_id,
            )
        status = int(status_match.group(1))
        inner, position = _read_headers(lines, position + 1)

        raw_body = "\n".join(lines[position:]).strip()
        return OperationResult(
            status=status,
            body=_decode_body(raw_body),
            content_id=content_id,
            headers=inner,
        )


def _read_headers(lines: list[str], position: int) -> tuple[dict[str, str], int]:
    """Read ``Name: value`` lines up to and including the blank terminator."""

    headers: dict[str, str] = {}
    while position < len(lines):
        line = lines[position].rstrip("\r")
        position += 1
        if not line.strip():
            break
        if ":" not in line:
            # Not a header; let the caller see it again.
            position -= 1
            break
        name, value = line.split(":", 1)
        headers[name.strip().lower()] = value.strip()
    return headers, position


def _decode_body(raw: str) -> Optional[dict]:
    if not raw:
        return None
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        suffix = "…" if len(raw) > 200 else ""
        return {"message": raw[:200] + suffix}
    return decoded if isinstance(decoded, dict) else {"data": decoded}


def sort_by_content_id(results: list[OperationResult]) -> list[OperationResult]:
    """Restore request order from ``item-N`` ids; unknown ids keep arrival order last."""

    def key(entry: tuple[int, OperationResult]) -> tuple[int, int]:
        arrival, result = entry
        match = _ITEM_ID.match(result.content_id or "")
        if match:
            return (0, int(match.group(1)))
        return (1, arrival)

    return [result for _, result in sorted(enumerate(results), key=key)]


def decode_batch_response(body: str, content_type: Optional[str]) -> list[OperationResult]:
    boundary = find_boundary(content_type, body)
    if boundary is None:
        raise TransportError(502, "Batch response did not contain a multipart boundary")
    return MultipartResponseParser(boundary).parse(body)


__all__ = [
    "CONTENT_ID_PREFIX",
    "MultipartResponseParser",
    "decode_batch_response",
    "encode_batch",
    "find_boundary",
    "new_boundary",
    "normalize_content_id",
    "normalize_path",
    "sort_by_content_id",
]
