"""Tests for batch request encoding and multipart response decoding."""

from __future__ import annotations

import json

import pytest

from tasksync.sync.errors import TransportError
from tasksync.sync.models import Operation, OperationKind
from tasksync.sync.multipart import (
    decode_batch_response,
    encode_batch,
    find_boundary,
    normalize_content_id,
    normalize_path,
)


def _ops() -> list[Operation]:
    return [
        Operation(
            method="POST",
            path="/calendar/v3/calendars/primary/events",
            kind=OperationKind.INSERT,
            body={"summary": "Café"},
        ),
        Operation(
            method="DELETE",
            path="https://www.googleapis.com/calendar/v3/calendars/primary/events/e1",
            kind=OperationKind.DELETE,
            headers={"If-Match": '"etag-1"'},
        ),
    ]


def test_encode_batch_layout():
    body = encode_batch(_ops(), "b1")

    assert body == (
        "--b1\r\n"
        "Content-Type: application/http\r\n"
        "Content-ID: <item-1>\r\n\r\n"
        "POST /calendar/v3/calendars/primary/events\r\n"
        "Content-Type: application/json; charset=UTF-8\r\n\r\n"
        '{"summary":"Café"}'
        "\r\n"
        "--b1\r\n"
        "Content-Type: application/http\r\n"
        "Content-ID: <item-2>\r\n\r\n"
        "DELETE /calendar/v3/calendars/primary/events/e1\r\n"
        'If-Match: "etag-1"\r\n'
        "\r\n"
        "\r\n"
        "--b1--\r\n"
    )


def test_normalize_path():
    assert normalize_path("calendars/x/events") == "/calendars/x/events"
    assert normalize_path("https://host/a/b?c=1") == "/a/b?c=1"


def test_normalize_content_id():
    assert normalize_content_id("<response-item-3>") == "item-3"
    assert normalize_content_id(" <item-1> ") == "item-1"
    assert normalize_content_id("") is None


class TestFindBoundary:
    def test_from_content_type(self):
        assert find_boundary('multipart/mixed; boundary="batch_abc"', "") == "batch_abc"

    def test_from_body(self):
        assert find_boundary(None, "\r\n--batch_xyz\r\nContent-Type: x\r\n") == "batch_xyz"

    def test_body_must_start_with_delimiter(self):
        assert find_boundary("application/json", "not multipart\n--later") is None


def _part(content_id: str, status_line: str, body: dict | None = None) -> str:
    lines = [
        "--resp",
        "Content-Type: application/http",
        f"Content-ID: <response-{content_id}>",
        "",
        status_line,
        "Content-Type: application/json; charset=UTF-8",
        "",
    ]
    if body is not None:
        lines.append(json.dumps(body))
    return "\r\n".join(lines) + "\r\n"


def test_decode_reorders_by_content_id():
    raw = (
        _part("item-2", "HTTP/1.1 204 No Content")
        + _part("item-1", "HTTP/1.1 200 OK", {"id": "new-1"})
        + "--resp--\r\n"
    )
    results = decode_batch_response(raw, "multipart/mixed; boundary=resp")

    assert [r.content_id for r in results] == ["item-1", "item-2"]
    assert results[0].status == 200
    assert results[0].body == {"id": "new-1"}
    assert results[1].status == 204
    assert results[1].body is None


def test_decode_accepts_bare_lf_and_missing_close():
    raw = _part("item-1", "HTTP/1.1 404 Not Found", {"error": {"message": "gone"}}).replace(
        "\r\n", "\n"
    )
    (result,) = decode_batch_response(raw, None)

    assert result.status == 404
    assert result.error_message == "gone"


def test_part_without_status_line_becomes_500():
    raw = (
        "--resp\r\nContent-Type: application/http\r\nContent-ID: <response-item-1>\r\n\r\n"
        "garbage\r\n"
        + _part("item-2", "HTTP/1.1 200 OK", {"id": "e2"})
        + "--resp--"
    )
    first, second = decode_batch_response(raw, "multipart/mixed; boundary=resp")

    assert first.status == 500
    assert second.status == 200


def test_non_json_body_is_truncated_into_message():
    raw = _part("item-1", "HTTP/1.1 502 Bad Gateway") + "x" * 300 + "\r\n--resp--"
    (result,) = decode_batch_response(raw, "multipart/mixed; boundary=resp")

    assert result.body["message"] == "x" * 200 + "…"


def test_error_reason_from_errors_list():
    raw = _part(
        "item-1",
        "HTTP/1.1 403 Forbidden",
        {"error": {"errors": [{"reason": "rateLimitExceeded"}], "message": "slow down"}},
    ) + "--resp--"
    (result,) = decode_batch_response(raw, "multipart/mixed; boundary=resp")

    assert result.error_reason == "rateLimitExceeded"


def test_missing_boundary_raises():
    with pytest.raises(TransportError) as excinfo:
        decode_batch_response("{}", "application/json")
    assert excinfo.value.status_code == 502
