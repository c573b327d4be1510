"""Tests for the Google credential provider."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from google.auth.exceptions import RefreshError

from tasksync.services.google_auth import CALENDAR_SCOPE, GoogleCredentialProvider


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _write_token(
    path: Path,
    *,
    expires_in: timedelta,
    scopes=None,
    refresh_token="refresh",
    token="access-1",
) -> None:
    expiry = (datetime.now(timezone.utc) + expires_in).strftime("%Y-%m-%dT%H:%M:%SZ")
    path.write_text(
        json.dumps(
            {
                "token": token,
                "refresh_token": refresh_token,
                "client_id": "client",
                "client_secret": "secret",
                "token_uri": "https://oauth2.googleapis.com/token",
                "scopes": scopes if scopes is not None else [CALENDAR_SCOPE],
                "expiry": expiry,
            }
        ),
        encoding="utf-8",
    )


@pytest.mark.anyio
async def test_missing_token_file(tmp_path: Path):
    provider = GoogleCredentialProvider(tmp_path / "token.json")

    assert await provider.ensure() is False
    assert provider.access_token is None


@pytest.mark.anyio
async def test_valid_token_is_used(tmp_path: Path):
    path = tmp_path / "token.json"
    _write_token(path, expires_in=timedelta(hours=1))
    provider = GoogleCredentialProvider(path)

    assert await provider.ensure() is True
    assert provider.access_token == "access-1"


@pytest.mark.anyio
async def test_token_without_calendar_scope_is_rejected(tmp_path: Path):
    path = tmp_path / "token.json"
    _write_token(path, expires_in=timedelta(hours=1), scopes=["openid"])

    assert await GoogleCredentialProvider(path).ensure() is False


@pytest.mark.anyio
async def test_expired_token_is_refreshed(tmp_path: Path, monkeypatch):
    path = tmp_path / "token.json"
    _write_token(path, expires_in=timedelta(hours=-1))
    provider = GoogleCredentialProvider(path)

    def fake_refresh(credentials) -> None:
        credentials.token = "access-2"
        credentials.expiry = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(hours=1)
        provider._store(credentials)

    monkeypatch.setattr(provider, "_refresh", fake_refresh)

    assert await provider.ensure() is True
    assert provider.access_token == "access-2"
    assert json.loads(path.read_text(encoding="utf-8"))["token"] == "access-2"


@pytest.mark.anyio
async def test_refresh_failure_reports_missing_credential(tmp_path: Path, monkeypatch):
    path = tmp_path / "token.json"
    _write_token(path, expires_in=timedelta(hours=-1))
    provider = GoogleCredentialProvider(path)

    def failing_refresh(credentials) -> None:
        raise RefreshError("invalid_grant")

    monkeypatch.setattr(provider, "_refresh", failing_refresh)

    assert await provider.ensure() is False


@pytest.mark.anyio
async def test_invalidate_reloads_file(tmp_path: Path):
    path = tmp_path / "token.json"
    _write_token(path, expires_in=timedelta(hours=1))
    provider = GoogleCredentialProvider(path)
    assert await provider.ensure() is True

    _write_token(path, expires_in=timedelta(hours=1), token="access-9")
    await provider.ensure()
    assert provider.access_token == "access-1"

    provider.invalidate()
    assert await provider.ensure() is True
    assert provider.access_token == "access-9"
