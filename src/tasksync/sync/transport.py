"""Calendar HTTP transport: paginated listing and multipart batch execution."""

from __future__ import annotations

import asyncio
import email.utils
import hashlib
import json
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence
from urllib.parse import quote

import httpx
from fastapi import status

from ..config import Settings
from .errors import ClientNotReadyError, CredentialError, TransportError
from .models import (
    SYNC_MARKER_KEY,
    CalendarEvent,
    Operation,
    OperationResult,
    events_path,
)
from .multipart import decode_batch_response, encode_batch, new_boundary
from .retry import backoff_delay_ms

logger = logging.getLogger(__name__)

LIST_PAGE_SIZE = 250
SYNC_FILTER = f"{SYNC_MARKER_KEY}=true"


class CredentialSource(Protocol):
    """What the transport needs from the credential provider."""

    async def ensure(self) -> bool: ...

    def invalidate(self) -> None: ...

    @property
    def access_token(self) -> Optional[str]: ...


@dataclass(slots=True)
class ListingResult:
    events: list[CalendarEvent]
    next_sync_token: Optional[str] = None
    filter_signature: str = ""
    incremental: bool = False
    raw_items: list[dict[str, Any]] = field(default_factory=list)


class CalendarTransport:
    """Talk to the Calendar API over a shared ``httpx.AsyncClient``.

    Every failure leaves this class as a ``TransportError`` (or a
    ``CredentialError``) so callers only ever deal with tagged errors.
    """

    def __init__(
        self,
        settings: Settings,
        credentials: CredentialSource,
        *,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._settings = settings
        self._credentials = credentials
        self._client = client
        self._owns_client = client is None
        self._client_lock = asyncio.Lock()
        self._sleep = sleep
        self._rng = rng

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        async with self._client_lock:
            if self._client is None:
                timeout = httpx.Timeout(self._settings.request_timeout, connect=10.0)
                limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
                self._client = httpx.AsyncClient(timeout=timeout, limits=limits)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    # ------------------------------------------------------------------
    # Paths and headers
    # ------------------------------------------------------------------
    def events_path(self, event_id: Optional[str] = None) -> str:
        return events_path(self._settings.calendar_id, event_id)

    async def _auth_headers(self) -> dict[str, str]:
        if not await self._credentials.ensure():
            raise CredentialError("No valid Google credential is available")
        token = self._credentials.access_token
        if not token:
            raise CredentialError("Credential provider returned an empty access token")
        return {"Authorization": f"Bearer {token}"}

    def filter_signature(self) -> str:
        """Digest of everything that shapes the listing query.

        A sync token is only valid for the exact filter it was issued under.
        """
        material = json.dumps(
            {
                "calendarId": self._settings.calendar_id,
                "privateExtendedProperty": [SYNC_FILTER],
                "singleEvents": False,
                "quotaUser": self._settings.quota_user or "",
            },
            sort_keys=True,
        )
        return hashlib.sha256(material.encode("utf-8")).hexdigest()[:32]

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------
    async def list_events(
        self,
        sync_token: Optional[str] = None,
        stored_signature: Optional[str] = None,
    ) -> ListingResult:
        """Fetch every sync-marked event, incrementally when a token is usable."""

        signature = self.filter_signature()
        token = sync_token if self._settings.use_sync_token else None
        if token and stored_signature != signature:
            logger.info("List filter changed since the last sync token; doing a full listing")
            token = None

        if token:
            try:
                return await self._list_all(token, signature)
            except TransportError as exc:
                if exc.status_code != status.HTTP_410_GONE:
                    raise
                logger.warning("Sync token rejected (410); falling back to a full listing")
        return await self._list_all(None, signature)

    async def _list_all(self, sync_token: Optional[str], signature: str) -> ListingResult:
        incremental = sync_token is not None
        params: dict[str, Any] = {
            "privateExtendedProperty": SYNC_FILTER,
            "maxResults": LIST_PAGE_SIZE,
            "singleEvents": "false",
            "showDeleted": "true" if incremental else "false",
        }
        if sync_token:
            params["syncToken"] = sync_token
        if self._settings.quota_user:
            params["quotaUser"] = self._settings.quota_user

        url = f"{self._settings.calendar_api_base}/calendars/{quote(self._settings.calendar_id, safe='')}/events"
        items: list[dict[str, Any]] = []
        next_sync_token: Optional[str] = None
        page_token: Optional[str] = None
        page = 1
        while True:
            if page_token:
                params["pageToken"] = page_token
            else:
                params.pop("pageToken", None)
            logger.debug("Fetching events page %d (incremental=%s)", page, incremental)
            payload = await self._get_json(url, params)
            page_items = payload.get("items") or []
            items.extend(item for item in page_items if isinstance(item, dict))
            page_token = payload.get("nextPageToken")
            if not page_token:
                next_sync_token = payload.get("nextSyncToken")
                break
            page += 1

        logger.info(
            "Fetched %d event(s) in %d page(s) (incremental=%s)", len(items), page, incremental
        )
        return ListingResult(
            events=[CalendarEvent.from_api(item) for item in items],
            next_sync_token=next_sync_token,
            filter_signature=signature,
            incremental=incremental,
            raw_items=items,
        )

    async def _get_json(self, url: str, params: dict[str, Any]) -> dict[str, Any]:
        attempts = max(1, self._settings.list_max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                response = await self._request("GET", url, params=dict(params))
                return self._decode_json(response)
            except TransportError as exc:
                if not exc.is_transient or attempt >= attempts:
                    raise TransportError(
                        exc.status_code,
                        f"events.list failed: {exc.detail}",
                        retry_after=exc.retry_after,
                    ) from exc
                await self._wait_before_retry(exc, attempt, "events.list")
        raise AssertionError("unreachable")  # pragma: no cover

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------
    async def execute_batch(self, operations: Sequence[Operation]) -> list[OperationResult]:
        """Send one multipart batch and return the sub-results in request order.

        A whole-response 409 still carries per-item parts and is decoded
        normally; any other status of 400 or above raises.
        """
        if not operations:
            return []

        boundary = new_boundary()
        body = encode_batch(operations, boundary).encode("utf-8")
        attempts = max(1, self._settings.list_max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                response = await self._request(
                    "POST",
                    str(self._settings.batch_url),
                    content=body,
                    headers={"Content-Type": f"multipart/mixed; boundary={boundary}"},
                    accept=(status.HTTP_409_CONFLICT,),
                )
                break
            except TransportError as exc:
                if not exc.is_transient or attempt >= attempts:
                    raise
                await self._wait_before_retry(exc, attempt, "batch")

        results = decode_batch_response(response.text, response.headers.get("content-type"))
        conflicts = sum(1 for result in results if result.status == status.HTTP_409_CONFLICT)
        if conflicts:
            logger.warning("Batch response contained %d conflict part(s)", conflicts)
        return results

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------
    async def _request(
        self,
        method: str,
        url: str,
        *,
        accept: tuple[int, ...] = (),
        **kwargs: Any,
    ) -> httpx.Response:
        client = await self._get_http_client()
        if client.is_closed:
            raise ClientNotReadyError("HTTP client is closed")
        headers = dict(kwargs.pop("headers", None) or {})
        headers.update(await self._auth_headers())
        try:
            response = await client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise TransportError(0, str(exc) or exc.__class__.__name__) from exc

        if response.status_code == status.HTTP_401_UNAUTHORIZED:
            self._credentials.invalidate()
            raise CredentialError("Calendar API rejected the access token (401)")
        if response.status_code >= 400 and response.status_code not in accept:
            raise TransportError(
                response.status_code,
                self._extract_error_detail(response),
                retry_after=_parse_retry_after(response.headers.get("retry-after")),
            )
        return response

    @staticmethod
    def _decode_json(response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise TransportError(status.HTTP_502_BAD_GATEWAY, f"Invalid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise TransportError(status.HTTP_502_BAD_GATEWAY, "Expected a JSON object")
        return payload

    @staticmethod
    def _extract_error_detail(response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text[:500]
        if isinstance(payload, dict):
            error = payload.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
        return response.text[:500]

    async def _wait_before_retry(self, exc: TransportError, attempt: int, label: str) -> None:
        if exc.retry_after is not None:
            delay_ms = int(exc.retry_after * 1000)
        else:
            delay_ms = backoff_delay_ms(
                attempt - 1,
                base_ms=self._settings.base_backoff_ms,
                cap_ms=self._settings.max_backoff_ms,
                rng=self._rng,
            )
        logger.warning(
            "%s attempt %d failed (%s: %s); retrying in %dms",
            label,
            attempt,
            exc.status_code,
            exc.detail,
            delay_ms,
        )
        await self._sleep(delay_ms / 1000)


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Read ``Retry-After`` as delta-seconds or an HTTP date."""

    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


__all__ = ["CalendarTransport", "CredentialSource", "ListingResult", "LIST_PAGE_SIZE"]
