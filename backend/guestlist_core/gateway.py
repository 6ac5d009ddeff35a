from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Dict, Optional

import httpx

from .config import DEFAULT_TIMEOUT, ClientSettings, StoreSettings
from .errors import RemoteStoreError, UnknownFieldError

logger = logging.getLogger(__name__)

RATE_LIMIT_RETRIES = 3
RATE_LIMIT_BACKOFF = 0.25


def extract_error_detail(response: httpx.Response | None) -> str | None:
    if response is None:
        return None
    try:
        payload = response.json()
    except ValueError:
        text = (response.text or "").strip()
        return text or None

    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            payload = error
        elif isinstance(error, str) and error.strip() and not payload.get("message"):
            return error.strip()
        for key in ("message", "detail", "error", "type"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


def extract_error_type(response: httpx.Response | None) -> str | None:
    if response is None:
        return None
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("type"), str):
            return error["type"]
        if isinstance(error, str):
            return error
    return None


def extract_unknown_field_name(detail: str) -> str | None:
    patterns = [
        r"unknown field name:?\s*\"([^\"]+)\"",
        r"could not find the '([^']+)' column",
        r"column\s+([\w\.]+)\s+does not exist",
    ]
    for pattern in patterns:
        match = re.search(pattern, detail, flags=re.IGNORECASE)
        if match and match.group(1):
            return match.group(1)
    return None


def raise_for_remote_error(response: httpx.Response) -> None:
    """Translate an error response from the remote store into a typed exception."""

    if response.is_success:
        return
    detail = extract_error_detail(response)
    error_type = extract_error_type(response) or ""
    if error_type == "UNKNOWN_FIELD_NAME" or (detail and "unknown field name" in detail.lower()):
        raise UnknownFieldError(extract_unknown_field_name(detail or ""), detail=detail)
    raise RemoteStoreError(
        f"Remote store request failed with status {response.status_code}: {detail or response.reason_phrase}",
        status_code=response.status_code,
        detail=detail,
    )


class RemoteGateway:
    """Shared async HTTP client for one remote endpoint.

    Holds a single ``httpx.AsyncClient`` so connections are reused, applies
    the fixed per-request timeout and the auth headers, and backs off on
    HTTP 429. Timeouts surface as ``httpx.TransportError`` like any other
    network failure.
    """

    def __init__(
        self,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
        rate_limit_retries: int = RATE_LIMIT_RETRIES,
        rate_limit_backoff: float = RATE_LIMIT_BACKOFF,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.rate_limit_retries = rate_limit_retries
        self.rate_limit_backoff = rate_limit_backoff
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers or {},
            timeout=httpx.Timeout(timeout),
            limits=httpx.Limits(max_connections=50, max_keepalive_connections=50),
            transport=transport,
        )

    @classmethod
    def for_remote_store(
        cls, settings: StoreSettings, transport: httpx.AsyncBaseTransport | None = None
    ) -> "RemoteGateway":
        headers = {
            "Authorization": f"Bearer {settings.api_key}",
            "Accept": "application/json",
        }
        return cls(settings.table_url, headers=headers, timeout=settings.timeout, transport=transport)

    @classmethod
    def for_checkin_api(
        cls, settings: ClientSettings, transport: httpx.AsyncBaseTransport | None = None
    ) -> "RemoteGateway":
        return cls(
            settings.api_url,
            headers={"Accept": "application/json"},
            timeout=settings.timeout,
            transport=transport,
        )

    @property
    def cookies(self) -> httpx.Cookies:
        return self._client.cookies

    def build_request(
        self,
        method: str,
        path: str = "",
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        content: bytes | None = None,
    ) -> httpx.Request:
        return self._client.build_request(
            method, self._url(path), params=params, json=json, headers=headers, content=content
        )

    async def send(self, request: httpx.Request) -> httpx.Response:
        attempt = 0
        while True:
            response = await self._client.send(request)
            if response.status_code != 429 or attempt >= self.rate_limit_retries:
                return response
            wait = self.rate_limit_backoff * 2**attempt
            logger.info("Remote store rate limited %s %s; retrying in %.2fs", request.method, request.url, wait)
            await response.aclose()
            await asyncio.sleep(wait)
            attempt += 1

    async def request(
        self,
        method: str,
        path: str = "",
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
    ) -> httpx.Response:
        return await self.send(self.build_request(method, path, params=params, json=json))

    async def request_json(
        self,
        method: str,
        path: str = "",
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
    ) -> Any:
        response = await self.request(method, path, params=params, json=json)
        raise_for_remote_error(response)
        try:
            return response.json()
        except ValueError as exc:
            raise RemoteStoreError(
                f"Remote store returned a malformed body for {method} {path or '/'}",
                status_code=response.status_code,
            ) from exc

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "RemoteGateway":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def _url(self, path: str) -> str:
        if not path:
            return self.base_url
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"
