"""Thin admin-API HTTP client shared by every provider."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterator

import requests

from keyledger.config import MAX_PAGES, REQUEST_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


@dataclass
class ProviderError(Exception):
    """Represents a failed provider request (non-2xx or embedded error payload)."""

    message: str
    status_code: int | None = None
    retryable: bool = False

    def __post_init__(self) -> None:
        if self.status_code in RETRYABLE_STATUS_CODES:
            self.retryable = True

    def __str__(self) -> str:
        if self.status_code is None:
            return self.message
        return f"{self.message} (status={self.status_code})"


class AdminHTTPClient:
    """Minimal JSON client for provider admin endpoints.

    The client never retries; a timeout or a connection failure surfaces as a
    retryable ``ProviderError`` and the orchestrator decides what to do.
    """

    def __init__(
        self,
        base_url: str,
        *,
        headers: dict[str, str] | None = None,
        timeout_seconds: int = REQUEST_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if headers:
            self.session.headers.update(headers)

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "AdminHTTPClient":
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.close()

    def get(self, path: str, *, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.request("GET", self._url(path), params=params)

    def paginate(
        self,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        cursor_param: str = "page",
        cursor_field: str = "next_page",
        max_pages: int = MAX_PAGES,
    ) -> Iterator[dict[str, Any]]:
        """Yield each item of ``data`` across pages of a cursor-paginated endpoint."""
        page_count = 0
        cursor: str | None = None

        while page_count < max_pages:
            query = dict(params or {})
            if cursor:
                query[cursor_param] = cursor

            payload = self.get(path, params=query)
            data = payload.get("data", [])
            if not isinstance(data, list):
                raise ProviderError("Unexpected response payload: data is not a list")

            for item in data:
                if isinstance(item, dict):
                    yield item

            page_count += 1
            cursor = payload.get(cursor_field) or None
            if not cursor or payload.get("has_more") is False:
                return

        raise ProviderError(f"Pagination exceeded {max_pages} pages. Narrow date range and retry.")

    def request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        data: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            response = self.session.request(
                method,
                url,
                params=params,
                data=data,
                headers=headers,
                timeout=self.timeout_seconds,
            )
        except requests.Timeout as exc:
            raise ProviderError(f"Request timed out after {self.timeout_seconds}s", retryable=True) from exc
        except requests.RequestException as exc:
            raise ProviderError(f"Request failed: {exc}", retryable=True) from exc

        if response.status_code >= 400:
            raise ProviderError(
                message=self._error_message(response),
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError("Provider returned non-JSON response", status_code=response.status_code) from exc

        if not isinstance(payload, dict):
            raise ProviderError("Unexpected response payload: root is not an object")

        embedded = embedded_error_message(payload)
        if embedded:
            raise ProviderError(embedded, status_code=response.status_code)
        return payload

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text.strip() or "Provider API request failed"
        if isinstance(payload, dict):
            message = embedded_error_message(payload)
            if message:
                return message
            if isinstance(payload.get("message"), str):
                return payload["message"]
        return response.text.strip() or "Provider API request failed"


def embedded_error_message(payload: dict[str, Any]) -> str | None:
    """Return the error text carried inside a 2xx payload, if any.

    Covers the ``{"error": {...}}`` shape used by OpenAI, Anthropic and
    OpenRouter and the ``ResponseMetadata.Error`` shape used by Volcengine.
    """
    err = payload.get("error")
    if isinstance(err, dict):
        return str(err.get("message") or err.get("type") or "Provider API returned an error")
    if isinstance(err, str) and err:
        return err

    metadata = payload.get("ResponseMetadata")
    if isinstance(metadata, dict) and isinstance(metadata.get("Error"), dict):
        meta_err = metadata["Error"]
        code = meta_err.get("Code")
        message = meta_err.get("Message") or "Volcengine API returned an error"
        return f"{code}: {message}" if code else str(message)
    return None
