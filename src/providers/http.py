from __future__ import annotations

import random
import time
from typing import Any

import httpx


RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
_MAX_RETRY_ATTEMPTS = 3
_RETRY_BASE_DELAY_SECONDS = 0.25
_RETRY_MAX_DELAY_SECONDS = 2.0
_IDEMPOTENT_METHODS = {"GET", "HEAD", "PUT", "DELETE", "OPTIONS"}
_UNSENT_REQUEST_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout)


class ProviderError(Exception):
    """Base exception for marketplace API failures."""

    provider = "provider"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        connectivity: bool = False,
        event: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.connectivity = connectivity
        self.event = event

    @property
    def category(self) -> str:
        if self.connectivity or self.status_code in RETRYABLE_STATUS_CODES:
            return "transient"
        if self.status_code is not None and 400 <= self.status_code < 500:
            return "terminal"
        return "unknown"

    @property
    def retryable(self) -> bool:
        return self.category == "transient"


def _backoff(attempt: int) -> None:
    delay = min(_RETRY_BASE_DELAY_SECONDS * (2 ** (attempt - 1)), _RETRY_MAX_DELAY_SECONDS)
    delay += random.uniform(0, delay * 0.2)
    time.sleep(delay)


def _can_retry(method: str, *, status_code: int | None = None, exc: httpx.HTTPError | None = None) -> bool:
    # POST is repeated only when the vendor cannot have acted on it.
    if method.upper() in _IDEMPOTENT_METHODS:
        return True
    if exc is not None:
        return isinstance(exc, _UNSENT_REQUEST_ERRORS)
    return status_code == 429


def request_with_retry(
    *,
    method: str,
    url: str,
    headers: dict[str, str],
    timeout_seconds: float,
    auth: tuple[str, str] | None = None,
    params: dict[str, Any] | None = None,
    json_payload: dict[str, Any] | None = None,
) -> httpx.Response:
    last_exc: httpx.HTTPError | None = None
    response: httpx.Response | None = None
    for attempt in range(1, _MAX_RETRY_ATTEMPTS + 1):
        try:
            with httpx.Client(timeout=timeout_seconds) as client:
                response = client.request(
                    method=method,
                    url=url,
                    auth=auth,
                    headers=headers,
                    params=params,
                    json=json_payload,
                )
        except httpx.HTTPError as exc:
            last_exc = exc
            if attempt >= _MAX_RETRY_ATTEMPTS or not _can_retry(method, exc=exc):
                raise
            _backoff(attempt)
            continue

        if (
            response.status_code in RETRYABLE_STATUS_CODES
            and attempt < _MAX_RETRY_ATTEMPTS
            and _can_retry(method, status_code=response.status_code)
        ):
            _backoff(attempt)
            continue
        return response

    if last_exc:
        raise last_exc
    assert response is not None
    return response


def parse_json(response: httpx.Response, error_cls: type[ProviderError], label: str) -> Any:
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError as exc:
        raise error_cls(f"{label} returned non-JSON response", status_code=response.status_code) from exc
