"""HTTP plumbing for the Keycloak Admin REST API.

Every call is first sent to the modern ``/admin/realms`` tree and, when the
server answers 404, repeated against the legacy ``/auth/admin/realms`` tree
used by Keycloak releases that still carry the ``/auth`` context path.
Transient failures are retried with exponential backoff.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable, Mapping, Optional, Tuple
from urllib.parse import quote

import httpx

from . import __version__
from .tokens import AdminTokenError, AdminTokenProvider


logger = logging.getLogger("assistant.admin_http")

RETRY_STATUSES = frozenset({408, 429, 500, 502, 503, 504})
DEFAULT_RETRIES = 3
DEFAULT_BACKOFF_SECONDS = 0.2
MAX_JITTER_SECONDS = 0.15


class KeycloakAdminError(Exception):
    """Base exception for Keycloak Admin API errors."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body

    def body_preview(self, limit: int = 2048) -> Optional[str]:
        """Return a truncated preview of the response body for logging."""

        if self.response_body is None:
            return None
        if len(self.response_body) <= limit:
            return self.response_body
        return f"{self.response_body[:limit]}...<truncated>"


class KeycloakAccessDenied(KeycloakAdminError):
    """The service account lacks the realm-management roles for the call."""


class KeycloakRequestRejected(KeycloakAdminError):
    """Keycloak refused the payload with 400 Bad Request."""


def _quote_segment(value: object) -> str:
    return quote(str(value), safe="")


def ensure_admin_success(response: httpx.Response) -> None:
    """Raise a domain error unless ``response`` carries a 2xx status."""

    if response.status_code == 403:
        raise KeycloakAccessDenied(
            "Insufficient rights for the operation (realm-management roles required).",
            status_code=403,
            response_body=response.text,
        )
    if response.status_code == 400:
        body = response.text
        raise KeycloakRequestRejected(
            f"Request rejected (400). Details: {body}",
            status_code=400,
            response_body=body,
        )
    if not response.is_success:
        raise KeycloakAdminError(
            f"Keycloak responded with status {response.status_code} for "
            f"{response.request.method} {response.request.url.path}",
            status_code=response.status_code,
            response_body=response.text,
        )


def read_json(response: httpx.Response, default: Any = None) -> Any:
    if not response.content:
        return default
    try:
        return response.json()
    except ValueError as exc:
        raise KeycloakAdminError(
            "Keycloak returned a response that is not valid JSON",
            status_code=response.status_code,
            response_body=response.text,
        ) from exc


class KeycloakAdminHttp:
    """Authenticated admin API client with legacy path fallback and retries."""

    def __init__(
        self,
        base_url: str,
        token_provider: AdminTokenProvider,
        *,
        client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
        verify: str | bool = True,
        retries: int = DEFAULT_RETRIES,
        backoff: float = DEFAULT_BACKOFF_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        cleaned = (base_url or "").strip()
        if not cleaned:
            raise ValueError("Keycloak admin base URL must not be empty")
        self._base_url = cleaned.rstrip("/")
        self._tokens = token_provider
        self._client = client or httpx.Client(
            timeout=timeout,
            verify=verify,
            headers={"User-Agent": f"keycloak-assistant/{__version__}"},
        )
        self._retries = max(0, retries)
        self._backoff = backoff
        self._sleep = sleep

    @property
    def base_url(self) -> str:
        return self._base_url

    def admin_urls(self, *segments: object) -> Tuple[str, str]:
        """Return the modern and legacy URL for ``/admin/realms/<segments>``."""

        suffix = "".join(f"/{_quote_segment(segment)}" for segment in segments)
        return (
            f"{self._base_url}/admin/realms{suffix}",
            f"{self._base_url}/auth/admin/realms{suffix}",
        )

    def get(self, *segments: object, params: Optional[Mapping[str, Any]] = None) -> httpx.Response:
        return self._send_with_fallback("GET", segments, params=params)

    def post_json(
        self,
        *segments: object,
        body: Any,
        params: Optional[Mapping[str, Any]] = None,
    ) -> httpx.Response:
        return self._send_with_fallback("POST", segments, params=params, json=body)

    def put_json(self, *segments: object, body: Any) -> httpx.Response:
        return self._send_with_fallback("PUT", segments, json=body)

    def post(self, *segments: object) -> httpx.Response:
        return self._send_with_fallback("POST", segments)

    def delete(self, *segments: object) -> httpx.Response:
        return self._send_with_fallback("DELETE", segments)

    def delete_json(self, *segments: object, body: Any) -> httpx.Response:
        return self._send_with_fallback("DELETE", segments, json=body)

    def close(self) -> None:
        self._client.close()

    def _send_with_fallback(
        self,
        method: str,
        segments: Tuple[object, ...],
        **kwargs: Any,
    ) -> httpx.Response:
        modern_url, legacy_url = self.admin_urls(*segments)
        response = self._send(method, modern_url, **kwargs)
        if response.status_code != 404:
            return response
        logger.debug("%s %s returned 404, retrying legacy path", method, modern_url)
        response.close()
        return self._send(method, legacy_url, **kwargs)

    def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        reauthenticated = False
        attempt = 0
        while True:
            try:
                token = self._tokens.get_access_token()
            except AdminTokenError as exc:
                raise KeycloakAdminError(f"Admin API token unavailable: {exc}") from exc
            headers = {"Authorization": f"Bearer {token}"}
            try:
                response = self._client.request(method, url, headers=headers, **kwargs)
            except httpx.TransportError as exc:
                if attempt >= self._retries:
                    raise
                logger.warning(
                    "%s %s failed (%s), retry %d of %d", method, url, exc, attempt + 1, self._retries
                )
                self._pause(attempt)
                attempt += 1
                continue

            if response.status_code == 401 and not reauthenticated:
                logger.info("Admin token rejected for %s %s, refreshing token", method, url)
                response.close()
                self._tokens.invalidate()
                reauthenticated = True
                continue

            if response.status_code in RETRY_STATUSES and attempt < self._retries:
                logger.warning(
                    "%s %s returned %d, retry %d of %d",
                    method,
                    url,
                    response.status_code,
                    attempt + 1,
                    self._retries,
                )
                response.close()
                self._pause(attempt)
                attempt += 1
                continue

            return response

    def _pause(self, attempt: int) -> None:
        delay = self._backoff * (2 ** attempt) + random.uniform(0, MAX_JITTER_SECONDS)
        self._sleep(delay)


__all__ = [
    "KeycloakAccessDenied",
    "KeycloakAdminError",
    "KeycloakAdminHttp",
    "KeycloakRequestRejected",
    "ensure_admin_success",
    "read_json",
]
