"""Client-credentials token cache for the Keycloak Admin API."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

import httpx

from .config import AdminApiOptions


logger = logging.getLogger("assistant.tokens")

REFRESH_MARGIN_SECONDS = 30
DEFAULT_LIFETIME_SECONDS = 300


class AdminTokenError(RuntimeError):
    """Raised when the admin token endpoint does not hand out a usable token."""


def build_token_url(options: AdminApiOptions) -> str:
    realm_path = "/auth/realms" if options.use_legacy_auth_path else "/realms"
    return f"{options.base_url.rstrip('/')}{realm_path}/{options.realm}/protocol/openid-connect/token"


class AdminTokenProvider:
    """Obtain and cache an access token, refreshing it shortly before expiry."""

    def __init__(
        self,
        options: AdminApiOptions,
        *,
        client: Optional[httpx.Client] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._options = options
        self._client = client or httpx.Client(timeout=options.timeout, verify=options.verify)
        self._clock = clock
        self._lock = threading.Lock()
        self._token: Optional[str] = None
        self._expires_at = 0.0

    @property
    def token_url(self) -> str:
        return build_token_url(self._options)

    def _cached(self) -> Optional[str]:
        if self._token and self._clock() < self._expires_at - REFRESH_MARGIN_SECONDS:
            return self._token
        return None

    def get_access_token(self) -> str:
        token = self._cached()
        if token is not None:
            return token

        with self._lock:
            token = self._cached()
            if token is not None:
                return token
            return self._refresh()

    def invalidate(self) -> None:
        with self._lock:
            self._token = None
            self._expires_at = 0.0

    def _refresh(self) -> str:
        form = {
            "grant_type": "client_credentials",
            "client_id": self._options.client_id,
            "client_secret": self._options.client_secret,
        }
        logger.debug("Requesting admin token from %s", self.token_url)
        try:
            response = self._client.post(self.token_url, data=form)
        except httpx.RequestError as exc:
            raise AdminTokenError(f"Failed to contact token endpoint: {exc}") from exc

        if response.status_code >= 400:
            raise AdminTokenError(
                f"Token endpoint responded with status {response.status_code}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise AdminTokenError("Invalid token response") from exc
        if not isinstance(payload, dict):
            raise AdminTokenError("Invalid token response")

        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise AdminTokenError("No access_token in token response")

        try:
            lifetime = int(payload.get("expires_in") or 0)
        except (TypeError, ValueError):
            lifetime = 0
        if lifetime <= 0:
            lifetime = DEFAULT_LIFETIME_SECONDS

        self._token = access_token
        self._expires_at = self._clock() + lifetime
        logger.debug("Admin token refreshed, valid for %s seconds", lifetime)
        return access_token


__all__ = ["AdminTokenError", "AdminTokenProvider", "build_token_url"]
