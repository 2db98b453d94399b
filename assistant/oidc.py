"""OpenID Connect authorization-code login (with PKCE) against Keycloak."""
from __future__ import annotations

import base64
import hashlib
import json
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple
from urllib.parse import urlencode

import httpx

from .config import KeycloakOptions


logger = logging.getLogger("assistant.oidc")

DISCOVERY_TTL_SECONDS = 6 * 60 * 60

ROLE_USER = "assistant-user"
ROLE_ADMIN = "assistant-admin"


class OIDCError(RuntimeError):
    """Raised when the identity provider cannot complete a login step."""


def _encode_code_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("utf-8").rstrip("=")


def generate_pkce_pair() -> Tuple[str, str]:
    verifier = secrets.token_urlsafe(64)
    challenge = _encode_code_challenge(verifier)
    return verifier, challenge


def decode_token_claims(token: Optional[str]) -> Dict[str, Any]:
    """Read the payload segment of a JWT without verifying its signature.

    Only used for tokens received directly from the token endpoint.
    """

    if not token or token.count(".") < 2:
        return {}
    payload = token.split(".")[1]
    payload += "=" * (-len(payload) % 4)
    try:
        decoded = json.loads(base64.urlsafe_b64decode(payload.encode("ascii")))
    except ValueError:
        return {}
    return decoded if isinstance(decoded, dict) else {}


@dataclass(frozen=True)
class Principal:
    username: str
    email: Optional[str] = None
    roles: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return ROLE_ADMIN in self.roles

    @property
    def is_user(self) -> bool:
        return ROLE_USER in self.roles or self.is_admin

    def to_session(self) -> Dict[str, Any]:
        return {"username": self.username, "email": self.email, "roles": sorted(self.roles)}

    @classmethod
    def from_session(cls, data: object) -> Optional["Principal"]:
        if not isinstance(data, Mapping):
            return None
        username = str(data.get("username") or "").strip()
        if not username:
            return None
        roles = data.get("roles") or []
        return cls(
            username=username,
            email=data.get("email") or None,
            roles=frozenset(str(role) for role in roles if role),
        )

    @classmethod
    def from_claims(cls, userinfo: Mapping[str, Any], access_claims: Mapping[str, Any]) -> "Principal":
        merged: Dict[str, Any] = dict(access_claims)
        merged.update(userinfo)
        username = (
            merged.get("preferred_username") or merged.get("name") or merged.get("email") or ""
        )
        roles: Iterable[str] = ()
        for source in (userinfo, access_claims):
            realm_access = source.get("realm_access")
            if isinstance(realm_access, Mapping) and isinstance(realm_access.get("roles"), list):
                roles = realm_access["roles"]
                break
        return cls(
            username=str(username).strip(),
            email=merged.get("email") or None,
            roles=frozenset(str(role) for role in roles if role),
        )


class OIDCClient:
    """Thin client for the realm's discovery, authorize, token and userinfo endpoints."""

    def __init__(
        self,
        options: KeycloakOptions,
        *,
        client: Optional[httpx.Client] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._options = options
        self._client = client or httpx.Client(timeout=10.0, verify=options.verify)
        self._clock = clock
        self._lock = threading.Lock()
        self._discovery: Optional[Dict[str, Any]] = None
        self._discovered_at = 0.0

    @property
    def options(self) -> KeycloakOptions:
        return self._options

    def get_discovery_doc(self, force: bool = False) -> Dict[str, Any]:
        with self._lock:
            if (
                not force
                and self._discovery is not None
                and self._clock() - self._discovered_at < DISCOVERY_TTL_SECONDS
            ):
                return self._discovery
            try:
                response = self._client.get(self._options.metadata_url)
                response.raise_for_status()
                doc = response.json()
            except (httpx.HTTPError, ValueError) as exc:
                raise OIDCError(f"Cannot load OpenID configuration: {exc}") from exc
            if not isinstance(doc, dict):
                raise OIDCError("OpenID configuration is not a JSON object")
            self._discovery = doc
            self._discovered_at = self._clock()
            return doc

    def _endpoint(self, name: str) -> str:
        value = self.get_discovery_doc().get(name)
        if not value:
            raise OIDCError(f"OpenID configuration has no {name}")
        return str(value)

    def build_authorization_url(self, redirect_uri: str, state: str, code_challenge: str) -> str:
        query = urlencode(
            {
                "response_type": "code",
                "client_id": self._options.client_id,
                "redirect_uri": redirect_uri,
                "scope": " ".join(self._options.scopes),
                "state": state,
                "code_challenge": code_challenge,
                "code_challenge_method": "S256",
            }
        )
        return f"{self._endpoint('authorization_endpoint')}?{query}"

    def exchange_code(self, code: str, redirect_uri: str, code_verifier: str) -> Dict[str, Any]:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": self._options.client_id,
            "code_verifier": code_verifier,
        }
        if self._options.client_secret:
            data["client_secret"] = self._options.client_secret
        try:
            response = self._client.post(self._endpoint("token_endpoint"), data=data)
        except httpx.HTTPError as exc:
            raise OIDCError(f"Token request failed: {exc}") from exc
        if not response.is_success:
            raise OIDCError(f"Token endpoint answered {response.status_code}")
        try:
            tokens = response.json()
        except ValueError as exc:
            raise OIDCError("Token endpoint returned invalid JSON") from exc
        if not isinstance(tokens, dict) or not tokens.get("access_token"):
            raise OIDCError("Token endpoint returned no access token")
        return tokens

    def fetch_userinfo(self, access_token: str) -> Dict[str, Any]:
        try:
            response = self._client.get(
                self._endpoint("userinfo_endpoint"),
                headers={"Authorization": f"Bearer {access_token}"},
            )
            response.raise_for_status()
            info = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise OIDCError(f"Userinfo request failed: {exc}") from exc
        return info if isinstance(info, dict) else {}

    def authenticate(self, code: str, redirect_uri: str, code_verifier: str) -> Tuple[Principal, Optional[str]]:
        """Complete the login and return the principal plus the id token for logout."""

        tokens = self.exchange_code(code, redirect_uri, code_verifier)
        access_token = str(tokens["access_token"])
        principal = Principal.from_claims(
            self.fetch_userinfo(access_token), decode_token_claims(access_token)
        )
        if not principal.username:
            raise OIDCError("Identity provider returned no username")
        return principal, tokens.get("id_token")

    def build_logout_url(self, post_logout_redirect_uri: str, id_token: Optional[str] = None) -> Optional[str]:
        endpoint = self.get_discovery_doc().get("end_session_endpoint")
        if not endpoint:
            return None
        params = {
            "client_id": self._options.client_id,
            "post_logout_redirect_uri": post_logout_redirect_uri,
        }
        if id_token:
            params["id_token_hint"] = id_token
        return f"{endpoint}?{urlencode(params)}"

    def close(self) -> None:
        self._client.close()


__all__ = [
    "DISCOVERY_TTL_SECONDS",
    "OIDCClient",
    "OIDCError",
    "Principal",
    "ROLE_ADMIN",
    "ROLE_USER",
    "decode_token_claims",
    "generate_pkce_pair",
]
