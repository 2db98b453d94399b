"""User lookup in the primary realm."""
from __future__ import annotations

from typing import List, Optional

from .admin_http import KeycloakAdminHttp, ensure_admin_success, read_json
from .models import UserSearchResult
from .representations import UserRepresentation


def _trim(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = value.strip()
    return cleaned or None


class UsersService:
    def __init__(self, http: KeycloakAdminHttp, primary_realm: Optional[str]) -> None:
        if not primary_realm or not primary_realm.strip():
            raise RuntimeError("The primary realm for user lookups is not configured")
        self._http = http
        self._realm = primary_realm.strip()

    @property
    def primary_realm(self) -> str:
        return self._realm

    def search_users(self, query: str, first: int = 0, max_results: int = 20) -> List[UserSearchResult]:
        query = (query or "").strip()
        if not query:
            return []
        first = max(0, first)
        if max_results <= 0:
            max_results = 20
        max_results = min(max_results, 200)

        response = self._http.get(
            self._realm,
            "users",
            params={"search": query, "first": first, "max": max_results},
        )
        ensure_admin_success(response)
        payload = read_json(response, [])

        seen = set()
        results: List[UserSearchResult] = []
        for item in payload if isinstance(payload, list) else []:
            if not isinstance(item, dict):
                continue
            rep = UserRepresentation.model_validate(item)
            username = _trim(rep.username)
            if username is None or username.lower() in seen:
                continue
            seen.add(username.lower())
            results.append(
                UserSearchResult(
                    username=username,
                    first_name=_trim(rep.first_name),
                    last_name=_trim(rep.last_name),
                    email=_trim(rep.email),
                )
            )

        results.sort(key=lambda user: user.display_name.lower())
        return results


__all__ = ["UsersService"]
