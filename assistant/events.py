"""Keycloak login events for a single client."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Optional

from .admin_http import KeycloakAdminHttp, ensure_admin_success, read_json
from .models import EventEntry
from .representations import EventRepresentation, EventsConfigRepresentation


def _to_millis(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


class EventsService:
    def __init__(self, http: KeycloakAdminHttp) -> None:
        self._http = http

    def get_event_types(self, realm: str) -> List[str]:
        """Return the event types the realm is configured to record."""
        response = self._http.get(realm, "events", "config")
        ensure_admin_success(response)
        payload = read_json(response, None)
        if not isinstance(payload, dict):
            return []
        config = EventsConfigRepresentation.model_validate(payload)
        return [item for item in (config.enabled_event_types or []) if item and item.strip()]

    def get_events(
        self,
        realm: str,
        client_id: str,
        event_type: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        user: Optional[str] = None,
        ip_address: Optional[str] = None,
        max_results: int = 50,
    ) -> List[EventEntry]:
        params: Dict[str, object] = {
            "client": client_id,
            "max": max(1, max_results),
            "first": 0,
        }
        if event_type and event_type.strip():
            params["type"] = event_type.strip()
        if user and user.strip():
            params["user"] = user.strip()
        if ip_address and ip_address.strip():
            params["ipAddress"] = ip_address.strip()
        if date_from is not None:
            params["dateFrom"] = _to_millis(date_from)
        if date_to is not None:
            params["dateTo"] = _to_millis(date_to)

        response = self._http.get(realm, "events", params=params)
        ensure_admin_success(response)
        payload = read_json(response, [])

        wanted = (client_id or "").strip().lower()
        entries: List[EventEntry] = []
        for item in payload if isinstance(payload, list) else []:
            if not isinstance(item, dict):
                continue
            event = EventRepresentation.model_validate(item)
            if (event.client_id or "").lower() != wanted:
                continue
            entries.append(
                EventEntry(
                    type=event.type or "",
                    at=datetime.fromtimestamp((event.time or 0) / 1000, tz=timezone.utc),
                    user=event.username or event.user_id,
                    ip=event.ip_address,
                )
            )
        return entries


__all__ = ["EventsService"]
