"""Cached view of the realms visible to the admin service account."""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, List, Optional

from .admin_http import KeycloakAdminHttp, ensure_admin_success, read_json
from .models import RealmInfo
from .representations import RealmRepresentation


logger = logging.getLogger("assistant.realms")

REALMS_CACHE_TTL_SECONDS = 30 * 60


class RealmsService:
    def __init__(
        self,
        http: KeycloakAdminHttp,
        *,
        ttl: float = REALMS_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._http = http
        self._ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._cached: Optional[List[RealmInfo]] = None
        self._loaded_at = 0.0

    def get_realms(self) -> List[RealmInfo]:
        return self.refresh(force=False)

    def refresh(self, force: bool = True) -> List[RealmInfo]:
        with self._lock:
            if (
                not force
                and self._cached is not None
                and self._clock() - self._loaded_at < self._ttl
            ):
                return list(self._cached)

            response = self._http.get(params={"briefRepresentation": "true"})
            ensure_admin_success(response)
            payload = read_json(response, [])

            realms: List[RealmInfo] = []
            for item in payload if isinstance(payload, list) else []:
                if not isinstance(item, dict):
                    continue
                rep = RealmRepresentation.model_validate(item)
                if not rep.realm or not rep.realm.strip():
                    continue
                realms.append(
                    RealmInfo(
                        realm=rep.realm.strip(),
                        id=rep.id,
                        display_name=rep.display_name,
                        enabled=rep.enabled,
                    )
                )
            realms.sort(key=lambda info: info.realm.lower())

            self._cached = realms
            self._loaded_at = self._clock()
            logger.debug("Loaded %d realms", len(realms))
            return list(realms)

    def realm_names(self) -> List[str]:
        return [info.realm for info in self.get_realms()]

    def display_names(self) -> dict:
        """Map each realm to a human readable label."""
        return {
            info.realm: (info.display_name or "").strip() or info.realm
            for info in self.get_realms()
        }

    def realm_exists(self, realm: Optional[str]) -> bool:
        if not realm or not realm.strip():
            return False
        wanted = realm.strip().lower()
        if any(info.realm.lower() == wanted for info in self.get_realms()):
            return True
        return any(info.realm.lower() == wanted for info in self.refresh(force=True))


__all__ = ["RealmsService", "REALMS_CACHE_TTL_SECONDS"]
