"""Client, role and service-account management on top of the Keycloak Admin API."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit

import httpx

from .admin_http import (
    KeycloakAdminError,
    KeycloakAdminHttp,
    ensure_admin_success,
    read_json,
)
from .cache import TTLCache
from .database import ApiLogRepository, ServiceRoleExclusionsRepository
from .models import (
    ClientChange,
    ClientDetails,
    ClientShort,
    NewClientSpec,
    RoleHit,
    ServiceRolePair,
    UpdateClientSpec,
)
from .representations import (
    ClientRepresentation,
    ClientSecretRepresentation,
    RoleMappingsRepresentation,
    RoleRepresentation,
    UserRepresentation,
)


logger = logging.getLogger("assistant.clients")

SEARCH_CACHE_TTL_SECONDS = 60
ROLES_CACHE_TTL_SECONDS = 60
MAX_PAGE_SIZE = 200
UNKNOWN_ACTOR = "unknown"


class ClientNotFoundError(KeycloakAdminError):
    """The requested client does not exist in the realm."""


class ClientAlreadyExistsError(KeycloakAdminError):
    """Keycloak answered 409 to a create request."""


class ClientRoleAssignmentError(KeycloakAdminError):
    """The client was created but its roles could not be set up."""


def _clamp(value: int, default: int) -> int:
    if value <= 0:
        value = default
    return max(1, min(value, MAX_PAGE_SIZE))


def _contains_ci(value: Optional[str], needle: str) -> bool:
    return bool(value) and needle.lower() in value.lower()  # type: ignore[union-attr]


def _distinct_ci(items: Iterable[str]) -> List[str]:
    seen = set()
    result: List[str] = []
    for item in items:
        cleaned = (item or "").strip()
        if not cleaned or cleaned.lower() in seen:
            continue
        seen.add(cleaned.lower())
        result.append(cleaned)
    return result


def _distinct(items: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(items))


def build_client_search_cache_key(realm: str, query: str, first: int, max_results: int) -> str:
    return f"client-search:{realm}:{query.strip().lower()}:{first}:{max_results}"


def build_client_roles_cache_key(
    realm: str, client_uuid: str, first: int, max_results: int, search: Optional[str]
) -> str:
    return f"client-roles:{realm}:{client_uuid}:{first}:{max_results}:{(search or '').strip().lower()}"


def _parse_clients(payload: object) -> List[ClientRepresentation]:
    if not isinstance(payload, list):
        return []
    return [ClientRepresentation.model_validate(item) for item in payload if isinstance(item, dict)]


def _format_flag(value: bool) -> str:
    return "true" if value else "false"


def _format_pair(pair: ServiceRolePair) -> str:
    return f"{pair[0]}:{pair[1]}"


def _pair_key(pair: ServiceRolePair) -> Tuple[str, str]:
    return pair[0].strip().lower(), pair[1].strip().lower()


def _set_diff(label: str, before: Sequence[str], after: Sequence[str]) -> Optional[str]:
    before_keys = {item.lower() for item in before}
    after_keys = {item.lower() for item in after}
    added = [f"+{item}" for item in after if item.lower() not in before_keys]
    removed = [f"-{item}" for item in before if item.lower() not in after_keys]
    if not added and not removed:
        return None
    return f"{label}: {', '.join(added + removed)}"


def describe_client_changes(before: ClientDetails, spec: UpdateClientSpec) -> List[str]:
    """Return human readable lines describing what ``spec`` changes on ``before``."""

    changes: List[str] = []
    if before.client_id != spec.client_id:
        changes.append(f"clientId: {before.client_id} -> {spec.client_id}")
    for label, old, new in (
        ("enabled", before.enabled, spec.enabled),
        ("clientAuth", before.client_auth, spec.client_auth),
        ("standardFlow", before.standard_flow, spec.standard_flow),
        ("serviceAccount", before.service_account, spec.service_account),
    ):
        if old != new:
            changes.append(f"{label}: {_format_flag(old)} -> {_format_flag(new)}")
    old_description = (before.description or "").strip()
    new_description = (spec.description or "").strip()
    if old_description != new_description:
        changes.append(f"description: '{old_description}' -> '{new_description}'")

    redirects = _distinct(spec.redirect_uris) if spec.standard_flow else []
    for line in (
        _set_diff("redirectUris", before.redirect_uris, redirects),
        _set_diff("localRoles", before.local_roles, _distinct_ci(spec.local_roles)),
        _set_diff(
            "serviceRoles",
            [_format_pair(pair) for pair in before.service_roles],
            [_format_pair(pair) for pair in spec.service_roles] if spec.service_account else [],
        ),
    ):
        if line:
            changes.append(line)
    return changes


@dataclass
class _ClientCaches:
    searches: TTLCache = field(default_factory=TTLCache)
    roles: TTLCache = field(default_factory=TTLCache)
    exclusions_version: int = -1
    lock: threading.Lock = field(default_factory=threading.Lock)


class ClientsService:
    """Search, inspect, create, update and delete Keycloak clients.

    Instances are cheap to copy with :meth:`with_actor`; copies share the HTTP
    client and caches but record a different user in the audit log.
    """

    def __init__(
        self,
        http: KeycloakAdminHttp,
        exclusions: ServiceRoleExclusionsRepository,
        audit_log: ApiLogRepository,
        *,
        actor: Optional[str] = None,
        caches: Optional[_ClientCaches] = None,
    ) -> None:
        self._http = http
        self._exclusions = exclusions
        self._logs = audit_log
        self._actor = actor.strip() if actor and actor.strip() else UNKNOWN_ACTOR
        self._caches = caches or _ClientCaches()

    @property
    def actor(self) -> str:
        return self._actor

    def with_actor(self, username: Optional[str]) -> "ClientsService":
        return ClientsService(
            self._http,
            self._exclusions,
            self._logs,
            actor=username,
            caches=self._caches,
        )

    # ------------------------------------------------------------------
    # Audit and cache helpers
    # ------------------------------------------------------------------
    def _audit(
        self,
        operation_type: str,
        realm: Optional[str],
        target_id: Optional[str],
        details: Optional[str] = None,
    ) -> None:
        realm = realm if realm and realm.strip() else "-"
        target_id = target_id if target_id and target_id.strip() else "-"
        self._logs.log(operation_type, self._actor, realm, target_id, details)

    def _search_cache(self) -> TTLCache:
        version = self._exclusions.version
        with self._caches.lock:
            if self._caches.exclusions_version != version:
                self._caches.searches.clear()
                self._caches.exclusions_version = version
        return self._caches.searches

    def _invalidate_searches(self, realm: str) -> None:
        self._caches.searches.invalidate_prefix(f"client-search:{realm}:")

    def _invalidate_roles(self, realm: str, client_uuid: str) -> None:
        self._caches.roles.invalidate_prefix(f"client-roles:{realm}:{client_uuid}:")

    def _filter_excluded(self, clients: List[ClientShort]) -> List[ClientShort]:
        excluded = self._exclusions.get_all()
        if not excluded:
            return clients
        return [client for client in clients if client.client_id.lower() not in excluded]

    # ------------------------------------------------------------------
    # Search and listing
    # ------------------------------------------------------------------
    def search_clients(
        self,
        realm: str,
        query: str,
        first: int = 0,
        max_results: int = 20,
        *,
        skip_cache: bool = False,
    ) -> List[ClientShort]:
        """Find clients whose clientId contains ``query`` (case-insensitive)."""

        query = (query or "").strip()
        if not query:
            return []
        first = max(0, first)
        max_results = _clamp(max_results, 20)

        cache = self._search_cache()
        cache_key = build_client_search_cache_key(realm, query, first, max_results)
        if not skip_cache:
            cached = cache.get(cache_key)
            if cached is not None:
                return list(cached)

        def _matching(reps: List[ClientRepresentation]) -> List[ClientShort]:
            mapped = [
                ClientShort(id=rep.id or "", client_id=rep.client_id or "")
                for rep in reps
                if rep.client_id and rep.client_id.strip()
            ]
            return self._filter_excluded(
                [client for client in mapped if _contains_ci(client.client_id, query)]
            )

        response = self._http.get(
            realm,
            "clients",
            params={"clientId": query, "briefRepresentation": "true"},
        )
        ensure_admin_success(response)
        results = _matching(_parse_clients(read_json(response, [])))

        if not results:
            response = self._http.get(
                realm,
                "clients",
                params={
                    "search": query,
                    "first": first,
                    "max": max_results,
                    "briefRepresentation": "true",
                },
            )
            ensure_admin_success(response)
            results = _matching(_parse_clients(read_json(response, [])))

        if results:
            cache.set(cache_key, tuple(results), SEARCH_CACHE_TTL_SECONDS)
        return results

    def _find_exact(self, realm: str, client_id: str, *, max_results: int = 1) -> Optional[ClientShort]:
        for client in self.search_clients(realm, client_id, 0, max_results, skip_cache=True):
            if client.client_id.lower() == client_id.strip().lower():
                return client
        return None

    def list_clients(
        self, realm: str, first: int = 0, max_results: int = 50
    ) -> Tuple[List[ClientShort], int]:
        """Return one page of clients and the number fetched before exclusions."""

        first = max(0, first)
        max_results = _clamp(max_results, 50)

        response = self._http.get(
            realm,
            "clients",
            params={"first": first, "max": max_results, "briefRepresentation": "true"},
        )
        ensure_admin_success(response)
        mapped = [
            ClientShort(id=rep.id or "", client_id=rep.client_id or "")
            for rep in _parse_clients(read_json(response, []))
            if rep.client_id and rep.client_id.strip()
        ]
        total = len(mapped)
        filtered = self._filter_excluded(mapped)
        self._audit("client:list", realm, f"{first}:{max_results}")
        return filtered, total

    def get_client_roles(
        self,
        realm: str,
        client_uuid: str,
        first: int = 0,
        max_results: int = 50,
        search: Optional[str] = None,
    ) -> List[str]:
        first = max(0, first)
        max_results = _clamp(max_results, 50)
        cache_key = build_client_roles_cache_key(realm, client_uuid, first, max_results, search)
        cached = self._caches.roles.get(cache_key)
        if cached is not None:
            return list(cached)

        params: Dict[str, object] = {
            "briefRepresentation": "true",
            "first": first,
            "max": max_results,
        }
        if search and search.strip():
            params["search"] = search.strip()

        response = self._http.get(realm, "clients", client_uuid, "roles", params=params)
        ensure_admin_success(response)
        payload = read_json(response, [])
        roles = [
            role.name
            for role in (
                RoleRepresentation.model_validate(item)
                for item in (payload if isinstance(payload, list) else [])
                if isinstance(item, dict)
            )
            if role.name and role.name.strip()
        ]
        self._caches.roles.set(cache_key, tuple(roles), ROLES_CACHE_TTL_SECONDS)
        return roles

    def find_roles_across_clients(
        self,
        realm: str,
        role_query: str,
        client_first: int = 0,
        clients_to_scan: int = 25,
        roles_per_client: int = 10,
    ) -> Tuple[List[RoleHit], int]:
        """Scan a batch of clients for roles matching ``role_query``.

        Returns the hits and the offset of the next batch, or ``-1`` once the
        realm is exhausted.
        """

        role_query = (role_query or "").strip()
        if not role_query:
            return [], -1

        clients, fetched = self.list_clients(realm, client_first, clients_to_scan)
        hits: List[RoleHit] = []
        for client in clients:
            for role in self.get_client_roles(realm, client.id, 0, roles_per_client, role_query):
                hits.append(RoleHit(client_uuid=client.id, client_id=client.client_id, role=role))

        next_first = -1 if fetched < clients_to_scan else client_first + fetched
        return hits, next_first

    # ------------------------------------------------------------------
    # Details and secrets
    # ------------------------------------------------------------------
    def get_client_details(self, realm: str, client_id: str) -> Optional[ClientDetails]:
        response = self._http.get(realm, "clients", params={"clientId": client_id})
        ensure_admin_success(response)
        wanted = (client_id or "").strip().lower()
        rep = next(
            (
                item
                for item in _parse_clients(read_json(response, []))
                if item.client_id and item.client_id.lower() == wanted
            ),
            None,
        )
        if rep is None or not rep.id or not rep.client_id:
            return None

        local_roles = self.get_client_roles(realm, rep.id, 0, 1000)
        service_roles: List[ServiceRolePair] = []
        if rep.service_accounts_enabled:
            service_roles = self._get_service_account_roles(realm, rep.id)

        return ClientDetails(
            id=rep.id,
            client_id=rep.client_id,
            enabled=bool(rep.enabled) if rep.enabled is not None else False,
            description=rep.description,
            client_auth=not (rep.public_client if rep.public_client is not None else True),
            standard_flow=bool(rep.standard_flow_enabled),
            service_account=bool(rep.service_accounts_enabled),
            redirect_uris=[uri for uri in (rep.redirect_uris or []) if uri and uri.strip()],
            local_roles=local_roles,
            service_roles=service_roles,
            default_scopes=[scope for scope in (rep.default_client_scopes or []) if scope and scope.strip()],
        )

    def _service_account_user_id(self, realm: str, client_uuid: str) -> Optional[str]:
        response = self._http.get(realm, "clients", client_uuid, "service-account-user")
        ensure_admin_success(response)
        payload = read_json(response, None)
        if not isinstance(payload, dict):
            return None
        user = UserRepresentation.model_validate(payload)
        return user.id if user.id and user.id.strip() else None

    def _service_account_mappings(self, realm: str, user_id: str) -> RoleMappingsRepresentation:
        response = self._http.get(realm, "users", user_id, "role-mappings")
        ensure_admin_success(response)
        payload = read_json(response, None)
        if not isinstance(payload, dict):
            return RoleMappingsRepresentation()
        return RoleMappingsRepresentation.model_validate(payload)

    def _get_service_account_roles(self, realm: str, client_uuid: str) -> List[ServiceRolePair]:
        user_id = self._service_account_user_id(realm, client_uuid)
        if user_id is None:
            return []

        mappings = self._service_account_mappings(realm, user_id)
        pairs: List[ServiceRolePair] = []
        for source_client_id, mapping in (mappings.client_mappings or {}).items():
            for role in mapping.mappings or []:
                if role.name and role.name.strip():
                    pairs.append((source_client_id, role.name))
        return pairs

    def get_client_secret(self, realm: str, client_id: str) -> Optional[str]:
        details = self.get_client_details(realm, client_id)
        if details is None:
            return None
        response = self._http.get(realm, "clients", details.id, "client-secret")
        ensure_admin_success(response)
        payload = read_json(response, None)
        if not isinstance(payload, dict):
            return None
        return ClientSecretRepresentation.model_validate(payload).value

    def regenerate_client_secret(self, realm: str, client_id: str) -> Optional[str]:
        details = self.get_client_details(realm, client_id)
        if details is None:
            self._audit("client-secret:regenerate", realm, client_id, "client not found")
            return None
        response = self._http.post(realm, "clients", details.id, "client-secret")
        ensure_admin_success(response)
        payload = read_json(response, None)
        secret = (
            ClientSecretRepresentation.model_validate(payload).value
            if isinstance(payload, dict)
            else None
        )
        self._audit("client-secret:regenerate", realm, details.client_id)
        logger.info("%s regenerated the secret of %s in %s", self._actor, details.client_id, realm)
        return secret

    # ------------------------------------------------------------------
    # Create, update and delete
    # ------------------------------------------------------------------
    def create_client(self, spec: NewClientSpec) -> str:
        """Create a client with its local roles and service-account roles.

        Returns the Keycloak UUID of the new client.
        """

        body = {
            "clientId": spec.client_id,
            "protocol": "openid-connect",
            "publicClient": not spec.client_authentication,
            "serviceAccountsEnabled": spec.service_account,
            "standardFlowEnabled": spec.standard_flow,
            "directAccessGrantsEnabled": False,
            "redirectUris": _distinct(spec.redirect_uris),
            "description": spec.description,
        }
        response = self._http.post_json(spec.realm, "clients", body=body)
        if response.status_code == 409:
            raise ClientAlreadyExistsError(
                f"Client '{spec.client_id}' already exists.",
                status_code=409,
                response_body=response.text,
            )
        ensure_admin_success(response)
        self._invalidate_searches(spec.realm)

        created_id: Optional[str] = None
        location = response.headers.get("Location")
        if location:
            segment = urlsplit(location).path.rstrip("/").rsplit("/", 1)[-1]
            created_id = segment or None
        if created_id is None:
            existing = self._find_exact(spec.realm, spec.client_id)
            if existing is None or not existing.id:
                raise KeycloakAdminError("Cannot resolve created client id.")
            created_id = existing.id

        try:
            if spec.local_roles:
                self._ensure_local_roles(spec.realm, created_id, spec.local_roles)
            if spec.service_account and spec.service_roles:
                self._assign_service_roles(spec.realm, created_id, spec.service_roles)
        except (KeycloakAdminError, httpx.HTTPError) as exc:
            raise ClientRoleAssignmentError(
                f"Client '{spec.client_id}' created, but role assignment failed: {exc}"
            ) from exc

        self._audit("client:create", spec.realm, spec.client_id)
        logger.info("%s created client %s (%s) in %s", self._actor, spec.client_id, created_id, spec.realm)
        return created_id

    def update_client(self, spec: UpdateClientSpec) -> ClientChange:
        existing = self.get_client_details(spec.realm, spec.current_client_id)
        if existing is None:
            raise ClientNotFoundError(f"Client '{spec.current_client_id}' not found.", status_code=404)

        changes = describe_client_changes(existing, spec)

        desired_pairs = list(spec.service_roles) if spec.service_account else []
        held = {_pair_key(pair) for pair in existing.service_roles}
        wanted = {_pair_key(pair) for pair in desired_pairs}
        added_pairs = [pair for pair in desired_pairs if _pair_key(pair) not in held]
        dropped_pairs = [pair for pair in existing.service_roles if _pair_key(pair) not in wanted]

        # The service account user is deleted once serviceAccountsEnabled is switched off.
        if dropped_pairs:
            self._unassign_service_roles(spec.realm, existing.id, dropped_pairs)

        body = {
            "clientId": spec.client_id,
            "enabled": spec.enabled,
            "publicClient": not spec.client_auth,
            "serviceAccountsEnabled": spec.service_account,
            "standardFlowEnabled": spec.standard_flow,
            "directAccessGrantsEnabled": False,
            "redirectUris": _distinct(spec.redirect_uris) if spec.standard_flow else [],
            "description": spec.description,
        }
        response = self._http.put_json(spec.realm, "clients", existing.id, body=body)
        ensure_admin_success(response)
        if existing.client_id != spec.client_id:
            self._invalidate_searches(spec.realm)

        if spec.local_roles:
            self._ensure_local_roles(spec.realm, existing.id, spec.local_roles)
        removed = self._remove_missing_local_roles(
            spec.realm, existing.id, existing.local_roles, spec.local_roles
        )
        if added_pairs:
            self._assign_service_roles(spec.realm, existing.id, added_pairs)

        change = ClientChange(changes=changes, removed_roles=removed)
        self._audit("client:update", spec.realm, spec.client_id, change.summary)
        logger.info("%s updated client %s in %s: %s", self._actor, spec.client_id, spec.realm, change.summary)
        return change

    def delete_client(self, realm: str, client_id: str) -> None:
        existing = self._find_exact(realm, client_id)
        if existing is None:
            raise ClientNotFoundError(f"Client '{client_id}' not found.", status_code=404)

        response = self._http.delete(realm, "clients", existing.id)
        ensure_admin_success(response)
        self._invalidate_searches(realm)
        self._invalidate_roles(realm, existing.id)

        if existing.id:
            target = f"{existing.id}:{existing.client_id}"
        else:
            target = existing.client_id or client_id
        self._audit("client:delete", realm, target)
        logger.info("%s deleted client %s in %s", self._actor, existing.client_id, realm)

    # ------------------------------------------------------------------
    # Role helpers
    # ------------------------------------------------------------------
    def _ensure_local_roles(self, realm: str, client_uuid: str, roles: Iterable[str]) -> None:
        for name in _distinct_ci(roles):
            try:
                response = self._http.post_json(
                    realm, "clients", client_uuid, "roles", body={"name": name}
                )
                if response.status_code != 409:
                    ensure_admin_success(response)
            except (KeycloakAdminError, httpx.HTTPError) as exc:
                raise KeycloakAdminError(f"Local role '{name}' was not created: {exc}") from exc
            self._audit("client-role:ensure", realm, f"{client_uuid}:{name}")
        self._invalidate_roles(realm, client_uuid)

    def _remove_missing_local_roles(
        self,
        realm: str,
        client_uuid: str,
        existing_roles: Sequence[str],
        desired_roles: Sequence[str],
    ) -> List[str]:
        desired = {role.strip().lower() for role in desired_roles if role and role.strip()}
        removed: List[str] = []
        for name in existing_roles:
            if name.lower() in desired:
                continue
            response = self._http.delete(realm, "clients", client_uuid, "roles", name)
            ensure_admin_success(response)
            removed.append(name)
            self._audit("client-role:remove", realm, f"{client_uuid}:{name}")
        if removed:
            self._invalidate_roles(realm, client_uuid)
        return removed

    def _assign_service_roles(
        self, realm: str, client_uuid: str, pairs: Sequence[ServiceRolePair]
    ) -> None:
        user_id = self._service_account_user_id(realm, client_uuid)
        if user_id is None:
            raise KeycloakAdminError("Service account user not found.")

        groups: Dict[str, Tuple[str, List[str]]] = {}
        for source_client_id, role in pairs:
            source_client_id = (source_client_id or "").strip()
            role = (role or "").strip()
            if not source_client_id or not role:
                continue
            _, roles = groups.setdefault(source_client_id.lower(), (source_client_id, []))
            roles.append(role)

        for source_client_id, roles in groups.values():
            source = self._find_exact(realm, source_client_id, max_results=2)
            if source is None:
                raise ClientNotFoundError(f"Client '{source_client_id}' not found.", status_code=404)

            for role_name in _distinct_ci(roles):
                try:
                    response = self._http.get(realm, "clients", source.id, "roles", role_name)
                    ensure_admin_success(response)
                    payload = read_json(response, None)
                    rep = (
                        RoleRepresentation.model_validate(payload)
                        if isinstance(payload, dict)
                        else RoleRepresentation(name=role_name)
                    )
                    rep.client_role = True
                    rep.container_id = source.id

                    response = self._http.post_json(
                        realm,
                        "users",
                        user_id,
                        "role-mappings",
                        "clients",
                        source.id,
                        body=[rep.model_dump(by_alias=True, exclude_none=True)],
                    )
                    ensure_admin_success(response)
                except (KeycloakAdminError, httpx.HTTPError) as exc:
                    raise KeycloakAdminError(
                        f"Service role '{role_name}' of client '{source_client_id}' was not assigned: {exc}"
                    ) from exc
                self._audit(
                    "service-account:role-assign",
                    realm,
                    f"{client_uuid}:{source_client_id}:{role_name}",
                )

    def _unassign_service_roles(
        self, realm: str, client_uuid: str, pairs: Sequence[ServiceRolePair]
    ) -> None:
        """Remove mapped client roles from the service account.

        Source clients are resolved from the role mappings themselves, so
        roles of excluded clients such as ``realm-management`` can be removed too.
        """

        user_id = self._service_account_user_id(realm, client_uuid)
        if user_id is None:
            raise KeycloakAdminError("Service account user not found.")

        unwanted = {_pair_key(pair) for pair in pairs}
        mappings = self._service_account_mappings(realm, user_id)
        for source_client_id, mapping in (mappings.client_mappings or {}).items():
            reps = [
                role
                for role in mapping.mappings or []
                if role.name and _pair_key((source_client_id, role.name)) in unwanted
            ]
            if not reps or not mapping.id:
                continue
            for rep in reps:
                rep.client_role = True
                rep.container_id = mapping.id
            try:
                response = self._http.delete_json(
                    realm,
                    "users",
                    user_id,
                    "role-mappings",
                    "clients",
                    mapping.id,
                    body=[rep.model_dump(by_alias=True, exclude_none=True) for rep in reps],
                )
                ensure_admin_success(response)
            except (KeycloakAdminError, httpx.HTTPError) as exc:
                raise KeycloakAdminError(
                    f"Service roles of client '{source_client_id}' were not removed: {exc}"
                ) from exc
            for rep in reps:
                self._audit(
                    "service-account:role-remove",
                    realm,
                    f"{client_uuid}:{source_client_id}:{rep.name}",
                )


__all__ = [
    "ClientAlreadyExistsError",
    "ClientNotFoundError",
    "ClientRoleAssignmentError",
    "ClientsService",
    "build_client_search_cache_key",
    "describe_client_changes",
]
