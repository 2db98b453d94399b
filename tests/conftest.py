from __future__ import annotations

import json
import os
import sys
import tempfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("ASSISTANT_SESSION_SECRET", "tests-secret-key")
os.environ.setdefault(
    "ASSISTANT_DB_PATH",
    str(Path(tempfile.gettempdir()) / "assistant-tests.sqlite3"),
)

from assistant.admin_http import KeycloakAdminHttp
from assistant.clients import ClientsService
from assistant.database import (
    ApiLogRepository,
    ClientWikiRepository,
    Database,
    ServiceRoleExclusionsRepository,
    UserClientsRepository,
)


BASE_URL = "https://sso.example.com"


class StaticTokens:
    """Token provider double that counts refreshes."""

    def __init__(self) -> None:
        self.issued = 0
        self.invalidated = 0

    def get_access_token(self) -> str:
        self.issued += 1
        return "admin-token"

    def invalidate(self) -> None:
        self.invalidated += 1


@dataclass
class FakeClient:
    id: str
    client_id: str
    enabled: bool = True
    description: Optional[str] = None
    public_client: bool = True
    standard_flow: bool = True
    service_account: bool = False
    redirect_uris: List[str] = field(default_factory=list)
    roles: List[str] = field(default_factory=list)
    secret: str = "initial-secret"

    def to_json(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "clientId": self.client_id,
            "enabled": self.enabled,
            "description": self.description,
            "publicClient": self.public_client,
            "standardFlowEnabled": self.standard_flow,
            "serviceAccountsEnabled": self.service_account,
            "redirectUris": list(self.redirect_uris),
        }


class FakeKeycloak:
    """In-memory subset of the Keycloak Admin REST API."""

    def __init__(self) -> None:
        self.realms: Dict[str, Dict[str, object]] = {}
        self.clients: Dict[str, List[FakeClient]] = {}
        self.users: Dict[str, List[Dict[str, object]]] = {}
        self.events: Dict[str, List[Dict[str, object]]] = {}
        self.event_types: Dict[str, List[str]] = {}
        self.sa_mappings: Dict[str, Dict[str, List[str]]] = {}
        self.requests: List[httpx.Request] = []
        self.overrides: Dict[Tuple[str, str], Callable[[httpx.Request], httpx.Response]] = {}

    # -- setup helpers ---------------------------------------------------
    def add_realm(self, realm: str, display_name: Optional[str] = None) -> None:
        self.realms[realm] = {"id": realm, "realm": realm, "displayName": display_name, "enabled": True}
        self.clients.setdefault(realm, [])

    def add_client(self, realm: str, client_id: str, **kwargs: object) -> FakeClient:
        client = FakeClient(id=str(kwargs.pop("id", uuid.uuid4())), client_id=client_id, **kwargs)  # type: ignore[arg-type]
        self.clients.setdefault(realm, []).append(client)
        return client

    def client(self, realm: str, client_id: str) -> Optional[FakeClient]:
        return next((c for c in self.clients.get(realm, []) if c.client_id == client_id), None)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def http(self, **kwargs: object) -> KeycloakAdminHttp:
        return KeycloakAdminHttp(
            BASE_URL,
            StaticTokens(),  # type: ignore[arg-type]
            client=httpx.Client(transport=self.transport()),
            sleep=lambda _delay: None,
            **kwargs,  # type: ignore[arg-type]
        )

    def calls(self, method: str, path_suffix: str = "") -> List[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.method == method and request.url.path.endswith(path_suffix)
        ]

    # -- request handling --------------------------------------------------
    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.startswith("/auth/"):
            path = path[len("/auth"):]
        override = self.overrides.get((request.method, path))
        if override is not None:
            return override(request)
        if not path.startswith("/admin/realms"):
            return httpx.Response(404)

        parts = [part for part in path[len("/admin/realms"):].split("/") if part]
        if not parts:
            return httpx.Response(200, json=list(self.realms.values()))

        realm, rest = parts[0], parts[1:]
        if realm not in self.realms:
            return httpx.Response(404, json={"error": "Realm not found"})
        if rest[:1] == ["clients"]:
            return self._clients(request, realm, rest[1:])
        if rest[:1] == ["users"]:
            return self._users(request, realm, rest[1:])
        if rest == ["events", "config"]:
            return httpx.Response(200, json={"enabledEventTypes": self.event_types.get(realm, [])})
        if rest == ["events"]:
            return httpx.Response(200, json=self.events.get(realm, []))
        return httpx.Response(404)

    def _find_by_id(self, realm: str, client_uuid: str) -> Optional[FakeClient]:
        return next((c for c in self.clients[realm] if c.id == client_uuid), None)

    def _clients(self, request: httpx.Request, realm: str, rest: List[str]) -> httpx.Response:
        params = request.url.params
        if not rest:
            if request.method == "POST":
                body = json.loads(request.content)
                if self.client(realm, body["clientId"]) is not None:
                    return httpx.Response(409, json={"errorMessage": "Client exists"})
                created = self.add_client(
                    realm,
                    body["clientId"],
                    description=body.get("description"),
                    public_client=body.get("publicClient", True),
                    standard_flow=body.get("standardFlowEnabled", True),
                    service_account=body.get("serviceAccountsEnabled", False),
                    redirect_uris=list(body.get("redirectUris") or []),
                )
                location = f"{BASE_URL}/admin/realms/{realm}/clients/{created.id}"
                return httpx.Response(201, headers={"Location": location})

            items = self.clients[realm]
            if "clientId" in params:
                items = [c for c in items if c.client_id == params["clientId"]]
            elif "search" in params:
                needle = params["search"].lower()
                items = [c for c in items if needle in c.client_id.lower()]
            first = int(params.get("first", 0))
            if "max" in params:
                items = items[first:first + int(params["max"])]
            else:
                items = items[first:]
            return httpx.Response(200, json=[c.to_json() for c in items])

        client = self._find_by_id(realm, rest[0])
        if client is None:
            return httpx.Response(404, json={"error": "Could not find client"})
        tail = rest[1:]

        if not tail:
            if request.method == "PUT":
                body = json.loads(request.content)
                client.client_id = body["clientId"]
                client.enabled = body["enabled"]
                client.public_client = body["publicClient"]
                client.standard_flow = body["standardFlowEnabled"]
                client.service_account = body["serviceAccountsEnabled"]
                client.redirect_uris = list(body["redirectUris"])
                client.description = body.get("description")
                return httpx.Response(204)
            if request.method == "DELETE":
                self.clients[realm].remove(client)
                return httpx.Response(204)
            return httpx.Response(200, json=client.to_json())

        if tail == ["roles"]:
            if request.method == "POST":
                name = json.loads(request.content)["name"]
                if name in client.roles:
                    return httpx.Response(409, json={"errorMessage": "Role exists"})
                client.roles.append(name)
                return httpx.Response(201)
            roles = client.roles
            if "search" in params:
                roles = [r for r in roles if params["search"].lower() in r.lower()]
            first = int(params.get("first", 0))
            roles = roles[first:first + int(params.get("max", 100))]
            return httpx.Response(200, json=[{"id": f"{client.id}-{r}", "name": r} for r in roles])

        if len(tail) == 2 and tail[0] == "roles":
            if tail[1] not in client.roles:
                return httpx.Response(404, json={"error": "Could not find role"})
            if request.method == "DELETE":
                client.roles.remove(tail[1])
                return httpx.Response(204)
            return httpx.Response(
                200,
                json={"id": f"{client.id}-{tail[1]}", "name": tail[1], "composite": False},
            )

        if tail == ["client-secret"]:
            if request.method == "POST":
                client.secret = f"regenerated-{len(self.calls('POST', '/client-secret'))}"
            return httpx.Response(200, json={"type": "secret", "value": client.secret})

        if tail == ["service-account-user"]:
            if not client.service_account:
                return httpx.Response(404, json={"error": "Service account not enabled"})
            return httpx.Response(
                200,
                json={"id": f"sa-{client.id}", "username": f"service-account-{client.client_id}"},
            )
        return httpx.Response(404)

    def _users(self, request: httpx.Request, realm: str, rest: List[str]) -> httpx.Response:
        if not rest:
            needle = request.url.params.get("search", "").lower()
            found = [
                user
                for user in self.users.get(realm, [])
                if needle in str(user.get("username", "")).lower()
                or needle in str(user.get("email", "")).lower()
            ]
            return httpx.Response(200, json=found)

        user_id = rest[0]
        mappings = self.sa_mappings.setdefault(user_id, {})
        if rest[1:] == ["role-mappings"]:
            client_mappings = {}
            for source_uuid, roles in mappings.items():
                source = self._find_by_id(realm, source_uuid)
                name = source.client_id if source else source_uuid
                client_mappings[name] = {
                    "id": source_uuid,
                    "client": name,
                    "mappings": [{"name": role} for role in roles],
                }
            return httpx.Response(200, json={"clientMappings": client_mappings})
        if len(rest) == 4 and rest[1:3] == ["role-mappings", "clients"] and request.method == "POST":
            body = json.loads(request.content)
            target = mappings.setdefault(rest[3], [])
            for role in body:
                if role["name"] not in target:
                    target.append(role["name"])
            return httpx.Response(204)
        if len(rest) == 4 and rest[1:3] == ["role-mappings", "clients"] and request.method == "DELETE":
            names = {role["name"] for role in json.loads(request.content)}
            remaining = [role for role in mappings.get(rest[3], []) if role not in names]
            if remaining:
                mappings[rest[3]] = remaining
            else:
                mappings.pop(rest[3], None)
            return httpx.Response(204)
        return httpx.Response(404)


@pytest.fixture()
def keycloak() -> FakeKeycloak:
    fake = FakeKeycloak()
    fake.add_realm("alpha", "Alpha Bank")
    fake.add_realm("beta")
    return fake


@pytest.fixture()
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "assistant.sqlite3")
    db.initialize()
    return db


@pytest.fixture()
def exclusions(database: Database) -> ServiceRoleExclusionsRepository:
    return ServiceRoleExclusionsRepository(database)


@pytest.fixture()
def audit_log(database: Database) -> ApiLogRepository:
    return ApiLogRepository(database)


@pytest.fixture()
def user_clients(database: Database) -> UserClientsRepository:
    return UserClientsRepository(database)


@pytest.fixture()
def wiki_pages(database: Database) -> ClientWikiRepository:
    return ClientWikiRepository(database)


@pytest.fixture()
def clients_service(
    keycloak: FakeKeycloak,
    exclusions: ServiceRoleExclusionsRepository,
    audit_log: ApiLogRepository,
) -> ClientsService:
    return ClientsService(keycloak.http(), exclusions, audit_log, actor="alice")


class FakeOIDC:
    """Identity provider double handing out a preset principal."""

    def __init__(self) -> None:
        self.principal = None
        self.healthy = True
        self.codes: List[str] = []

    def build_authorization_url(self, redirect_uri: str, state: str, code_challenge: str) -> str:
        return str(
            httpx.URL(
                "https://sso.example.com/realms/staff/protocol/openid-connect/auth",
                params={"redirect_uri": redirect_uri, "state": state, "code_challenge": code_challenge},
            )
        )

    def authenticate(self, code: str, redirect_uri: str, code_verifier: str):
        from assistant.oidc import OIDCError

        self.codes.append(code)
        if self.principal is None:
            raise OIDCError("no principal configured")
        return self.principal, "id-token-1"

    def build_logout_url(self, post_logout_redirect_uri: str, id_token: Optional[str] = None) -> str:
        return str(
            httpx.URL(
                "https://sso.example.com/realms/staff/protocol/openid-connect/logout",
                params={"post_logout_redirect_uri": post_logout_redirect_uri, "id_token_hint": id_token or ""},
            )
        )

    def get_discovery_doc(self, force: bool = False) -> Dict[str, object]:
        from assistant.oidc import OIDCError

        if not self.healthy:
            raise OIDCError("discovery unavailable")
        return {"issuer": "https://sso.example.com/realms/staff"}


def login(client, oidc: FakeOIDC, username: str = "alice", roles=("assistant-user",)):
    """Run the authorization-code round trip through the test client."""

    from urllib.parse import parse_qs, urlsplit

    from assistant.oidc import Principal

    oidc.principal = Principal(username=username, email=f"{username}@example.com", roles=frozenset(roles))
    start = client.get("/login", follow_redirects=False)
    assert start.status_code == 303, start.text
    state = parse_qs(urlsplit(start.headers["location"]).query)["state"][0]
    return client.get("/signin-oidc", params={"code": "auth-code", "state": state}, follow_redirects=False)


@pytest.fixture()
def fake_oidc() -> FakeOIDC:
    return FakeOIDC()


@pytest.fixture()
def services(
    keycloak: FakeKeycloak,
    database: Database,
    exclusions: ServiceRoleExclusionsRepository,
    audit_log: ApiLogRepository,
    user_clients: UserClientsRepository,
    wiki_pages: ClientWikiRepository,
    fake_oidc: FakeOIDC,
    tmp_path: Path,
):
    from assistant.events import EventsService
    from assistant.realm_links import RealmLinkProvider
    from assistant.realms import RealmsService
    from assistant.users import UsersService
    from assistant.web import AppServices

    links = tmp_path / "realm_links.yaml"
    links.write_text("alpha: https://alpha.example.com/portal\n", encoding="utf-8")
    http = keycloak.http()
    return AppServices(
        database=database,
        user_clients=user_clients,
        exclusions=exclusions,
        audit_log=audit_log,
        wiki_pages=wiki_pages,
        clients=ClientsService(http, exclusions, audit_log),
        realms=RealmsService(http),
        users=UsersService(http, "alpha"),
        events=EventsService(http),
        oidc=fake_oidc,  # type: ignore[arg-type]
        realm_links=RealmLinkProvider(links),
    )


@pytest.fixture()
def app(services):
    from assistant.web import create_app

    return create_app(services=services, session_secret="not-so-secret", session_secure=False)
