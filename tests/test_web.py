import json
import sqlite3

import pytest
from fastapi.testclient import TestClient

from assistant.models import ClientSummary
from assistant.oidc import ROLE_ADMIN, ROLE_USER
from conftest import login


ADMIN_ROLES = (ROLE_USER, ROLE_ADMIN)


@pytest.fixture()
def client(app):
    with TestClient(app) as test_client:
        yield test_client


def _grant(user_clients, username="alice", realm="alpha", client_id="app-bank-payments", name="Payments"):
    user_clients.add(username, ClientSummary(name=name, client_id=client_id, realm=realm))


# ----------------------------------------------------------------------
# Authentication and access gates
# ----------------------------------------------------------------------
def test_anonymous_request_returns_to_original_page_after_login(client, fake_oidc):
    response = client.get("/Clients/Search?q=pay", follow_redirects=False)
    assert response.status_code == 303
    assert response.headers["location"].endswith("/login")

    signed_in = login(client, fake_oidc, "root", ADMIN_ROLES)
    assert signed_in.status_code == 303
    assert signed_in.headers["location"] == "/Clients/Search?q=pay"
    assert fake_oidc.codes == ["auth-code"]


def test_login_redirect_carries_state_and_pkce_challenge(client):
    response = client.get("/login", follow_redirects=False)

    assert response.status_code == 303
    location = response.headers["location"]
    assert location.startswith("https://sso.example.com/")
    assert "state=" in location
    assert "code_challenge=" in location
    assert "signin-oidc" in location


def test_callback_with_mismatched_state_is_rejected(client, fake_oidc):
    client.get("/login", follow_redirects=False)
    response = client.get("/signin-oidc", params={"code": "abc", "state": "forged"}, follow_redirects=False)

    assert response.status_code == 400
    assert "Login session expired" in response.text
    assert fake_oidc.codes == []


def test_callback_without_pending_login_is_rejected(client):
    response = client.get("/signin-oidc", params={"code": "abc", "state": "abc"}, follow_redirects=False)
    assert response.status_code == 400


def test_failed_token_exchange_renders_bad_gateway(client, fake_oidc):
    start = client.get("/login", follow_redirects=False)
    state = start.headers["location"].split("state=")[1].split("&")[0]
    fake_oidc.principal = None

    response = client.get("/signin-oidc", params={"code": "abc", "state": state}, follow_redirects=False)
    assert response.status_code == 502


def test_user_without_assistant_role_is_denied(client, fake_oidc):
    signed_in = login(client, fake_oidc, "mallory", roles=("offline_access",))
    assert signed_in.headers["location"].endswith("/AccessDenied")

    response = client.get("/", follow_redirects=False)
    assert response.status_code == 303
    assert response.headers["location"].endswith("/AccessDenied")

    page = client.get("/AccessDenied")
    assert page.status_code == 403


def test_regular_user_cannot_open_admin_pages(client, fake_oidc):
    login(client, fake_oidc)

    for path in ("/Clients/Search", "/Admin/UserClients", "/Admin/ServiceRoleExclusions", "/Admin/Events"):
        response = client.get(path, follow_redirects=False)
        assert response.status_code == 303, path
        assert response.headers["location"].endswith("/AccessDenied")

    json_response = client.get("/Admin/ServiceRoleExclusions/lookup?q=app", headers={"Accept": "application/json"})
    assert json_response.status_code == 403
    assert json_response.json()["status"] == "error"


def test_json_endpoints_answer_401_when_anonymous(client):
    response = client.get(
        "/Clients/clients-search?realm=alpha&q=pay",
        headers={"Accept": "application/json"},
        follow_redirects=False,
    )
    assert response.status_code == 401
    assert response.json() == {"status": "error", "message": "Authentication required."}


def test_logout_clears_session_and_redirects_to_identity_provider(client, fake_oidc):
    login(client, fake_oidc)

    response = client.get("/Account/Logout", follow_redirects=False)
    assert response.status_code == 303
    location = response.headers["location"]
    assert location.startswith("https://sso.example.com/realms/staff/protocol/openid-connect/logout")
    assert "id_token_hint=id-token-1" in location

    after = client.get("/", follow_redirects=False)
    assert after.headers["location"].endswith("/login")


# ----------------------------------------------------------------------
# Client listing
# ----------------------------------------------------------------------
def test_index_lists_granted_clients_for_regular_user(client, fake_oidc, user_clients):
    _grant(user_clients)
    _grant(user_clients, username="bob", client_id="app-bank-ledger", name="Ledger")
    login(client, fake_oidc)

    response = client.get("/")
    assert response.status_code == 200
    assert "app-bank-payments" in response.text
    assert "https://alpha.example.com/portal" in response.text
    assert "app-bank-ledger" not in response.text
    assert "Search clientId across realms" not in response.text


def test_admin_index_searches_all_realms(client, fake_oidc, keycloak):
    keycloak.add_client("alpha", "app-bank-payments")
    keycloak.add_client("beta", "app-bank-payouts")
    keycloak.add_client("beta", "app-bank-ledger")
    login(client, fake_oidc, "root", ADMIN_ROLES)

    response = client.get("/", params={"q": "pay"})
    assert response.status_code == 200
    assert "app-bank-payments" in response.text
    assert "app-bank-payouts" in response.text
    assert "app-bank-ledger" not in response.text


def test_admin_search_page_reports_empty_result(client, fake_oidc):
    login(client, fake_oidc, "root", ADMIN_ROLES)

    response = client.get("/Clients/Search", params={"q": "nothing"})
    assert response.status_code == 200
    assert "No clients" in response.text


def test_search_failure_is_rendered_not_raised(client, fake_oidc, keycloak):
    import httpx

    keycloak.overrides[("GET", "/admin/realms/beta/clients")] = lambda request: httpx.Response(403)
    login(client, fake_oidc, "root", ADMIN_ROLES)

    response = client.get("/Clients/Search", params={"q": "pay"})
    assert response.status_code == 200
    assert "Insufficient rights in Keycloak" in response.text


# ----------------------------------------------------------------------
# Client details
# ----------------------------------------------------------------------
def test_details_require_a_grant(client, fake_oidc, keycloak):
    keycloak.add_client("alpha", "app-bank-payments")
    login(client, fake_oidc)

    response = client.get("/Clients/Details", params={"realm": "alpha", "clientId": "app-bank-payments"})
    assert response.status_code == 403


def test_details_render_for_granted_client(client, fake_oidc, keycloak, user_clients):
    keycloak.add_client(
        "alpha",
        "app-bank-payments",
        public_client=False,
        redirect_uris=["https://payments.example.com/*"],
        roles=["reader"],
    )
    _grant(user_clients)
    login(client, fake_oidc)

    response = client.get("/Clients/Details", params={"realm": "alpha", "clientId": "app-bank-payments"})
    assert response.status_code == 200
    assert "https://payments.example.com/*" in response.text
    assert "reader" in response.text
    assert "Client secret" in response.text
    assert "Delete client" not in response.text


def test_details_missing_parameters_and_unknown_client(client, fake_oidc):
    login(client, fake_oidc, "root", ADMIN_ROLES)

    assert client.get("/Clients/Details", params={"realm": "alpha"}).status_code == 400
    missing = client.get("/Clients/Details", params={"realm": "alpha", "clientId": "app-bank-ghost"})
    assert missing.status_code == 404


def test_save_renames_client_and_moves_grants(client, fake_oidc, keycloak, user_clients, audit_log):
    keycloak.add_client("alpha", "app-bank-payments", redirect_uris=["https://old.example.com/cb"])
    _grant(user_clients)
    login(client, fake_oidc)

    response = client.post(
        "/Clients/Details/save",
        data={
            "realm": "alpha",
            "clientId": "app-bank-payments",
            "newClientId": "app-bank-payments-v2",
            "enabled": "true",
            "standardFlow": "true",
            "redirectUrisJson": json.dumps(["https://new.example.com/*"]),
            "localRolesJson": json.dumps(["reader"]),
            "serviceRolesJson": "[]",
        },
        follow_redirects=False,
    )

    assert response.status_code == 303
    assert "clientId=app-bank-payments-v2" in response.headers["location"]
    stored = keycloak.client("alpha", "app-bank-payments-v2")
    assert stored is not None
    assert stored.redirect_uris == ["https://new.example.com/*"]
    assert stored.roles == ["reader"]
    assert user_clients.has_access("alice", "alpha", "app-bank-payments-v2")
    assert not user_clients.has_access("alice", "alpha", "app-bank-payments")
    assert "client:update" in [entry.operation_type for entry in audit_log.get_logs(username="alice")]

    page = client.get(response.headers["location"])
    assert "Changes saved." in page.text


def test_save_with_invalid_redirect_keeps_client_untouched(client, fake_oidc, keycloak, user_clients):
    keycloak.add_client("alpha", "app-bank-payments", redirect_uris=["https://old.example.com/cb"])
    _grant(user_clients)
    login(client, fake_oidc)

    response = client.post(
        "/Clients/Details/save",
        data={
            "realm": "alpha",
            "clientId": "app-bank-payments",
            "standardFlow": "true",
            "redirectUrisJson": json.dumps(["http://public.example.com/cb"]),
        },
        follow_redirects=False,
    )

    assert response.status_code == 303
    assert "clientId=app-bank-payments" in response.headers["location"]
    assert keycloak.calls("PUT") == []
    page = client.get(response.headers["location"])
    assert "Invalid redirect URIs: http://public.example.com/cb" in page.text


def _worker_form(**overrides):
    data = {
        "realm": "alpha",
        "clientId": "app-bank-worker",
        "enabled": "true",
        "clientAuth": "true",
        "serviceAccount": "true",
        "description": "Nightly batch",
        "serviceRolesJson": json.dumps(["realm-management: view-users"]),
    }
    data.update(overrides)
    return data


def test_save_keeps_held_realm_management_roles(client, fake_oidc, keycloak, user_clients, audit_log):
    management = keycloak.add_client("alpha", "realm-management", roles=["view-users"])
    worker = keycloak.add_client(
        "alpha", "app-bank-worker", public_client=False, standard_flow=False, service_account=True
    )
    keycloak.sa_mappings[f"sa-{worker.id}"] = {management.id: ["view-users"]}
    _grant(user_clients, client_id="app-bank-worker", name="Worker")
    login(client, fake_oidc)

    response = client.post("/Clients/Details/save", data=_worker_form(), follow_redirects=False)

    assert response.status_code == 303
    assert len(keycloak.calls("PUT")) == 1
    assert worker.description == "Nightly batch"
    assert keycloak.calls("POST", f"/role-mappings/clients/{management.id}") == []
    assert keycloak.sa_mappings[f"sa-{worker.id}"] == {management.id: ["view-users"]}
    assert "client:update" in [entry.operation_type for entry in audit_log.get_logs(username="alice")]
    page = client.get(response.headers["location"])
    assert "Changes saved." in page.text


def test_save_refuses_new_roles_of_excluded_clients(client, fake_oidc, keycloak, user_clients):
    keycloak.add_client("alpha", "realm-management", roles=["view-users", "manage-users"])
    keycloak.add_client("alpha", "app-bank-worker", public_client=False, standard_flow=False, service_account=True)
    _grant(user_clients, client_id="app-bank-worker", name="Worker")
    login(client, fake_oidc)

    response = client.post(
        "/Clients/Details/save",
        data=_worker_form(serviceRolesJson=json.dumps(["realm-management: manage-users"])),
        follow_redirects=False,
    )

    assert response.status_code == 303
    assert keycloak.calls("PUT") == []
    page = client.get(response.headers["location"])
    assert "Invalid service roles: realm-management: manage-users" in page.text


def test_save_without_grant_is_forbidden(client, fake_oidc, keycloak):
    keycloak.add_client("alpha", "app-bank-payments")
    login(client, fake_oidc)

    response = client.post(
        "/Clients/Details/save",
        data={"realm": "alpha", "clientId": "app-bank-payments"},
        follow_redirects=False,
    )
    assert response.status_code == 403
    assert keycloak.calls("PUT") == []


def test_admin_deletes_client_and_its_grants(client, fake_oidc, keycloak, user_clients):
    keycloak.add_client("alpha", "app-bank-payments")
    _grant(user_clients, username="bob")
    login(client, fake_oidc, "root", ADMIN_ROLES)

    response = client.post(
        "/Clients/Details/delete",
        data={"realm": "alpha", "clientId": "app-bank-payments"},
        follow_redirects=False,
    )

    assert response.status_code == 303
    assert response.headers["location"].endswith("/")
    assert keycloak.client("alpha", "app-bank-payments") is None
    assert not user_clients.has_access("bob", "alpha", "app-bank-payments")


def test_regular_user_cannot_delete(client, fake_oidc, keycloak, user_clients):
    keycloak.add_client("alpha", "app-bank-payments")
    _grant(user_clients)
    login(client, fake_oidc)

    response = client.post(
        "/Clients/Details/delete",
        data={"realm": "alpha", "clientId": "app-bank-payments"},
        follow_redirects=False,
    )
    assert response.headers["location"].endswith("/AccessDenied")
    assert keycloak.client("alpha", "app-bank-payments") is not None


# ----------------------------------------------------------------------
# JSON lookups
# ----------------------------------------------------------------------
def test_client_and_role_lookups(client, fake_oidc, keycloak):
    payments = keycloak.add_client("alpha", "app-bank-payments", roles=["reader", "writer"])
    keycloak.add_client("alpha", "app-bank-ledger", roles=["auditor"])
    login(client, fake_oidc)

    clients = client.get("/Clients/clients-search", params={"realm": "alpha", "q": "pay"})
    assert clients.json() == [{"id": payments.id, "clientId": "app-bank-payments"}]

    roles = client.get("/Clients/client-roles", params={"realm": "alpha", "id": payments.id, "q": "read"})
    assert roles.json() == ["reader"]

    assert client.get("/Clients/client-roles", params={"realm": "alpha"}).status_code == 400

    hits = client.get("/Clients/role-lookup", params={"realm": "alpha", "q": "aud"}).json()
    assert hits["hits"] == [
        {"clientUuid": hits["hits"][0]["clientUuid"], "clientId": "app-bank-ledger", "role": "auditor"}
    ]
    assert hits["nextClientFirst"] == -1


# ----------------------------------------------------------------------
# Client creation
# ----------------------------------------------------------------------
def _create_form(**overrides):
    data = {
        "realm": "alpha",
        "clientId": "app-bank-newapp",
        "description": "New application",
        "appName": "New App",
        "appUrl": "https://new.example.com",
        "flowStandard": "true",
        "redirectUrisJson": json.dumps(["https://new.example.com/cb"]),
        "localRolesJson": json.dumps(["reader"]),
        "serviceRolesJson": "[]",
    }
    data.update(overrides)
    return data


def test_create_page_lists_realms(client, fake_oidc):
    login(client, fake_oidc)

    response = client.get("/Clients/Create")
    assert response.status_code == 200
    assert "Alpha Bank" in response.text
    assert 'value="beta"' in response.text


def test_create_with_invalid_input_rerenders_form(client, fake_oidc, keycloak):
    login(client, fake_oidc)

    response = client.post("/Clients/Create", data=_create_form(appName="", redirectUrisJson="[]"))

    assert response.status_code == 400
    assert "Application name is required" in response.text
    assert "Standard flow requires at least one redirect URI." in response.text
    assert keycloak.calls("POST", "/clients") == []


def test_create_client_grants_creator_access(client, fake_oidc, keycloak, user_clients, audit_log):
    login(client, fake_oidc)

    response = client.post("/Clients/Create", data=_create_form(), follow_redirects=False)

    assert response.status_code == 303
    assert response.headers["location"].endswith("/")
    created = keycloak.client("alpha", "app-bank-newapp")
    assert created is not None
    assert created.roles == ["reader"]
    assert created.public_client is True
    assert user_clients.has_access("alice", "alpha", "app-bank-newapp")
    assert user_clients.get_for_user("alice")[0].name == "New App"
    assert "client:create" in audit_log.get_operation_types()


def test_create_duplicate_client_reports_failure(client, fake_oidc, keycloak, user_clients):
    keycloak.add_client("alpha", "app-bank-newapp")
    login(client, fake_oidc)

    response = client.post("/Clients/Create", data=_create_form())

    assert response.status_code == 400
    assert "Client creation failed" in response.text
    assert not user_clients.has_access("alice", "alpha", "app-bank-newapp")


def test_create_with_failed_role_assignment_opens_details(client, fake_oidc, keycloak, user_clients):
    login(client, fake_oidc)

    response = client.post(
        "/Clients/Create",
        data=_create_form(
            flowStandard="",
            flowService="true",
            redirectUrisJson="[]",
            localRolesJson="[]",
            serviceRolesJson=json.dumps(["app-bank-missing: reader"]),
        ),
        follow_redirects=False,
    )

    assert response.status_code == 303
    assert "/Clients/Details" in response.headers["location"]
    assert "clientId=app-bank-newapp" in response.headers["location"]
    created = keycloak.client("alpha", "app-bank-newapp")
    assert created is not None
    assert created.public_client is False
    assert user_clients.has_access("alice", "alpha", "app-bank-newapp")


def test_create_rejects_unknown_realm(client, fake_oidc, keycloak):
    login(client, fake_oidc)

    response = client.post("/Clients/Create", data=_create_form(realm="gamma"))
    assert response.status_code == 400
    assert "This realm does not exist." in response.text


# ----------------------------------------------------------------------
# Admin: user grants
# ----------------------------------------------------------------------
def test_admin_grants_and_revokes_access(client, fake_oidc, keycloak, user_clients, audit_log):
    keycloak.add_client("alpha", "app-bank-payments")
    keycloak.users["alpha"] = [
        {"id": "u-1", "username": "bob", "firstName": "Bob", "lastName": "Builder", "email": "bob@example.com"}
    ]
    login(client, fake_oidc, "root", ADMIN_ROLES)

    page = client.get("/Admin/UserClients", params={"clientQuery": "pay", "userQuery": "bob"})
    assert page.status_code == 200
    assert "app-bank-payments" in page.text
    assert "Builder Bob" in page.text

    granted = client.post(
        "/Admin/UserClients/grant",
        data={
            "realm": "alpha",
            "clientId": "app-bank-payments",
            "clientName": "Payments",
            "username": "bob",
            "userQuery": "bob",
        },
        follow_redirects=False,
    )
    assert granted.status_code == 303
    assert "selectedUsername=bob" in granted.headers["location"]
    assert "userQuery=bob" in granted.headers["location"]
    assert user_clients.has_access("bob", "alpha", "app-bank-payments")

    listing = client.get(granted.headers["location"])
    assert "User bob granted: app-bank-payments" in listing.text

    revoked = client.post(
        "/Admin/UserClients/revoke",
        data={"realm": "alpha", "clientId": "app-bank-payments", "username": "bob"},
        follow_redirects=False,
    )
    assert revoked.status_code == 303
    assert not user_clients.has_access("bob", "alpha", "app-bank-payments")
    assert [entry.operation_type for entry in audit_log.get_logs(username="root")] == [
        "user-client:revoke",
        "user-client:grant",
    ]


def test_grant_without_selection_is_rejected(client, fake_oidc, user_clients):
    login(client, fake_oidc, "root", ADMIN_ROLES)

    response = client.post("/Admin/UserClients/grant", data={"username": "bob"}, follow_redirects=False)

    assert response.status_code == 303
    assert user_clients.get_for_user("bob") == []
    page = client.get(response.headers["location"])
    assert "Select a client and a user before granting access." in page.text


def test_short_queries_do_not_hit_keycloak(client, fake_oidc, keycloak):
    login(client, fake_oidc, "root", ADMIN_ROLES)
    before = len(keycloak.requests)

    response = client.get("/Admin/UserClients", params={"clientQuery": "pa", "userQuery": "b"})

    assert response.status_code == 200
    assert len(keycloak.requests) == before


# ----------------------------------------------------------------------
# Admin: service role exclusions
# ----------------------------------------------------------------------
def test_exclusions_lookup_add_and_remove(client, fake_oidc, keycloak, exclusions, audit_log):
    keycloak.add_client("alpha", "App-Bank-Payments")
    keycloak.add_client("beta", "app-bank-payouts")
    login(client, fake_oidc, "root", ADMIN_ROLES)

    assert client.get("/Admin/ServiceRoleExclusions/lookup", params={"q": "p"}).json() == []
    lookup = client.get("/Admin/ServiceRoleExclusions/lookup", params={"q": "bank-pa"})
    assert lookup.json() == ["App-Bank-Payments", "app-bank-payouts"]

    added = client.post(
        "/Admin/ServiceRoleExclusions/add",
        data={"clientId": "app-bank-payments", "searchTerm": "bank", "searchPage": "2"},
        follow_redirects=False,
    )
    assert added.status_code == 303
    assert "searchTerm=bank" in added.headers["location"]
    assert exclusions.is_excluded("APP-BANK-PAYMENTS")
    assert "app-bank-payments" in exclusions.list_sorted()

    removed = client.post(
        "/Admin/ServiceRoleExclusions/remove",
        data={"clientId": "App-Bank-Payments"},
        follow_redirects=False,
    )
    assert removed.status_code == 303
    assert not exclusions.is_excluded("app-bank-payments")
    assert [entry.operation_type for entry in audit_log.get_logs(username="root")] == [
        "client_ex:remove",
        "client_ex:add",
    ]


def test_exclusion_for_unknown_client_is_refused(client, fake_oidc, exclusions):
    login(client, fake_oidc, "root", ADMIN_ROLES)

    response = client.post(
        "/Admin/ServiceRoleExclusions/add",
        data={"clientId": "app-bank-ghost"},
        follow_redirects=False,
    )

    assert response.status_code == 303
    assert not exclusions.is_excluded("app-bank-ghost")
    page = client.get(response.headers["location"])
    assert "not found in Keycloak" in page.text


def test_exclusions_page_lists_defaults_and_search_results(client, fake_oidc, keycloak):
    keycloak.add_client("alpha", "app-bank-payments")
    login(client, fake_oidc, "root", ADMIN_ROLES)

    page = client.get("/Admin/ServiceRoleExclusions", params={"searchTerm": "payments"})

    assert page.status_code == 200
    assert "realm-management" in page.text
    assert "app-bank-payments" in page.text


# ----------------------------------------------------------------------
# Events
# ----------------------------------------------------------------------
def test_audit_events_page_filters_by_operation(client, fake_oidc, audit_log):
    audit_log.log("client:create", "alice", "alpha", "app-bank-payments")
    audit_log.log("client:delete", "root", "alpha", "app-bank-ledger")
    login(client, fake_oidc, "root", ADMIN_ROLES)

    response = client.get("/Admin/Events", params={"operationType": "client:delete", "limit": "5000"})

    assert response.status_code == 200
    assert "app-bank-ledger" in response.text
    assert "app-bank-payments" not in response.text


def test_client_events_are_filtered_to_the_client(client, fake_oidc, keycloak, user_clients):
    keycloak.add_client("alpha", "app-bank-payments")
    keycloak.event_types["alpha"] = ["LOGIN", "LOGIN_ERROR"]
    keycloak.events["alpha"] = [
        {"time": 1700000000000, "type": "LOGIN", "clientId": "app-bank-payments", "userId": "u-1", "ipAddress": "10.0.0.1"},
        {"time": 1700000001000, "type": "LOGIN", "clientId": "app-bank-ledger", "userId": "u-2", "ipAddress": "10.0.0.2"},
    ]
    _grant(user_clients)
    login(client, fake_oidc)

    response = client.get(
        "/Clients/Events",
        params={"realm": "alpha", "clientId": "app-bank-payments", "type": "LOGIN", "from": "2023-11-01T00:00"},
    )

    assert response.status_code == 200
    assert "10.0.0.1" in response.text
    assert "10.0.0.2" not in response.text
    request = keycloak.calls("GET", "/events")[-1]
    assert request.url.params["client"] == "app-bank-payments"
    assert request.url.params["type"] == "LOGIN"
    assert request.url.params["dateFrom"] == "1698796800000"


def test_client_events_require_a_grant(client, fake_oidc):
    login(client, fake_oidc)

    response = client.get("/Clients/Events", params={"realm": "alpha", "clientId": "app-bank-payments"})
    assert response.status_code == 403


# ----------------------------------------------------------------------
# Health and headers
# ----------------------------------------------------------------------
def test_healthz_reports_dependencies(client, fake_oidc):
    healthy = client.get("/healthz")
    assert healthy.status_code == 200
    assert healthy.json() == {"status": "Healthy", "checks": {"database": "Healthy", "keycloak": "Healthy"}}

    fake_oidc.healthy = False
    unhealthy = client.get("/healthz")
    assert unhealthy.status_code == 503
    assert unhealthy.json()["checks"]["keycloak"] == "Unhealthy"


def test_healthz_reports_broken_database(client, services, monkeypatch):
    calls = []

    def broken_ping():
        calls.append("ping")
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(services.database, "ping", broken_ping)

    response = client.get("/healthz")

    assert response.status_code == 503
    assert response.json()["checks"] == {"database": "Unhealthy", "keycloak": "Healthy"}
    assert calls == ["ping"]


def test_security_headers_are_set(client):
    response = client.get("/healthz")

    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert "frame-ancestors 'none'" in response.headers["Content-Security-Policy"]


def test_create_app_requires_session_secret(services, monkeypatch):
    from assistant.web import create_app

    monkeypatch.delenv("ASSISTANT_SESSION_SECRET", raising=False)
    with pytest.raises(RuntimeError):
        create_app(services=services)
