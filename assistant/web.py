"""Browser interface and JSON endpoints of the Keycloak assistant."""
from __future__ import annotations

import functools
import logging
import math
import os
import secrets
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

import anyio
import httpx
from fastapi import FastAPI, Request, status
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates
from starlette.middleware.sessions import SessionMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .access_requests import AccessRequestError, AccessRequestNotConfigured, AccessRequestSender
from .admin_http import KeycloakAccessDenied, KeycloakAdminError
from .clients import ClientNotFoundError, ClientRoleAssignmentError, ClientsService
from .database import (
    ApiLogRepository,
    ClientWikiRepository,
    Database,
    ServiceRoleExclusionsRepository,
    UserClientsRepository,
)
from .events import EventsService
from .models import ClientSummary, ClientWikiInfo, UpdateClientSpec
from .oidc import OIDCClient, OIDCError, Principal, generate_pkce_pair
from .realm_links import RealmLinkProvider
from .realms import RealmsService
from .users import UsersService
from .validation import (
    CreateClientForm,
    FormErrors,
    find_invalid_local_roles,
    find_invalid_redirects,
    find_invalid_service_role_entries,
    new_service_role_entries,
    normalize_distinct,
    parse_service_role_pairs,
    parse_string_list,
    validate_create_form,
)
from .wiki import ClientWikiPayload, ConfluenceWikiService


TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"

logger = logging.getLogger("assistant.web")

SESSION_COOKIE_NAME = "assistant_session"

SEARCH_PAGE_SIZE = 20
USER_CLIENTS_PAGE_SIZE = 5
USER_CLIENTS_MIN_QUERY = 3
USER_CLIENTS_FETCH_LIMIT = 200
EXCLUSIONS_MIN_QUERY = 2
EXCLUSIONS_PAGE_SIZE = 10
EXCLUSIONS_SEARCH_FETCH = 200
EXCLUSIONS_LOOKUP_MAX = 20
EXCLUSIONS_LOOKUP_FETCH = 25
AUDIT_DEFAULT_LIMIT = 200
AUDIT_MAX_LIMIT = 1000
CLIENT_EVENTS_MAX = 50

GENERIC_KEYCLOAK_ERROR = "Keycloak request failed. Try again later."
ACCESS_DENIED_MESSAGE = "Insufficient rights in Keycloak for this operation."

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Content-Security-Policy": (
        "default-src 'self'; img-src 'self' data:; style-src 'self' 'unsafe-inline'; "
        "script-src 'self' 'unsafe-inline'; frame-ancestors 'none'"
    ),
}

T = TypeVar("T")


@dataclass
class AppServices:
    """Everything the web layer needs, wired once at startup."""

    database: Database
    user_clients: UserClientsRepository
    exclusions: ServiceRoleExclusionsRepository
    audit_log: ApiLogRepository
    wiki_pages: ClientWikiRepository
    clients: ClientsService
    realms: RealmsService
    users: UsersService
    events: EventsService
    oidc: OIDCClient
    realm_links: RealmLinkProvider
    wiki: Optional[ConfluenceWikiService] = None
    access_requests: Optional[AccessRequestSender] = None


def _trusted_proxy_hosts() -> list[str] | str:
    raw = os.getenv("ASSISTANT_TRUSTED_PROXIES")
    if not raw:
        return "*"
    hosts = [item.strip() for item in raw.split(",") if item.strip()]
    return hosts or "*"


def _int_param(value: Optional[str], default: int) -> int:
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _clean_param(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = value.strip()
    return cleaned or None


def _parse_local_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse the value of an ``<input type="datetime-local">`` as UTC."""

    if not value or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _paginate(items: Sequence[T], page: int, page_size: int) -> Tuple[List[T], int, int, bool]:
    """Return the page slice, the corrected page number, total pages and has-next flag."""

    page = max(1, page)
    if not items:
        return [], 1, 0, False
    total_pages = math.ceil(len(items) / page_size)
    page = min(page, total_pages)
    skip = (page - 1) * page_size
    return list(items[skip:skip + page_size]), page, total_pages, len(items) > skip + page_size


def _form_value(form: Any, name: str) -> str:
    value = form.get(name)
    return value.strip() if isinstance(value, str) else ""


def _form_flag(form: Any, name: str) -> bool:
    value = form.get(name)
    return isinstance(value, str) and value.strip().lower() in {"1", "true", "on", "yes"}


async def _run(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    return await anyio.to_thread.run_sync(functools.partial(func, *args, **kwargs))


def create_app(
    *,
    services: AppServices,
    session_secret: Optional[str] = None,
    session_secure: Optional[bool] = None,
) -> FastAPI:
    """Create the assistant web application."""

    if session_secret is None:
        session_secret = os.getenv("ASSISTANT_SESSION_SECRET")
    if not session_secret:
        raise RuntimeError("ASSISTANT_SESSION_SECRET must be configured to use the assistant")

    if session_secure is None:
        secure_setting = os.getenv("ASSISTANT_SESSION_SECURE")
        session_secure = secure_setting is not None and secure_setting.strip().lower() not in {
            "0",
            "false",
            "no",
        }

    app = FastAPI(
        title="Keycloak Assistant",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.services = services

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        return response

    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=_trusted_proxy_hosts())
    app.add_middleware(
        SessionMiddleware,
        secret_key=session_secret,
        session_cookie=SESSION_COOKIE_NAME,
        https_only=session_secure,
        same_site="lax",
        max_age=60 * 60 * 8,
    )

    templates = Jinja2Templates(directory=str(TEMPLATE_DIR))
    templates.env.globals["now"] = lambda: datetime.now(timezone.utc)

    def _flash(request: Request, message: str, *, category: str = "info") -> None:
        messages = request.session.get("flash_messages")
        if not isinstance(messages, list):
            messages = []
        messages.append({"message": message, "category": category})
        request.session["flash_messages"] = messages

    def _consume_flash(request: Request) -> List[Dict[str, str]]:
        messages = request.session.pop("flash_messages", [])
        if isinstance(messages, list):
            return messages
        return []

    def _get_principal(request: Request) -> Optional[Principal]:
        return Principal.from_session(request.session.get("user"))

    def _wants_json(request: Request) -> bool:
        if request.url.path.startswith("/api/"):
            return True
        accept = request.headers.get("accept", "")
        return "application/json" in accept and "text/html" not in accept

    def _gate(request: Request, principal: Optional[Principal], *, admin: bool = False) -> Optional[Response]:
        """Return the response that stops an unauthorised request, or ``None``."""

        if principal is None:
            if _wants_json(request):
                return JSONResponse(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    content={"status": "error", "message": "Authentication required."},
                )
            request.session["login_next"] = request.url.path + (
                f"?{request.url.query}" if request.url.query else ""
            )
            return RedirectResponse(request.url_for("login"), status_code=status.HTTP_303_SEE_OTHER)
        if not principal.is_user or (admin and not principal.is_admin):
            if _wants_json(request):
                return JSONResponse(
                    status_code=status.HTTP_403_FORBIDDEN,
                    content={"status": "error", "message": "Access denied."},
                )
            return RedirectResponse(request.url_for("access_denied"), status_code=status.HTTP_303_SEE_OTHER)
        return None

    def _render(request: Request, template: str, principal: Optional[Principal], status_code: int = 200, **context: Any) -> HTMLResponse:
        context.update(
            {
                "user": principal,
                "messages": _consume_flash(request),
            }
        )
        return templates.TemplateResponse(request, template, context, status_code=status_code)

    def _error_page(request: Request, principal: Optional[Principal], status_code: int, message: str) -> HTMLResponse:
        return _render(request, "error.html", principal, status_code=status_code, message=message, status_code_value=status_code)

    def _clients_for(principal: Principal) -> ClientsService:
        return services.clients.with_actor(principal.username)

    def _can_access(principal: Principal, realm: str, client_id: str) -> bool:
        if principal.is_admin:
            return True
        return services.user_clients.has_access(principal.username, realm, client_id)

    def _keycloak_failure_message(exc: Exception, context: str) -> str:
        if isinstance(exc, KeycloakAccessDenied):
            logger.error("%s: %s", context, exc)
            return ACCESS_DENIED_MESSAGE
        if isinstance(exc, ClientNotFoundError):
            return str(exc)
        logger.exception("%s", context)
        if isinstance(exc, KeycloakAdminError):
            return f"{GENERIC_KEYCLOAK_ERROR} {exc}"
        return GENERIC_KEYCLOAK_ERROR

    def _redirect(url: Any) -> RedirectResponse:
        return RedirectResponse(url, status_code=status.HTTP_303_SEE_OTHER)

    async def _search_all_realms(
        clients: ClientsService, query: str, max_results: int
    ) -> List[ClientSummary]:
        realms = await _run(services.realms.realm_names)
        found: Dict[str, List[str]] = {}
        failures: List[Exception] = []

        async def _search(realm: str) -> None:
            try:
                hits = await _run(clients.search_clients, realm, query, 0, max_results)
            except (KeycloakAdminError, httpx.HTTPError) as exc:
                failures.append(exc)
                return
            found[realm] = [hit.client_id for hit in hits if hit.client_id]

        async with anyio.create_task_group() as task_group:
            for realm in realms:
                task_group.start_soon(_search, realm)

        if failures:
            raise failures[0]

        summaries = [
            ClientSummary.for_lookup(realm, client_id)
            for realm, client_ids in found.items()
            for client_id in client_ids
        ]
        summaries.sort(key=lambda item: (item.realm.lower(), item.client_id.lower()))
        return summaries

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------
    @app.get("/login", name="login")
    async def login(request: Request):
        verifier, challenge = generate_pkce_pair()
        state = secrets.token_urlsafe(32)
        request.session["oidc"] = {"state": state, "verifier": verifier}
        try:
            url = await _run(
                services.oidc.build_authorization_url,
                str(request.url_for("signin_oidc")),
                state,
                challenge,
            )
        except OIDCError as exc:
            logger.error("Cannot start login: %s", exc)
            return _error_page(request, None, status.HTTP_502_BAD_GATEWAY, "Identity provider is unavailable.")
        return _redirect(url)

    @app.get("/signin-oidc", name="signin_oidc")
    async def signin_oidc(request: Request):
        pending = request.session.pop("oidc", None)
        code = request.query_params.get("code")
        state = request.query_params.get("state")
        if (
            not isinstance(pending, dict)
            or not code
            or not state
            or not secrets.compare_digest(str(pending.get("state", "")), state)
        ):
            logger.warning("Rejected login callback with missing or mismatched state")
            return _error_page(request, None, status.HTTP_400_BAD_REQUEST, "Login session expired. Please sign in again.")

        try:
            principal, id_token = await _run(
                services.oidc.authenticate,
                code,
                str(request.url_for("signin_oidc")),
                str(pending.get("verifier", "")),
            )
        except OIDCError as exc:
            logger.error("Login failed: %s", exc)
            return _error_page(request, None, status.HTTP_502_BAD_GATEWAY, "Login failed. Please try again.")

        next_url = request.session.pop("login_next", None)
        request.session.clear()
        request.session["user"] = principal.to_session()
        if id_token:
            request.session["id_token"] = id_token
        logger.info("User %s signed in with roles %s", principal.username, sorted(principal.roles))

        if not principal.is_user:
            return _redirect(request.url_for("access_denied"))
        if isinstance(next_url, str) and next_url.startswith("/") and not next_url.startswith("//"):
            return _redirect(next_url)
        return _redirect(request.url_for("index"))

    @app.api_route("/Account/Logout", methods=["GET", "POST"], name="logout")
    async def logout(request: Request):
        id_token = request.session.get("id_token")
        request.session.clear()
        target = str(request.url_for("index"))
        try:
            logout_url = await _run(services.oidc.build_logout_url, target, id_token)
        except OIDCError as exc:
            logger.warning("Cannot resolve end-session endpoint: %s", exc)
            logout_url = None
        return _redirect(logout_url or target)

    @app.get("/AccessDenied", response_class=HTMLResponse, name="access_denied")
    async def access_denied(request: Request):
        return _render(request, "access_denied.html", _get_principal(request), status_code=status.HTTP_403_FORBIDDEN)

    # ------------------------------------------------------------------
    # Client listing
    # ------------------------------------------------------------------
    @app.get("/", response_class=HTMLResponse, name="index")
    async def index(request: Request):
        principal = _get_principal(request)
        denied = _gate(request, principal)
        if denied is not None:
            return denied

        query = _clean_param(request.query_params.get("q"))
        clients: List[ClientSummary] = []
        error: Optional[str] = None
        if principal.is_admin:
            if query:
                try:
                    clients = await _search_all_realms(_clients_for(principal), query, 20)
                except (KeycloakAdminError, httpx.HTTPError) as exc:
                    error = _keycloak_failure_message(exc, "Client search failed")
            show_empty = bool(query)
        else:
            clients = services.user_clients.get_for_user(principal.username)
            show_empty = True

        rows = [
            {"client": client, "link": services.realm_links.get_link(client.realm)}
            for client in clients
        ]
        return _render(
            request,
            "index.html",
            principal,
            rows=rows,
            q=query or "",
            show_empty=show_empty,
            error=error,
        )

    @app.get("/Clients/Search", response_class=HTMLResponse, name="clients_search")
    async def clients_search(request: Request):
        principal = _get_principal(request)
        denied = _gate(request, principal, admin=True)
        if denied is not None:
            return denied

        query = _clean_param(request.query_params.get("q"))
        page = _int_param(request.query_params.get("pageNumber"), 1)
        results: List[ClientSummary] = []
        error: Optional[str] = None
        if query:
            try:
                results = await _search_all_realms(_clients_for(principal), query, SEARCH_PAGE_SIZE)
            except (KeycloakAdminError, httpx.HTTPError) as exc:
                error = _keycloak_failure_message(exc, "Client search failed")

        items, page, total_pages, has_next = _paginate(results, page, SEARCH_PAGE_SIZE)
        return _render(
            request,
            "search.html",
            principal,
            q=query or "",
            items=items,
            page=page,
            total_pages=total_pages,
            has_next=has_next,
            total=len(results),
            show_empty=bool(query),
            error=error,
        )

    # ------------------------------------------------------------------
    # Client details
    # ------------------------------------------------------------------
    def _details_url(request: Request, realm: str, client_id: str):
        return request.url_for("client_details").include_query_params(realm=realm, clientId=client_id)

    @app.get("/Clients/Details", response_class=HTMLResponse, name="client_details")
    async def client_details(request: Request):
        principal = _get_principal(request)
        denied = _gate(request, principal)
        if denied is not None:
            return denied

        realm = _clean_param(request.query_params.get("realm"))
        client_id = _clean_param(request.query_params.get("clientId"))
        if not realm or not client_id:
            return _error_page(request, principal, status.HTTP_400_BAD_REQUEST, "Realm and clientId are required.")
        if not _can_access(principal, realm, client_id):
            return _error_page(request, principal, status.HTTP_403_FORBIDDEN, "You have no access to this client.")

        try:
            details = await _run(_clients_for(principal).get_client_details, realm, client_id)
        except (KeycloakAdminError, httpx.HTTPError) as exc:
            message = _keycloak_failure_message(exc, f"Loading client {client_id} failed")
            status_code = status.HTTP_403_FORBIDDEN if isinstance(exc, KeycloakAccessDenied) else status.HTTP_502_BAD_GATEWAY
            return _error_page(request, principal, status_code, message)
        if details is None:
            return _error_page(request, principal, status.HTTP_404_NOT_FOUND, f"Client '{client_id}' not found.")

        return _render(
            request,
            "details.html",
            principal,
            realm=realm,
            details=details,
            wiki=services.wiki_pages.get(realm, details.client_id),
            realm_link=services.realm_links.get_link(realm),
            service_roles=[f"{source}: {role}" for source, role in details.service_roles],
        )

    @app.post("/Clients/Details/save", name="client_details_save")
    async def client_details_save(request: Request):
        principal = _get_principal(request)
        denied = _gate(request, principal)
        if denied is not None:
            return denied

        form = await request.form()
        realm = _form_value(form, "realm")
        current_id = _form_value(form, "clientId")
        new_id = _form_value(form, "newClientId") or current_id
        if not realm or not current_id:
            _flash(request, "Realm and clientId are required.", category="error")
            return _redirect(request.url_for("index"))
        if not _can_access(principal, realm, current_id):
            return _error_page(request, principal, status.HTTP_403_FORBIDDEN, "You have no access to this client.")

        service_account = _form_flag(form, "serviceAccount")
        standard_flow = _form_flag(form, "standardFlow")
        redirects = normalize_distinct(parse_string_list(form.get("redirectUrisJson")))
        local_roles = normalize_distinct(parse_string_list(form.get("localRolesJson")))
        service_entries = normalize_distinct(parse_string_list(form.get("serviceRolesJson")))

        errors = FormErrors()
        invalid_redirects = find_invalid_redirects(redirects)
        if invalid_redirects:
            errors.add("redirect_uris", f"Invalid redirect URIs: {', '.join(invalid_redirects)}")
        if standard_flow and not redirects:
            errors.add("redirect_uris", "Standard flow requires at least one redirect URI.")
        invalid_roles = find_invalid_local_roles(local_roles)
        if invalid_roles:
            errors.add("local_roles", f"Invalid local roles: {', '.join(invalid_roles)}")
        if errors:
            for message in errors.messages():
                _flash(request, message, category="error")
            return _redirect(_details_url(request, realm, current_id))

        try:
            existing = await _run(services.clients.get_client_details, realm, current_id)
        except (KeycloakAdminError, httpx.HTTPError) as exc:
            _flash(request, _keycloak_failure_message(exc, f"Loading client {current_id} failed"), category="error")
            return _redirect(_details_url(request, realm, current_id))
        if existing is None:
            return _error_page(request, principal, status.HTTP_404_NOT_FOUND, f"Client '{current_id}' not found.")

        # Roles the service account already holds are kept even when their client is excluded.
        added_entries = new_service_role_entries(service_entries, existing.service_roles)
        invalid_service = find_invalid_service_role_entries(added_entries, set(services.exclusions.get_all()))
        if invalid_service:
            _flash(request, f"Invalid service roles: {', '.join(invalid_service)}", category="error")
            return _redirect(_details_url(request, realm, current_id))

        spec = UpdateClientSpec(
            realm=realm,
            current_client_id=current_id,
            client_id=new_id,
            enabled=_form_flag(form, "enabled"),
            description=_form_value(form, "description") or None,
            client_auth=_form_flag(form, "clientAuth") or service_account,
            standard_flow=standard_flow,
            service_account=service_account,
            redirect_uris=redirects,
            local_roles=local_roles,
            service_roles=parse_service_role_pairs(service_entries),
        )
        try:
            change = await _run(_clients_for(principal).update_client, spec)
        except (KeycloakAdminError, httpx.HTTPError) as exc:
            _flash(request, _keycloak_failure_message(exc, f"Updating client {current_id} failed"), category="error")
            return _redirect(_details_url(request, realm, current_id))

        if new_id != current_id:
            services.user_clients.rename_client(realm, current_id, new_id)
        if change.removed_roles:
            _flash(request, f"Removed roles: {', '.join(change.removed_roles)}", category="info")
        _flash(request, "Changes saved.", category="success")
        return _redirect(_details_url(request, realm, new_id))

    @app.post("/Clients/Details/delete", name="client_details_delete")
    async def client_details_delete(request: Request):
        principal = _get_principal(request)
        denied = _gate(request, principal, admin=True)
        if denied is not None:
            return denied

        form = await request.form()
        realm = _form_value(form, "realm")
        client_id = _form_value(form, "clientId")
        if not realm or not client_id:
            _flash(request, "Realm and clientId are required.", category="error")
            return _redirect(request.url_for("index"))

        try:
            await _run(_clients_for(principal).delete_client, realm, client_id)
        except (KeycloakAdminError, httpx.HTTPError) as exc:
            _flash(request, _keycloak_failure_message(exc, f"Deleting client {client_id} failed"), category="error")
            return _redirect(_details_url(request, realm, client_id))

        services.user_clients.remove(client_id, realm)
        services.wiki_pages.remove(realm, client_id)
        _flash(request, "Client deleted.", category="success")
        return _redirect(request.url_for("index"))

    # ------------------------------------------------------------------
    # JSON lookups used by the details and creation forms
    # ------------------------------------------------------------------
    def _json_error(status_code: int, message: str) -> JSONResponse:
        return JSONResponse(status_code=status_code, content={"status": "error", "message": message})

    def _json_keycloak_error(exc: Exception, context: str) -> JSONResponse:
        message = _keycloak_failure_message(exc, context)
        if isinstance(exc, KeycloakAccessDenied):
            return _json_error(status.HTTP_403_FORBIDDEN, message)
        return _json_error(status.HTTP_502_BAD_GATEWAY, message)

    @app.get("/Clients/role-lookup", name="role_lookup")
    async def role_lookup(request: Request):
        principal = _get_principal(request)
        denied = _gate(request, principal)
        if denied is not None:
            return denied

        params = request.query_params
        realm = (params.get("realm") or "").strip()
        try:
            hits, next_first = await _run(
                _clients_for(principal).find_roles_across_clients,
                realm,
                params.get("q") or "",
                max(0, _int_param(params.get("clientFirst"), 0)),
                _int_param(params.get("clientsToScan"), 25),
                _int_param(params.get("rolesPerClient"), 10),
            )
        except (KeycloakAdminError, httpx.HTTPError) as exc:
            return _json_keycloak_error(exc, "Role lookup failed")
        return JSONResponse(
            content={
                "hits": [
                    {"clientUuid": hit.client_uuid, "clientId": hit.client_id, "role": hit.role}
                    for hit in hits
                ],
                "nextClientFirst": next_first,
            }
        )

    @app.get("/Clients/clients-search", name="clients_lookup")
    async def clients_lookup(request: Request):
        principal = _get_principal(request)
        denied = _gate(request, principal)
        if denied is not None:
            return denied

        params = request.query_params
        try:
            hits = await _run(
                _clients_for(principal).search_clients,
                (params.get("realm") or "").strip(),
                params.get("q") or "",
                max(0, _int_param(params.get("first"), 0)),
                _int_param(params.get("max"), 20),
            )
        except (KeycloakAdminError, httpx.HTTPError) as exc:
            return _json_keycloak_error(exc, "Client lookup failed")
        return JSONResponse(content=[{"id": hit.id, "clientId": hit.client_id} for hit in hits])

    @app.get("/Clients/client-roles", name="client_roles_lookup")
    async def client_roles_lookup(request: Request):
        principal = _get_principal(request)
        denied = _gate(request, principal)
        if denied is not None:
            return denied

        params = request.query_params
        client_uuid = (params.get("id") or "").strip()
        if not client_uuid:
            return _json_error(status.HTTP_400_BAD_REQUEST, "Client id is required.")
        try:
            roles = await _run(
                _clients_for(principal).get_client_roles,
                (params.get("realm") or "").strip(),
                client_uuid,
                max(0, _int_param(params.get("first"), 0)),
                _int_param(params.get("max"), 50),
                _clean_param(params.get("q")),
            )
        except (KeycloakAdminError, httpx.HTTPError) as exc:
            return _json_keycloak_error(exc, "Client roles lookup failed")
        return JSONResponse(content=roles)

    # ------------------------------------------------------------------
    # Client creation wizard
    # ------------------------------------------------------------------
    async def _render_create(
        request: Request,
        principal: Principal,
        form: CreateClientForm,
        errors: Optional[FormErrors] = None,
        status_code: int = 200,
    ) -> HTMLResponse:
        realm_error: Optional[str] = None
        try:
            realm_names = await _run(services.realms.display_names)
        except (KeycloakAdminError, httpx.HTTPError) as exc:
            realm_error = _keycloak_failure_message(exc, "Loading realms failed")
            realm_names = {}
        if not form.realm and realm_names:
            form.realm = next(iter(realm_names))
        return _render(
            request,
            "create.html",
            principal,
            status_code=status_code,
            form=form,
            realms=list(realm_names),
            realm_map=realm_names,
            errors=errors.fields if errors else {},
            general_errors=(errors.fields.get("", []) if errors else []),
            step_to_show=errors.step_to_show() if errors else 0,
            realm_error=realm_error,
        )

    @app.get("/Clients/Create", response_class=HTMLResponse, name="client_create")
    async def client_create(request: Request):
        principal = _get_principal(request)
        denied = _gate(request, principal)
        if denied is not None:
            return denied
        return await _render_create(request, principal, CreateClientForm())

    @app.post("/Clients/Create", response_class=HTMLResponse, name="client_create_submit")
    async def client_create_submit(request: Request):
        principal = _get_principal(request)
        denied = _gate(request, principal)
        if denied is not None:
            return denied

        raw = await request.form()
        form = CreateClientForm(
            realm=_form_value(raw, "realm"),
            client_id=_form_value(raw, "clientId"),
            description=_form_value(raw, "description"),
            client_auth=_form_flag(raw, "clientAuth"),
            flow_standard=_form_flag(raw, "flowStandard"),
            flow_service=_form_flag(raw, "flowService"),
            redirect_uris_json=str(raw.get("redirectUrisJson") or "[]"),
            local_roles_json=str(raw.get("localRolesJson") or "[]"),
            service_roles_json=str(raw.get("serviceRolesJson") or "[]"),
            app_name=_form_value(raw, "appName"),
            app_url=_form_value(raw, "appUrl"),
            service_owner=_form_value(raw, "serviceOwner"),
            service_manager=_form_value(raw, "serviceManager"),
        )

        try:
            realm_ok = bool(form.realm) and await _run(services.realms.realm_exists, form.realm)
        except (KeycloakAdminError, httpx.HTTPError) as exc:
            errors = FormErrors()
            errors.add("realm", _keycloak_failure_message(exc, "Realm check failed"))
            return await _render_create(request, principal, form, errors, status.HTTP_400_BAD_REQUEST)

        errors = validate_create_form(
            form,
            realm_exists=lambda _realm: realm_ok,
            excluded_clients=set(services.exclusions.get_all()),
        )
        if errors:
            return await _render_create(request, principal, form, errors, status.HTTP_400_BAD_REQUEST)

        spec = form.to_spec()
        summary = ClientSummary(
            name=form.app_name or spec.client_id,
            client_id=spec.client_id,
            realm=spec.realm,
            enabled=True,
            flow_standard=spec.standard_flow,
            flow_service=spec.service_account,
        )
        try:
            created_id = await _run(_clients_for(principal).create_client, spec)
        except ClientRoleAssignmentError as exc:
            logger.error("Client %s created with role errors: %s", spec.client_id, exc)
            services.user_clients.add(principal.username, summary)
            _flash(request, str(exc), category="error")
            return _redirect(_details_url(request, spec.realm, spec.client_id))
        except (KeycloakAdminError, httpx.HTTPError) as exc:
            errors = FormErrors()
            if isinstance(exc, KeycloakAdminError):
                errors.add("", f"Client creation failed: {exc}")
                logger.error("Client creation for %s failed: %s", spec.client_id, exc)
            else:
                errors.add("", _keycloak_failure_message(exc, f"Client creation for {spec.client_id} failed"))
            return await _render_create(request, principal, form, errors, status.HTTP_400_BAD_REQUEST)

        services.user_clients.add(principal.username, summary)

        if services.wiki is not None:
            payload = ClientWikiPayload(
                realm=spec.realm,
                client_id=spec.client_id,
                client_name=summary.name,
                access_type="confidential" if spec.client_authentication else "public",
                redirect_uris=spec.redirect_uris,
                local_roles=spec.local_roles,
                service_roles=spec.service_roles,
                app_name=form.app_name or None,
                app_url=form.app_url or None,
                service_owner=form.service_owner or None,
                service_manager=form.service_manager or None,
            )
            page_id = await _run(services.wiki.create_page, payload)
            if page_id:
                services.wiki_pages.set(
                    ClientWikiInfo(
                        realm=spec.realm,
                        client_id=spec.client_id,
                        page_id=page_id,
                        app_name=payload.app_name,
                        app_url=payload.app_url,
                        service_owner=payload.service_owner,
                        service_manager=payload.service_manager,
                    )
                )

        _flash(request, f"Client '{spec.client_id}' created (id={created_id}).", category="success")
        return _redirect(request.url_for("index"))

    # ------------------------------------------------------------------
    # Admin: user access grants
    # ------------------------------------------------------------------
    def _user_clients_url(request: Request, **params: Any):
        cleaned = {key: value for key, value in params.items() if value not in (None, "")}
        return request.url_for("user_clients").include_query_params(**cleaned)

    @app.get("/Admin/UserClients", response_class=HTMLResponse, name="user_clients")
    async def user_clients(request: Request):
        principal = _get_principal(request)
        denied = _gate(request, principal, admin=True)
        if denied is not None:
            return denied

        params = request.query_params
        client_query = (params.get("clientQuery") or "").strip()
        user_query = (params.get("userQuery") or "").strip()
        client_page = _int_param(params.get("clientPage"), 1)
        user_page = _int_param(params.get("userPage"), 1)
        selected_client_id = _clean_param(params.get("selectedClientId"))
        selected_client_realm = _clean_param(params.get("selectedClientRealm"))
        selected_client_name = _clean_param(params.get("selectedClientName"))
        selected_username = _clean_param(params.get("selectedUsername"))
        selected_user_display = _clean_param(params.get("selectedUserDisplay"))

        error: Optional[str] = None
        client_results: List[ClientSummary] = []
        if len(client_query) >= USER_CLIENTS_MIN_QUERY:
            try:
                client_results = await _search_all_realms(
                    _clients_for(principal), client_query, USER_CLIENTS_FETCH_LIMIT
                )
            except (KeycloakAdminError, httpx.HTTPError) as exc:
                error = _keycloak_failure_message(exc, "Client search failed")
        client_items, client_page, client_pages, client_has_next = _paginate(
            client_results, client_page, USER_CLIENTS_PAGE_SIZE
        )

        user_results = []
        if len(user_query) >= USER_CLIENTS_MIN_QUERY:
            try:
                user_results = await _run(
                    services.users.search_users, user_query, 0, USER_CLIENTS_FETCH_LIMIT
                )
            except (KeycloakAdminError, httpx.HTTPError) as exc:
                error = _keycloak_failure_message(exc, "User search failed")
        user_items, user_page, user_pages, user_has_next = _paginate(
            user_results, user_page, USER_CLIENTS_PAGE_SIZE
        )

        assignments = (
            services.user_clients.get_for_user(selected_username) if selected_username else []
        )
        if selected_client_id and selected_client_realm and not selected_client_name:
            selected_client_name = selected_client_id
        if selected_username and not selected_user_display:
            selected_user_display = selected_username

        return _render(
            request,
            "user_clients.html",
            principal,
            primary_realm=services.users.primary_realm,
            min_query=USER_CLIENTS_MIN_QUERY,
            client_query=client_query,
            user_query=user_query,
            client_query_too_short=0 < len(client_query) < USER_CLIENTS_MIN_QUERY,
            user_query_too_short=0 < len(user_query) < USER_CLIENTS_MIN_QUERY,
            client_items=client_items,
            client_page=client_page,
            client_pages=client_pages,
            client_has_next=client_has_next,
            user_items=user_items,
            user_page=user_page,
            user_pages=user_pages,
            user_has_next=user_has_next,
            selected_client_id=selected_client_id,
            selected_client_realm=selected_client_realm,
            selected_client_name=selected_client_name,
            selected_username=selected_username,
            selected_user_display=selected_user_display,
            can_grant=bool(selected_client_id and selected_client_realm and selected_username),
            assignments=assignments,
            error=error,
        )

    @app.post("/Admin/UserClients/grant", name="user_clients_grant")
    async def user_clients_grant(request: Request):
        principal = _get_principal(request)
        denied = _gate(request, principal, admin=True)
        if denied is not None:
            return denied

        form = await request.form()
        realm = _form_value(form, "realm")
        client_id = _form_value(form, "clientId")
        client_name = _form_value(form, "clientName")
        username = _form_value(form, "username")
        user_display = _form_value(form, "userDisplay") or username
        state = {
            "clientQuery": _form_value(form, "clientQuery"),
            "userQuery": _form_value(form, "userQuery"),
            "clientPage": _form_value(form, "clientPage"),
            "userPage": _form_value(form, "userPage"),
            "selectedUsername": username,
            "selectedUserDisplay": user_display,
            "selectedClientId": client_id,
            "selectedClientRealm": realm,
            "selectedClientName": client_name or client_id,
        }

        if not realm or not client_id or not username:
            _flash(request, "Select a client and a user before granting access.", category="error")
            return _redirect(_user_clients_url(request, **state))

        services.user_clients.add(
            username,
            ClientSummary(name=client_name or client_id, client_id=client_id, realm=realm),
        )
        services.audit_log.log("user-client:grant", principal.username, realm, client_id, f"user={username}")
        logger.info("%s granted %s access to %s in %s", principal.username, username, client_id, realm)
        _flash(request, f"User {username} granted: {client_id}", category="success")
        return _redirect(_user_clients_url(request, **state))

    @app.post("/Admin/UserClients/revoke", name="user_clients_revoke")
    async def user_clients_revoke(request: Request):
        principal = _get_principal(request)
        denied = _gate(request, principal, admin=True)
        if denied is not None:
            return denied

        form = await request.form()
        realm = _form_value(form, "realm")
        client_id = _form_value(form, "clientId")
        username = _form_value(form, "username")
        state = {
            "clientQuery": _form_value(form, "clientQuery"),
            "userQuery": _form_value(form, "userQuery"),
            "clientPage": _form_value(form, "clientPage"),
            "userPage": _form_value(form, "userPage"),
            "selectedUsername": username,
            "selectedUserDisplay": _form_value(form, "userDisplay") or username,
        }

        if not realm or not client_id or not username:
            _flash(request, "Could not determine which grant to remove.", category="error")
            return _redirect(_user_clients_url(request, **state))

        if services.user_clients.remove_for_user(username, client_id, realm):
            services.audit_log.log("user-client:revoke", principal.username, realm, client_id, f"user={username}")
            logger.info("%s revoked %s access to %s in %s", principal.username, username, client_id, realm)
            _flash(request, f"User {username} clients removed: {client_id}", category="success")
        else:
            _flash(request, f"User {username} has no access to {client_id}.", category="error")
        return _redirect(_user_clients_url(request, **state))

    # ------------------------------------------------------------------
    # Admin: service role exclusions
    # ------------------------------------------------------------------
    def _exclusions_url(request: Request, search_term: str = "", search_page: int = 1):
        url = request.url_for("service_role_exclusions")
        if search_term:
            url = url.include_query_params(searchTerm=search_term, searchPage=max(1, search_page))
        return url

    async def _client_exists_anywhere(clients: ClientsService, client_id: str) -> bool:
        realms = await _run(services.realms.realm_names)
        wanted = client_id.lower()
        for realm in realms:
            hits = await _run(clients.search_clients, realm, client_id, 0, EXCLUSIONS_SEARCH_FETCH)
            if any(hit.client_id.lower() == wanted for hit in hits):
                return True
        return False

    @app.get("/Admin/ServiceRoleExclusions", response_class=HTMLResponse, name="service_role_exclusions")
    async def service_role_exclusions(request: Request):
        principal = _get_principal(request)
        denied = _gate(request, principal, admin=True)
        if denied is not None:
            return denied

        search_term = (request.query_params.get("searchTerm") or "").strip()
        search_page = _int_param(request.query_params.get("searchPage"), 1)
        exclusions = services.exclusions.list_sorted()
        excluded = set(exclusions)

        matches: List[ClientSummary] = []
        search_error: Optional[str] = None
        too_short = 0 < len(search_term) < EXCLUSIONS_MIN_QUERY
        performed = len(search_term) >= EXCLUSIONS_MIN_QUERY
        if performed:
            try:
                found = await _search_all_realms(_clients_for(principal), search_term, EXCLUSIONS_SEARCH_FETCH)
            except (KeycloakAdminError, httpx.HTTPError) as exc:
                search_error = _keycloak_failure_message(exc, "Exclusion search failed")
                performed = False
            else:
                matches = sorted(found, key=lambda item: (item.client_id.lower(), item.realm.lower()))

        items, search_page, total_pages, has_next = _paginate(matches, search_page, EXCLUSIONS_PAGE_SIZE)
        results = [{"client": item, "excluded": item.client_id.lower() in excluded} for item in items]
        return _render(
            request,
            "exclusions.html",
            principal,
            exclusions=exclusions,
            search_term=search_term,
            search_page=search_page,
            total_pages=total_pages,
            has_next=has_next,
            total=len(matches),
            results=results,
            performed=performed,
            too_short=too_short,
            min_length=EXCLUSIONS_MIN_QUERY,
            search_error=search_error,
        )

    @app.post("/Admin/ServiceRoleExclusions/add", name="service_role_exclusions_add")
    async def service_role_exclusions_add(request: Request):
        principal = _get_principal(request)
        denied = _gate(request, principal, admin=True)
        if denied is not None:
            return denied

        form = await request.form()
        client_id = _form_value(form, "clientId")
        search_term = _form_value(form, "searchTerm")
        search_page = _int_param(_form_value(form, "searchPage"), 1)
        back = _exclusions_url(request, search_term, search_page)

        if not client_id:
            _flash(request, "Enter a clientId to exclude.", category="error")
            return _redirect(back)
        if services.exclusions.is_excluded(client_id):
            _flash(request, f"Client '{client_id}' is already excluded.", category="error")
            return _redirect(back)

        try:
            exists = await _client_exists_anywhere(_clients_for(principal), client_id)
        except KeycloakAccessDenied as exc:
            logger.error("Insufficient rights to look up client %s: %s", client_id, exc)
            _flash(request, "Insufficient rights to search clients in Keycloak.", category="error")
            return _redirect(back)
        except httpx.HTTPError:
            logger.exception("Keycloak request failed while looking up client %s", client_id)
            _flash(request, "Keycloak could not be reached. Try again later.", category="error")
            return _redirect(back)
        except KeycloakAdminError:
            logger.exception("Could not verify client %s", client_id)
            _flash(request, "Could not verify the client. Try again later.", category="error")
            return _redirect(back)

        if not exists:
            _flash(request, f"Client '{client_id}' not found in Keycloak.", category="error")
            return _redirect(back)
        if not services.exclusions.add(client_id):
            _flash(request, f"Client '{client_id}' is already excluded.", category="error")
            return _redirect(back)

        stored = client_id.lower()
        services.audit_log.log(
            "client_ex:add", principal.username, "-", stored, f"Client added to exclusions - {client_id}"
        )
        logger.info("%s added client %s to service role exclusions", principal.username, stored)
        _flash(request, f"Client '{client_id}' added to exclusions.", category="success")
        return _redirect(back)

    @app.post("/Admin/ServiceRoleExclusions/remove", name="service_role_exclusions_remove")
    async def service_role_exclusions_remove(request: Request):
        principal = _get_principal(request)
        denied = _gate(request, principal, admin=True)
        if denied is not None:
            return denied

        form = await request.form()
        client_id = _form_value(form, "clientId")
        back = _exclusions_url(request, _form_value(form, "searchTerm"), _int_param(_form_value(form, "searchPage"), 1))
        if not client_id:
            _flash(request, "Could not determine the clientId to remove.", category="error")
            return _redirect(back)

        removed = services.exclusions.remove(client_id)
        if removed is None:
            _flash(request, f"Client '{client_id}' is not in the exclusion list.", category="error")
            return _redirect(back)

        services.audit_log.log(
            "client_ex:remove", principal.username, "-", removed, f"Client removed from exclusions - {client_id}"
        )
        logger.info("%s removed client %s from service role exclusions", principal.username, removed)
        _flash(request, f"Client '{client_id}' removed from exclusions.", category="success")
        return _redirect(back)

    @app.get("/Admin/ServiceRoleExclusions/lookup", name="service_role_exclusions_lookup")
    async def service_role_exclusions_lookup(request: Request):
        principal = _get_principal(request)
        denied = _gate(request, principal, admin=True)
        if denied is not None:
            return denied

        query = (request.query_params.get("q") or "").strip()
        if len(query) < EXCLUSIONS_MIN_QUERY:
            return JSONResponse(content=[])

        clients = _clients_for(principal)
        try:
            realms = await _run(services.realms.realm_names)
            collected: Dict[str, str] = {}
            for realm in realms:
                hits = await _run(clients.search_clients, realm, query, 0, EXCLUSIONS_LOOKUP_FETCH)
                for hit in hits:
                    if hit.client_id:
                        collected.setdefault(hit.client_id.lower(), hit.client_id)
        except KeycloakAccessDenied as exc:
            logger.error("Insufficient rights to search clients for %r: %s", query, exc)
            return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content=[])
        except httpx.HTTPError:
            logger.exception("Keycloak request failed while searching clients for %r", query)
            return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content=[])
        except KeycloakAdminError:
            logger.exception("Client lookup for %r failed", query)
            return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=[])

        values = sorted(collected.values(), key=str.lower)[:EXCLUSIONS_LOOKUP_MAX]
        return JSONResponse(content=values)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    @app.get("/Admin/Events", response_class=HTMLResponse, name="audit_events")
    async def audit_events(request: Request):
        principal = _get_principal(request)
        denied = _gate(request, principal, admin=True)
        if denied is not None:
            return denied

        params = request.query_params
        username = _clean_param(params.get("username"))
        operation_type = _clean_param(params.get("operationType"))
        from_raw = _clean_param(params.get("from"))
        to_raw = _clean_param(params.get("to"))
        limit = _int_param(params.get("limit"), AUDIT_DEFAULT_LIMIT)
        if limit <= 0:
            limit = AUDIT_DEFAULT_LIMIT
        limit = min(limit, AUDIT_MAX_LIMIT)

        entries = services.audit_log.get_logs(
            username=username,
            operation_type=operation_type,
            from_utc=_parse_local_datetime(from_raw),
            to_utc=_parse_local_datetime(to_raw),
            limit=limit,
        )
        return _render(
            request,
            "audit_events.html",
            principal,
            entries=entries,
            operation_types=services.audit_log.get_operation_types(),
            username=username or "",
            operation_type=operation_type or "",
            from_value=from_raw or "",
            to_value=to_raw or "",
            limit=limit,
            max_limit=AUDIT_MAX_LIMIT,
        )

    @app.get("/Clients/Events", response_class=HTMLResponse, name="client_events")
    async def client_events(request: Request):
        principal = _get_principal(request)
        denied = _gate(request, principal)
        if denied is not None:
            return denied

        params = request.query_params
        realm = _clean_param(params.get("realm"))
        client_id = _clean_param(params.get("clientId"))
        if not realm or not client_id:
            return _error_page(request, principal, status.HTTP_400_BAD_REQUEST, "Realm and clientId are required.")
        if not _can_access(principal, realm, client_id):
            return _error_page(request, principal, status.HTTP_403_FORBIDDEN, "You have no access to this client.")

        event_type = _clean_param(params.get("type"))
        user_filter = _clean_param(params.get("user"))
        ip_filter = _clean_param(params.get("ip"))
        from_raw = _clean_param(params.get("from"))
        to_raw = _clean_param(params.get("to"))

        error: Optional[str] = None
        entries = []
        event_types: List[str] = []
        try:
            event_types = await _run(services.events.get_event_types, realm)
            entries = await _run(
                services.events.get_events,
                realm,
                client_id,
                event_type,
                _parse_local_datetime(from_raw),
                _parse_local_datetime(to_raw),
                user_filter,
                ip_filter,
                CLIENT_EVENTS_MAX,
            )
        except (KeycloakAdminError, httpx.HTTPError) as exc:
            error = _keycloak_failure_message(exc, f"Loading events for {client_id} failed")

        return _render(
            request,
            "client_events.html",
            principal,
            realm=realm,
            client_id=client_id,
            entries=entries,
            event_types=event_types,
            event_type=event_type or "",
            user_filter=user_filter or "",
            ip_filter=ip_filter or "",
            from_value=from_raw or "",
            to_value=to_raw or "",
            error=error,
        )

    # ------------------------------------------------------------------
    # API
    # ------------------------------------------------------------------
    async def _client_secret(request: Request, regenerate: bool) -> Response:
        principal = _get_principal(request)
        if principal is None:
            return _json_error(status.HTTP_401_UNAUTHORIZED, "Authentication required.")

        realm = (request.query_params.get("realm") or "").strip()
        client_id = (request.query_params.get("clientId") or "").strip()
        action = "regenerate" if regenerate else "read"
        logger.info("%s requested client secret %s for %s in %s", principal.username, action, client_id, realm)

        if not realm or not client_id or not _can_access(principal, realm, client_id):
            return _json_error(status.HTTP_403_FORBIDDEN, "Access denied.")

        clients = _clients_for(principal)
        operation = clients.regenerate_client_secret if regenerate else clients.get_client_secret
        try:
            secret = await _run(operation, realm, client_id)
        except (KeycloakAdminError, httpx.HTTPError) as exc:
            return _json_keycloak_error(exc, f"Client secret {action} for {client_id} failed")
        if secret is None:
            return _json_error(status.HTTP_404_NOT_FOUND, "Client secret not found.")

        return JSONResponse(
            content={"secret": secret},
            headers={"Cache-Control": "no-store", "Pragma": "no-cache"},
        )

    @app.get("/api/client-secret", name="client_secret")
    async def client_secret(request: Request):
        return await _client_secret(request, regenerate=False)

    @app.post("/api/client-secret", name="client_secret_regenerate")
    async def client_secret_regenerate(request: Request):
        return await _client_secret(request, regenerate=True)

    @app.post("/api/access-request", name="access_request")
    async def access_request(request: Request):
        principal = _get_principal(request)
        if principal is None:
            return _json_error(status.HTTP_401_UNAUTHORIZED, "Authentication required.")

        login = principal.username
        if services.access_requests is None:
            return _json_error(status.HTTP_503_SERVICE_UNAVAILABLE, "Access requests by e-mail are not configured.")

        try:
            await _run(services.access_requests.send, login)
        except AccessRequestNotConfigured as exc:
            logger.error("Access request from %s failed: %s", login, exc)
            return _json_error(status.HTTP_503_SERVICE_UNAVAILABLE, str(exc))
        except AccessRequestError:
            return _json_error(status.HTTP_502_BAD_GATEWAY, "Could not send the request. Try again later.")

        logger.info("%s asked support for access", login)
        return JSONResponse(content={"status": "ok", "message": "Your request was sent to support."})

    @app.get("/healthz", name="healthz")
    async def healthz():
        checks: Dict[str, str] = {}
        try:
            checks["database"] = "Healthy" if await _run(services.database.ping) else "Unhealthy"
        except sqlite3.Error:
            logger.exception("Database health check failed")
            checks["database"] = "Unhealthy"
        try:
            await _run(services.oidc.get_discovery_doc)
            checks["keycloak"] = "Healthy"
        except OIDCError as exc:
            logger.warning("Keycloak health check failed: %s", exc)
            checks["keycloak"] = "Unhealthy"

        healthy = all(value == "Healthy" for value in checks.values())
        return JSONResponse(
            status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "Healthy" if healthy else "Unhealthy", "checks": checks},
        )

    return app


__all__ = ["AppServices", "create_app"]
