"""Wire the Keycloak services, repositories and the web layer together."""
from __future__ import annotations

import logging
from typing import Mapping, Optional

from fastapi import FastAPI

from .access_requests import AccessRequestSender
from .admin_http import KeycloakAdminHttp
from .clients import ClientsService
from .config import Settings
from .database import (
    ApiLogRepository,
    ClientWikiRepository,
    Database,
    ServiceRoleExclusionsRepository,
    UserClientsRepository,
    resolve_database_path,
)
from .events import EventsService
from .oidc import OIDCClient
from .realm_links import RealmLinkProvider
from .realms import RealmsService
from .tokens import AdminTokenProvider
from .users import UsersService
from .web import AppServices, create_app
from .wiki import ConfluenceOptions, ConfluenceWikiService, load_wiki_template


logger = logging.getLogger("assistant.application")


def _build_wiki(settings: Settings) -> Optional[ConfluenceWikiService]:
    options = ConfluenceOptions.from_connection_string(settings.confluence, settings.confluence_labels)
    if not options.is_configured:
        logger.info("Confluence is not configured, wiki pages will not be published")
        return None
    return ConfluenceWikiService(options, load_wiki_template(settings.wiki_template_path))


def _build_access_requests(settings: Settings) -> Optional[AccessRequestSender]:
    if not settings.smtp.is_configured:
        logger.info("SMTP is not configured, access requests cannot be mailed")
        return None
    return AccessRequestSender(settings.smtp)


def build_services(settings: Settings) -> AppServices:
    """Create every service described by ``settings``."""

    database = Database(resolve_database_path(settings.database_path))
    database.initialize()

    admin = settings.admin
    tokens = AdminTokenProvider(admin)
    http = KeycloakAdminHttp(
        admin.base_url,
        tokens,
        timeout=admin.timeout,
        verify=admin.verify,
    )

    exclusions = ServiceRoleExclusionsRepository(database)
    audit_log = ApiLogRepository(database)

    return AppServices(
        database=database,
        user_clients=UserClientsRepository(database),
        exclusions=exclusions,
        audit_log=audit_log,
        wiki_pages=ClientWikiRepository(database),
        clients=ClientsService(http, exclusions, audit_log),
        realms=RealmsService(http),
        users=UsersService(http, settings.keycloak.primary_realm),
        events=EventsService(http),
        oidc=OIDCClient(settings.keycloak),
        realm_links=RealmLinkProvider(settings.realm_links_path),
        wiki=_build_wiki(settings),
        access_requests=_build_access_requests(settings),
    )


def create_application(*, environ: Optional[Mapping[str, str]] = None) -> FastAPI:
    """Create the ASGI application from ``ASSISTANT_*`` settings."""

    settings = Settings.from_env(environ)
    services = build_services(settings)
    logger.info("Using database at %s", services.database.path)
    return create_app(
        services=services,
        session_secret=settings.session_secret,
        session_secure=settings.session_secure,
    )


__all__ = ["build_services", "create_application"]
