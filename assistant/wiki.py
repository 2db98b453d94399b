"""Publish a Confluence page that documents a newly created client.

Publishing is best effort: a missing configuration or a failed request is
logged and never interrupts client creation.
"""
from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import httpx

from .config import load_yaml_file
from .models import ServiceRolePair


logger = logging.getLogger("assistant.wiki")

DEFAULT_TEMPLATE_TITLE = "Client configuration ClientID"
DEFAULT_TEMPLATE_BODY = (
    "<table><tbody>"
    "<tr><th>Information system</th>{{INFO_SYSTEM_CELL}}</tr>"
    "<tr><th>Realm</th>{{REALM_CELL}}</tr>"
    "<tr><th>Client ID</th><td>{{CLIENT_ID}}</td></tr>"
    "<tr><th>Access type</th><td>{{ACCESS_TYPE}}</td></tr>"
    "<tr><th>Service owner</th>{{SERVICE_OWNER_CELL}}</tr>"
    "<tr><th>Service manager</th>{{SERVICE_MANAGER_CELL}}</tr>"
    "</tbody></table>"
    "<h2>Redirect URIs</h2>{{REDIRECT_TABLE}}"
    "<h2>Local roles</h2>{{LOCAL_ROLES_TABLE}}"
    "<h2>Service roles</h2>{{SERVICE_ROLES_TABLE}}"
)

ENVIRONMENTS = ("TEST", "STAGE", "PROD")

_CONNECTION_KEYS = {
    "baseurl": "base_url",
    "user": "username",
    "username": "username",
    "password": "password",
    "spacekey": "space_key",
    "parentid": "parent_page_id",
}

_TABLE_OPEN = (
    '<p class="auto-cursor-target"><br /></p>'
    '<table class="wrapped" data-mce-resize="false">'
    "<colgroup><col /><col /><col /></colgroup><tbody>"
)
_TABLE_CLOSE = "</tbody></table>"


@dataclass(frozen=True)
class ConfluenceOptions:
    base_url: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    space_key: Optional[str] = None
    parent_page_id: Optional[str] = None
    labels: Tuple[str, ...] = ()

    @property
    def is_configured(self) -> bool:
        return all(
            value and value.strip()
            for value in (
                self.base_url,
                self.username,
                self.password,
                self.space_key,
                self.parent_page_id,
            )
        )

    @classmethod
    def from_connection_string(
        cls, value: Optional[str], labels: Sequence[str] = ()
    ) -> "ConfluenceOptions":
        """Parse ``BaseUrl=...;User=...;Password=...;SpaceKey=...;ParentId=...``."""

        values: Dict[str, str] = {}
        for part in (value or "").split(";"):
            key, sep, raw = part.partition("=")
            if not sep:
                continue
            attribute = _CONNECTION_KEYS.get(key.strip().lower())
            if attribute:
                values[attribute] = raw.strip()
        return cls(labels=tuple(labels), **values)


@dataclass(frozen=True)
class WikiTemplate:
    title: str = DEFAULT_TEMPLATE_TITLE
    body: str = DEFAULT_TEMPLATE_BODY


def load_wiki_template(path: Optional[Path]) -> WikiTemplate:
    if path is None or not path.exists():
        logger.warning("Wiki template %s not found, using the built-in template", path)
        return WikiTemplate()
    data = load_yaml_file(path)
    return WikiTemplate(
        title=str(data.get("title") or DEFAULT_TEMPLATE_TITLE),
        body=str(data.get("body") or DEFAULT_TEMPLATE_BODY),
    )


@dataclass(frozen=True)
class ClientWikiPayload:
    realm: str
    client_id: str
    client_name: str
    access_type: str
    redirect_uris: List[str] = field(default_factory=list)
    local_roles: List[str] = field(default_factory=list)
    service_roles: List[ServiceRolePair] = field(default_factory=list)
    app_name: Optional[str] = None
    app_url: Optional[str] = None
    service_owner: Optional[str] = None
    service_manager: Optional[str] = None


def _escape(value: Optional[str]) -> str:
    return html.escape(value or "", quote=True)


def build_title(template_title: str, client_id: str) -> str:
    if template_title and template_title.strip():
        adjusted = re.sub("clientid", lambda _: client_id, template_title, flags=re.IGNORECASE).strip()
        if adjusted:
            return adjusted
    return f"Client configuration {client_id}"


def environment_for(uri: str) -> str:
    value = uri.lower()
    if "prod" in value and "preprod" not in value:
        return "PROD"
    if "stage" in value or "stg" in value or "preprod" in value:
        return "STAGE"
    return "TEST"


def _info_system_cell(payload: ClientWikiPayload) -> str:
    name = _escape(payload.app_name if payload.app_name and payload.app_name.strip() else payload.client_name)
    if payload.app_url and payload.app_url.strip():
        return f'<td><a href="{_escape(payload.app_url)}">{name}</a></td>'
    return f"<td>{name}</td>"


def _person_cell(name: Optional[str]) -> str:
    display = _escape(name) if name and name.strip() else "—"
    return f'<td><div class="content-wrapper"><p>{display}</p></div></td>'


def _header_row(*titles: str) -> str:
    cells = "".join(f'<th scope="col">{title}</th>' for title in titles)
    return f"<tr>{cells}</tr>"


def build_redirect_table(redirects: Sequence[str]) -> str:
    grouped: Dict[str, List[str]] = {name: [] for name in ENVIRONMENTS}
    for uri in redirects:
        grouped[environment_for(uri)].append(_escape(uri))

    cells = []
    for name in ENVIRONMENTS:
        entries = grouped[name]
        if entries:
            content = "<br />".join(f'<span class="nolink">{entry}</span>' for entry in entries)
        else:
            content = "—"
        cells.append(f"<td>{content}</td>")
    return _TABLE_OPEN + _header_row(*ENVIRONMENTS) + f"<tr>{''.join(cells)}</tr>" + _TABLE_CLOSE


def build_local_roles_table(roles: Sequence[str]) -> str:
    rows = [_header_row("Role Name", "Description", "Environment")]
    if not roles:
        rows.append('<tr><td colspan="3">—</td></tr>')
    for role in roles:
        rows.append(f"<tr><td>{_escape(role)}</td><td>—</td><td>—</td></tr>")
    return _TABLE_OPEN + "".join(rows) + _TABLE_CLOSE


def build_service_roles_table(service_roles: Sequence[ServiceRolePair]) -> str:
    rows = [_header_row("Role Name", "Client", "Environment")]
    if not service_roles:
        rows.append('<tr><td colspan="3">—</td></tr>')
    for client_id, role in service_roles:
        rows.append(f"<tr><td>{_escape(role)}</td><td>{_escape(client_id)}</td><td>—</td></tr>")
    return _TABLE_OPEN + "".join(rows) + _TABLE_CLOSE


def build_page_body(template_body: str, payload: ClientWikiPayload) -> str:
    replacements = {
        "{{INFO_SYSTEM_CELL}}": _info_system_cell(payload),
        "{{REALM_CELL}}": f"<td>{_escape(payload.realm)}</td>",
        "{{CLIENT_ID}}": _escape(payload.client_id),
        "{{CLIENT_NAME}}": _escape(payload.client_name),
        "{{ACCESS_TYPE}}": _escape(payload.access_type),
        "{{SERVICE_OWNER_CELL}}": _person_cell(payload.service_owner),
        "{{SERVICE_MANAGER_CELL}}": _person_cell(payload.service_manager),
        "{{REDIRECT_TABLE}}": build_redirect_table(payload.redirect_uris),
        "{{LOCAL_ROLES_TABLE}}": build_local_roles_table(payload.local_roles),
        "{{SERVICE_ROLES_TABLE}}": build_service_roles_table(payload.service_roles),
    }
    result = template_body
    for placeholder, value in replacements.items():
        result = result.replace(placeholder, value)
    return result


class ConfluenceWikiService:
    def __init__(
        self,
        options: ConfluenceOptions,
        template: WikiTemplate,
        *,
        client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
    ) -> None:
        self._options = options
        self._template = template
        if client is None:
            client = httpx.Client(
                base_url=(options.base_url or "").rstrip("/"),
                auth=(options.username or "", options.password or ""),
                timeout=timeout,
            )
        self._client = client

    @property
    def options(self) -> ConfluenceOptions:
        return self._options

    def build_request_body(self, payload: ClientWikiPayload) -> Dict[str, object]:
        body: Dict[str, object] = {
            "type": "page",
            "title": build_title(self._template.title, payload.client_id),
            "space": {"key": self._options.space_key},
            "ancestors": [{"id": self._options.parent_page_id}],
            "body": {
                "storage": {
                    "value": build_page_body(self._template.body, payload),
                    "representation": "storage",
                }
            },
        }
        if self._options.labels:
            body["metadata"] = {
                "labels": [{"prefix": "global", "name": label} for label in self._options.labels]
            }
        return body

    def create_page(self, payload: ClientWikiPayload) -> Optional[str]:
        """Create the page and return its id, or ``None`` when nothing was published."""

        if not self._options.is_configured:
            logger.debug(
                "Confluence connection is not configured, skipping page for %s", payload.client_id
            )
            return None

        try:
            response = self._client.post("/rest/api/content", json=self.build_request_body(payload))
        except httpx.HTTPError:
            logger.exception("Failed to reach Confluence while creating page for %s", payload.client_id)
            return None

        if not response.is_success:
            logger.error(
                "Failed to create Confluence page for %s: status %s, response %s",
                payload.client_id,
                response.status_code,
                response.text[:2048],
            )
            return None

        try:
            data = response.json()
        except ValueError:
            logger.error("Confluence returned invalid JSON for %s", payload.client_id)
            return None
        page_id = data.get("id") if isinstance(data, dict) else None
        if page_id is None:
            logger.error("Confluence response for %s has no page id", payload.client_id)
            return None
        logger.info("Created Confluence page %s for %s", page_id, payload.client_id)
        return str(page_id)

    def close(self) -> None:
        self._client.close()


__all__ = [
    "ClientWikiPayload",
    "ConfluenceOptions",
    "ConfluenceWikiService",
    "WikiTemplate",
    "build_page_body",
    "build_title",
    "environment_for",
    "load_wiki_template",
]
