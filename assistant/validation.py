"""Input rules for the client creation wizard and the client details form."""
from __future__ import annotations

import ipaddress
import json
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set
from urllib.parse import urlsplit

from .models import NewClientSpec, ServiceRolePair


CLIENT_ID_PREFIX = "app-bank-"
CLIENT_ID_MIN_LENGTH = 10
CLIENT_ID_MAX_LENGTH = 80
APP_NAME_MIN_LENGTH = 3
MAX_LOCAL_ROLES = 20

ROLE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9._:-]{2,63}$")
SERVICE_CLIENT_ID_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{2,60}$")
_CLIENT_SLUG_PATTERN = re.compile(r"^[a-z0-9-]+$", re.IGNORECASE)

# Field name -> wizard step that has to be reopened when it is invalid.
FIELD_STEPS: Dict[str, int] = {
    "realm": 1,
    "client_id": 2,
    "description": 2,
    "app_name": 3,
    "app_url": 3,
    "service_owner": 3,
    "service_manager": 3,
    "client_auth": 4,
    "flow_standard": 4,
    "flow_service": 4,
    "redirect_uris": 5,
    "local_roles": 6,
    "service_roles": 7,
}


def parse_string_list(raw: Optional[str]) -> List[str]:
    """Decode a JSON array of strings posted by the form; anything else is empty."""

    if not raw or not raw.strip():
        return []
    try:
        value = json.loads(raw)
    except ValueError:
        return []
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def normalize_distinct(items: Iterable[Optional[str]]) -> List[str]:
    seen: Set[str] = set()
    result: List[str] = []
    for item in items:
        cleaned = (item or "").strip()
        if not cleaned or cleaned.lower() in seen:
            continue
        seen.add(cleaned.lower())
        result.append(cleaned)
    return result


def parse_service_role_pairs(items: Iterable[str]) -> List[ServiceRolePair]:
    pairs: List[ServiceRolePair] = []
    for item in items:
        client_id, sep, role = (item or "").partition(":")
        if not sep:
            continue
        client_id = client_id.strip()
        role = role.strip()
        if client_id and role:
            pairs.append((client_id, role))
    return pairs


def is_valid_create_client_id(client_id: Optional[str]) -> bool:
    if not client_id or not client_id.strip():
        return False
    if not CLIENT_ID_MIN_LENGTH <= len(client_id) <= CLIENT_ID_MAX_LENGTH:
        return False
    if not client_id.lower().startswith(CLIENT_ID_PREFIX):
        return False
    return _CLIENT_SLUG_PATTERN.match(client_id[len(CLIENT_ID_PREFIX):]) is not None


def _is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def is_valid_http_url(value: str) -> bool:
    parts = urlsplit(value.strip())
    return parts.scheme.lower() in {"http", "https"} and bool(parts.netloc)


def _redirect_is_valid(uri: str) -> bool:
    candidate = uri
    star = uri.find("*")
    if star >= 0:
        if star != len(uri) - 1 or star == 0 or uri[star - 1] != "/":
            return False
        candidate = uri[:star]

    try:
        parts = urlsplit(candidate)
        host = parts.hostname or ""
    except ValueError:
        return False
    if not parts.scheme or not host:
        return False
    if parts.fragment or "#" in candidate:
        return False

    scheme = parts.scheme.lower()
    if scheme == "https":
        return True
    return scheme == "http" and (host.lower() == "localhost" or _is_ip_literal(host))


def find_invalid_redirects(redirects: Iterable[str]) -> List[str]:
    return [uri for uri in redirects if not _redirect_is_valid(uri)]


def find_invalid_local_roles(roles: Iterable[str]) -> List[str]:
    return [role for role in roles if ROLE_NAME_PATTERN.match(role) is None]


def find_invalid_service_role_entries(entries: Iterable[str], excluded: Set[str]) -> List[str]:
    """Return entries that are not ``client: role`` or point at an excluded client."""

    invalid: List[str] = []
    for entry in entries:
        index = entry.find(":")
        if index <= 0 or index >= len(entry) - 1:
            invalid.append(entry)
            continue
        client = entry[:index].strip()
        role = entry[index + 1:].strip()
        if (
            SERVICE_CLIENT_ID_PATTERN.match(client) is None
            or ROLE_NAME_PATTERN.match(role) is None
            or client.lower() in excluded
        ):
            invalid.append(entry)
    return invalid


def new_service_role_entries(entries: Iterable[str], held: Iterable[ServiceRolePair]) -> List[str]:
    """Drop entries naming a role the service account already holds."""

    held_keys = {(client.strip().lower(), role.strip().lower()) for client, role in held}
    fresh: List[str] = []
    for entry in entries:
        pairs = parse_service_role_pairs([entry])
        if pairs and (pairs[0][0].lower(), pairs[0][1].lower()) in held_keys:
            continue
        fresh.append(entry)
    return fresh


@dataclass
class FormErrors:
    """Validation messages collected per form field."""

    fields: Dict[str, List[str]] = field(default_factory=dict)

    def add(self, field_name: str, message: str) -> None:
        self.fields.setdefault(field_name, []).append(message)

    def __bool__(self) -> bool:
        return any(self.fields.values())

    def messages(self) -> List[str]:
        return [message for values in self.fields.values() for message in values]

    def step_to_show(self) -> int:
        steps = [FIELD_STEPS.get(name, 1) for name, values in self.fields.items() if values]
        return min(steps) if steps else 1


@dataclass
class CreateClientForm:
    realm: str = ""
    client_id: str = ""
    description: str = ""
    client_auth: bool = False
    flow_standard: bool = False
    flow_service: bool = False
    redirect_uris_json: str = "[]"
    local_roles_json: str = "[]"
    service_roles_json: str = "[]"
    app_name: str = ""
    app_url: str = ""
    service_owner: str = ""
    service_manager: str = ""

    def redirect_uris(self) -> List[str]:
        return normalize_distinct(parse_string_list(self.redirect_uris_json))

    def local_roles(self) -> List[str]:
        return normalize_distinct(parse_string_list(self.local_roles_json))

    def service_role_entries(self) -> List[str]:
        return normalize_distinct(parse_string_list(self.service_roles_json))

    def to_spec(self) -> NewClientSpec:
        return NewClientSpec(
            realm=self.realm.strip(),
            client_id=self.client_id.strip(),
            description=self.description.strip() or None,
            client_authentication=self.client_auth or self.flow_service,
            standard_flow=self.flow_standard,
            service_account=self.flow_service,
            redirect_uris=self.redirect_uris(),
            local_roles=self.local_roles(),
            service_roles=parse_service_role_pairs(self.service_role_entries()),
        )


def validate_create_form(
    form: CreateClientForm,
    *,
    realm_exists: Callable[[str], bool],
    excluded_clients: Set[str],
) -> FormErrors:
    """Check every rule of the creation wizard and collect the failures."""

    errors = FormErrors()

    realm = form.realm.strip()
    if not realm:
        errors.add("realm", "Select a realm.")
    elif not realm_exists(realm):
        errors.add("realm", "This realm does not exist.")

    if not is_valid_create_client_id(form.client_id.strip()):
        errors.add(
            "client_id",
            f"Client ID must start with '{CLIENT_ID_PREFIX}' and contain only latin letters, "
            f"digits and hyphens ({CLIENT_ID_MIN_LENGTH}-{CLIENT_ID_MAX_LENGTH} characters).",
        )

    if len(form.app_name.strip()) < APP_NAME_MIN_LENGTH:
        errors.add("app_name", f"Application name is required (at least {APP_NAME_MIN_LENGTH} characters).")
    if form.app_url.strip() and not is_valid_http_url(form.app_url):
        errors.add("app_url", "Enter a valid http or https URL.")

    if form.flow_service:
        form.client_auth = True

    redirects = form.redirect_uris()
    invalid_redirects = find_invalid_redirects(redirects)
    if invalid_redirects:
        errors.add("redirect_uris", f"Invalid redirect URIs: {', '.join(invalid_redirects)}")
    if form.flow_standard and not redirects:
        errors.add("redirect_uris", "Standard flow requires at least one redirect URI.")

    local_roles = form.local_roles()
    invalid_roles = find_invalid_local_roles(local_roles)
    if invalid_roles:
        errors.add("local_roles", f"Invalid local roles: {', '.join(invalid_roles)}")
    if len(local_roles) > MAX_LOCAL_ROLES:
        errors.add("local_roles", f"Too many local roles (at most {MAX_LOCAL_ROLES}).")

    invalid_service = find_invalid_service_role_entries(form.service_role_entries(), excluded_clients)
    if invalid_service:
        errors.add("service_roles", f"Invalid service roles: {', '.join(invalid_service)}")

    return errors


__all__ = [
    "CreateClientForm",
    "FIELD_STEPS",
    "FormErrors",
    "find_invalid_local_roles",
    "find_invalid_redirects",
    "find_invalid_service_role_entries",
    "is_valid_create_client_id",
    "is_valid_http_url",
    "new_service_role_entries",
    "normalize_distinct",
    "parse_service_role_pairs",
    "parse_string_list",
    "validate_create_form",
]
