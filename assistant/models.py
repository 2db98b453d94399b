"""Domain models shared by the Keycloak services, repositories and pages."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple


ServiceRolePair = Tuple[str, str]


@dataclass(frozen=True)
class ClientSummary:
    """A client application as shown in listings and stored in access grants."""

    name: str
    client_id: str
    realm: str
    enabled: bool = True
    flow_standard: bool = False
    flow_service: bool = False

    @property
    def display_name(self) -> str:
        return self.name if self.name and self.name.strip() else self.client_id

    @classmethod
    def for_lookup(cls, realm: str, client_id: str, name: Optional[str] = None) -> "ClientSummary":
        return cls(
            name=name if name and name.strip() else client_id,
            client_id=client_id,
            realm=realm,
        )


@dataclass(frozen=True)
class ClientShort:
    id: str
    client_id: str


@dataclass(frozen=True)
class ClientDetails:
    """Full view of a client together with its roles and redirect URIs."""

    id: str
    client_id: str
    enabled: bool
    description: Optional[str]
    client_auth: bool
    standard_flow: bool
    service_account: bool
    redirect_uris: List[str] = field(default_factory=list)
    local_roles: List[str] = field(default_factory=list)
    service_roles: List[ServiceRolePair] = field(default_factory=list)
    default_scopes: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class RoleHit:
    client_uuid: str
    client_id: str
    role: str


@dataclass(frozen=True)
class NewClientSpec:
    realm: str
    client_id: str
    description: Optional[str]
    client_authentication: bool
    standard_flow: bool
    service_account: bool
    redirect_uris: List[str] = field(default_factory=list)
    local_roles: List[str] = field(default_factory=list)
    service_roles: List[ServiceRolePair] = field(default_factory=list)


@dataclass(frozen=True)
class UpdateClientSpec:
    realm: str
    current_client_id: str
    client_id: str
    enabled: bool
    description: Optional[str]
    client_auth: bool
    standard_flow: bool
    service_account: bool
    redirect_uris: List[str] = field(default_factory=list)
    local_roles: List[str] = field(default_factory=list)
    service_roles: List[ServiceRolePair] = field(default_factory=list)


@dataclass(frozen=True)
class ClientChange:
    """Outcome of an update: human readable diff lines and deleted local roles."""

    changes: List[str] = field(default_factory=list)
    removed_roles: List[str] = field(default_factory=list)

    @property
    def summary(self) -> str:
        return "; ".join(self.changes) if self.changes else "no changes"


@dataclass(frozen=True)
class RealmInfo:
    realm: str
    id: Optional[str] = None
    display_name: Optional[str] = None
    enabled: Optional[bool] = None


@dataclass(frozen=True)
class UserSearchResult:
    username: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None

    @property
    def display_name(self) -> str:
        name = " ".join(part.strip() for part in (self.last_name, self.first_name) if part and part.strip())
        email = self.email.strip() if self.email and self.email.strip() else None
        if name and email:
            return f"{self.username} — {name} ({email})"
        if name:
            return f"{self.username} — {name}"
        if email:
            return f"{self.username} — {email}"
        return self.username


@dataclass(frozen=True)
class EventEntry:
    type: str
    at: datetime
    user: Optional[str]
    ip: Optional[str]


@dataclass(frozen=True)
class AuditLogEntry:
    id: int
    created_at: datetime
    operation_type: str
    username: str
    realm: str
    target_id: str
    details: Optional[str] = None


@dataclass(frozen=True)
class ClientWikiInfo:
    realm: str
    client_id: str
    page_id: str
    app_name: Optional[str] = None
    app_url: Optional[str] = None
    service_owner: Optional[str] = None
    service_manager: Optional[str] = None
    updated_at: Optional[datetime] = None


__all__ = [
    "AuditLogEntry",
    "ClientChange",
    "ClientDetails",
    "ClientShort",
    "ClientSummary",
    "ClientWikiInfo",
    "EventEntry",
    "NewClientSpec",
    "RealmInfo",
    "RoleHit",
    "ServiceRolePair",
    "UpdateClientSpec",
    "UserSearchResult",
]
