"""Pydantic models for the Keycloak Admin API payloads the assistant reads."""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class KeycloakModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ClientRepresentation(KeycloakModel):
    id: Optional[str] = None
    client_id: Optional[str] = None
    enabled: Optional[bool] = None
    description: Optional[str] = None
    public_client: Optional[bool] = None
    standard_flow_enabled: Optional[bool] = None
    service_accounts_enabled: Optional[bool] = None
    redirect_uris: Optional[List[Optional[str]]] = None
    default_client_scopes: Optional[List[Optional[str]]] = None


class RoleRepresentation(KeycloakModel):
    """Role payload; unknown attributes are preserved so it can be posted back."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: Optional[str] = None
    name: Optional[str] = None
    client_role: Optional[bool] = None
    container_id: Optional[str] = None


class UserRepresentation(KeycloakModel):
    id: Optional[str] = None
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None


class ClientMappingsRepresentation(KeycloakModel):
    id: Optional[str] = None
    client: Optional[str] = None
    mappings: Optional[List[RoleRepresentation]] = None


class RoleMappingsRepresentation(KeycloakModel):
    realm_mappings: Optional[List[RoleRepresentation]] = None
    client_mappings: Optional[Dict[str, ClientMappingsRepresentation]] = None


class ClientSecretRepresentation(KeycloakModel):
    type: Optional[str] = None
    value: Optional[str] = None


class RealmRepresentation(KeycloakModel):
    id: Optional[str] = None
    realm: Optional[str] = None
    display_name: Optional[str] = None
    enabled: Optional[bool] = None


class EventRepresentation(KeycloakModel):
    type: Optional[str] = None
    time: Optional[int] = None
    client_id: Optional[str] = None
    user_id: Optional[str] = None
    username: Optional[str] = None
    ip_address: Optional[str] = None
    details: Optional[Dict[str, Optional[str]]] = None


class EventsConfigRepresentation(KeycloakModel):
    enabled_event_types: Optional[List[str]] = None


__all__ = [
    "ClientMappingsRepresentation",
    "ClientRepresentation",
    "ClientSecretRepresentation",
    "EventRepresentation",
    "EventsConfigRepresentation",
    "KeycloakModel",
    "RealmRepresentation",
    "RoleMappingsRepresentation",
    "RoleRepresentation",
    "UserRepresentation",
]
