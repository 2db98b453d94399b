"""SQLite-backed persistence for access grants, exclusions, audit logs and wiki pages."""
from __future__ import annotations

import sqlite3
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, FrozenSet, List, Optional

from .models import AuditLogEntry, ClientSummary, ClientWikiInfo


DEFAULT_EXCLUDED_CLIENT_IDS = (
    "account",
    "account-console",
    "admin-cli",
    "broker",
    "realm-management",
    "security-admin-console",
)

EXCLUSIONS_CACHE_TTL_SECONDS = 5 * 60

AUDIT_DEFAULT_LIMIT = 200
AUDIT_MAX_LIMIT = 1000


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the application database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "assistant.sqlite3").resolve(strict=False)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_datetime(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Database:
    """Simple wrapper around SQLite shared by the repositories."""

    def __init__(self, path: Path) -> None:
        _ensure_directory(path)
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        with self.connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS user_clients (
                    username TEXT NOT NULL,
                    name TEXT NOT NULL,
                    client_id TEXT NOT NULL,
                    realm TEXT NOT NULL,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    flow_standard INTEGER NOT NULL DEFAULT 0,
                    flow_service INTEGER NOT NULL DEFAULT 0,
                    UNIQUE (username, client_id, realm)
                );

                CREATE TABLE IF NOT EXISTS service_role_exclusions (
                    client_id TEXT PRIMARY KEY
                );

                CREATE TABLE IF NOT EXISTS api_audit_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    created_at TEXT NOT NULL,
                    operation_type TEXT NOT NULL,
                    username TEXT NOT NULL,
                    realm TEXT NOT NULL,
                    target_id TEXT NOT NULL,
                    details TEXT
                );

                CREATE TABLE IF NOT EXISTS client_wiki_pages (
                    realm TEXT NOT NULL,
                    client_id TEXT NOT NULL,
                    page_id TEXT NOT NULL,
                    app_name TEXT,
                    app_url TEXT,
                    service_owner TEXT,
                    service_manager TEXT,
                    updated_at TEXT NOT NULL,
                    UNIQUE (realm, client_id)
                );

                CREATE INDEX IF NOT EXISTS idx_user_clients_username ON user_clients(username);
                CREATE INDEX IF NOT EXISTS idx_api_audit_logs_created_at ON api_audit_logs(created_at);
                """
            )

            columns = {
                row["name"]
                for row in conn.execute("PRAGMA table_info(api_audit_logs)").fetchall()
            }
            if "details" not in columns:
                conn.execute("ALTER TABLE api_audit_logs ADD COLUMN details TEXT")

            conn.executemany(
                "INSERT OR IGNORE INTO service_role_exclusions (client_id) VALUES (?)",
                [(client_id,) for client_id in DEFAULT_EXCLUDED_CLIENT_IDS],
            )

    def ping(self) -> bool:
        with self.connect() as conn:
            row = conn.execute("SELECT 1").fetchone()
        return row is not None and row[0] == 1


class UserClientsRepository:
    """Per-user access grants to client applications."""

    def __init__(self, database: Database) -> None:
        self._db = database

    def add(self, username: str, client: ClientSummary) -> None:
        with self._db.connect() as conn:
            conn.execute(
                """
                INSERT INTO user_clients (
                    username, name, client_id, realm, enabled, flow_standard, flow_service
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (username, client_id, realm) DO UPDATE SET
                    name = excluded.name,
                    enabled = excluded.enabled,
                    flow_standard = excluded.flow_standard,
                    flow_service = excluded.flow_service
                """,
                (
                    username,
                    client.name,
                    client.client_id,
                    client.realm,
                    int(client.enabled),
                    int(client.flow_standard),
                    int(client.flow_service),
                ),
            )

    def remove(self, client_id: str, realm: str) -> int:
        with self._db.connect() as conn:
            cursor = conn.execute(
                "DELETE FROM user_clients WHERE client_id = ? AND realm = ?",
                (client_id, realm),
            )
        return cursor.rowcount

    def remove_for_user(self, username: str, client_id: str, realm: str) -> bool:
        with self._db.connect() as conn:
            cursor = conn.execute(
                "DELETE FROM user_clients WHERE username = ? AND client_id = ? AND realm = ?",
                (username, client_id, realm),
            )
        return cursor.rowcount > 0

    def rename_client(self, realm: str, old_client_id: str, new_client_id: str) -> int:
        """Point every grant for ``old_client_id`` at ``new_client_id``."""

        if old_client_id == new_client_id:
            return 0
        with self._db.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE OR REPLACE user_clients
                SET client_id = ?
                WHERE client_id = ? AND realm = ?
                """,
                (new_client_id, old_client_id, realm),
            )
        return cursor.rowcount

    def get_for_user(self, username: str, is_admin: bool = False) -> List[ClientSummary]:
        query = "SELECT name, client_id, realm, enabled, flow_standard, flow_service FROM user_clients"
        params: tuple = ()
        if not is_admin:
            query += " WHERE username = ?"
            params = (username,)
        query += " ORDER BY realm COLLATE NOCASE, client_id COLLATE NOCASE"
        with self._db.connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_summary(row) for row in rows]

    def has_access(self, username: str, realm: str, client_id: str) -> bool:
        if not username or not realm or not client_id:
            return False
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM user_clients WHERE username = ? AND realm = ? AND client_id = ? LIMIT 1",
                (username, realm, client_id),
            ).fetchone()
        return row is not None

    @staticmethod
    def _row_to_summary(row: sqlite3.Row) -> ClientSummary:
        return ClientSummary(
            name=row["name"],
            client_id=row["client_id"],
            realm=row["realm"],
            enabled=bool(row["enabled"]),
            flow_standard=bool(row["flow_standard"]),
            flow_service=bool(row["flow_service"]),
        )


class ServiceRoleExclusionsRepository:
    """Clients whose roles must not be granted to other clients' service accounts."""

    def __init__(
        self,
        database: Database,
        *,
        ttl: float = EXCLUSIONS_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._db = database
        self._ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._cached: Optional[FrozenSet[str]] = None
        self._cached_at = 0.0
        self._version = 0

    @property
    def version(self) -> int:
        return self._version

    def get_all(self) -> FrozenSet[str]:
        """Return the lower-cased set of excluded client ids."""

        with self._lock:
            if self._cached is not None and self._clock() - self._cached_at < self._ttl:
                return self._cached
            with self._db.connect() as conn:
                rows = conn.execute("SELECT client_id FROM service_role_exclusions").fetchall()
            self._cached = frozenset(
                row["client_id"].lower() for row in rows if row["client_id"]
            )
            self._cached_at = self._clock()
            return self._cached

    def list_sorted(self) -> List[str]:
        return sorted(self.get_all(), key=str.lower)

    def is_excluded(self, client_id: Optional[str]) -> bool:
        if not client_id or not client_id.strip():
            return False
        return client_id.strip().lower() in self.get_all()

    def add(self, client_id: str) -> bool:
        normalized = (client_id or "").strip().lower()
        if not normalized:
            return False
        with self._db.connect() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO service_role_exclusions (client_id) VALUES (?)",
                (normalized,),
            )
        if cursor.rowcount > 0:
            self.invalidate_cache()
            return True
        return False

    def remove(self, client_id: str) -> Optional[str]:
        normalized = (client_id or "").strip()
        if not normalized:
            return None
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT client_id FROM service_role_exclusions WHERE lower(client_id) = lower(?)",
                (normalized,),
            ).fetchone()
            if row is None:
                return None
            conn.execute(
                "DELETE FROM service_role_exclusions WHERE client_id = ?",
                (row["client_id"],),
            )
        self.invalidate_cache()
        return row["client_id"]

    def invalidate_cache(self) -> None:
        with self._lock:
            self._cached = None
            self._cached_at = 0.0
            self._version += 1


class ApiLogRepository:
    """Audit trail of changes made through the assistant."""

    def __init__(self, database: Database) -> None:
        self._db = database

    def log(
        self,
        operation_type: str,
        username: str,
        realm: str,
        target_id: str,
        details: Optional[str] = None,
    ) -> None:
        with self._db.connect() as conn:
            conn.execute(
                """
                INSERT INTO api_audit_logs (
                    created_at, operation_type, username, realm, target_id, details
                )
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    _serialize_datetime(_current_timestamp()),
                    operation_type,
                    username,
                    realm,
                    target_id,
                    details,
                ),
            )

    def get_logs(
        self,
        *,
        username: Optional[str] = None,
        operation_type: Optional[str] = None,
        from_utc: Optional[datetime] = None,
        to_utc: Optional[datetime] = None,
        limit: int = AUDIT_DEFAULT_LIMIT,
    ) -> List[AuditLogEntry]:
        if limit <= 0:
            limit = AUDIT_DEFAULT_LIMIT
        limit = min(limit, AUDIT_MAX_LIMIT)

        clauses: List[str] = []
        params: List[object] = []
        if username:
            clauses.append("username = ?")
            params.append(username)
        if operation_type:
            clauses.append("operation_type = ?")
            params.append(operation_type)
        if from_utc is not None:
            clauses.append("created_at >= ?")
            params.append(_serialize_datetime(from_utc))
        if to_utc is not None:
            clauses.append("created_at <= ?")
            params.append(_serialize_datetime(to_utc))

        query = "SELECT * FROM api_audit_logs"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        with self._db.connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def get_operation_types(self) -> List[str]:
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT DISTINCT operation_type FROM api_audit_logs ORDER BY operation_type"
            ).fetchall()
        return [row["operation_type"] for row in rows]

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> AuditLogEntry:
        return AuditLogEntry(
            id=row["id"],
            created_at=_parse_datetime(row["created_at"]),
            operation_type=row["operation_type"],
            username=row["username"],
            realm=row["realm"],
            target_id=row["target_id"],
            details=row["details"],
        )


class ClientWikiRepository:
    """Mapping of clients to the Confluence page that documents them."""

    def __init__(self, database: Database) -> None:
        self._db = database

    def get(self, realm: str, client_id: str) -> Optional[ClientWikiInfo]:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM client_wiki_pages WHERE realm = ? AND client_id = ? LIMIT 1",
                (realm, client_id),
            ).fetchone()
        if row is None:
            return None
        return ClientWikiInfo(
            realm=row["realm"],
            client_id=row["client_id"],
            page_id=row["page_id"],
            app_name=row["app_name"],
            app_url=row["app_url"],
            service_owner=row["service_owner"],
            service_manager=row["service_manager"],
            updated_at=_parse_datetime(row["updated_at"]),
        )

    def set(self, info: ClientWikiInfo) -> None:
        with self._db.connect() as conn:
            conn.execute(
                """
                INSERT INTO client_wiki_pages (
                    realm, client_id, page_id, app_name, app_url,
                    service_owner, service_manager, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (realm, client_id) DO UPDATE SET
                    page_id = excluded.page_id,
                    app_name = excluded.app_name,
                    app_url = excluded.app_url,
                    service_owner = excluded.service_owner,
                    service_manager = excluded.service_manager,
                    updated_at = excluded.updated_at
                """,
                (
                    info.realm,
                    info.client_id,
                    info.page_id,
                    info.app_name,
                    info.app_url,
                    info.service_owner,
                    info.service_manager,
                    _serialize_datetime(_current_timestamp()),
                ),
            )

    def remove(self, realm: str, client_id: str) -> None:
        with self._db.connect() as conn:
            conn.execute(
                "DELETE FROM client_wiki_pages WHERE realm = ? AND client_id = ?",
                (realm, client_id),
            )


__all__ = [
    "ApiLogRepository",
    "ClientWikiRepository",
    "DEFAULT_EXCLUDED_CLIENT_IDS",
    "Database",
    "ServiceRoleExclusionsRepository",
    "UserClientsRepository",
    "resolve_database_path",
]
