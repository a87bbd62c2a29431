"""Persistence for domain mappings, transfer requests and the transfer log.

Two backends share the ``DomainRegistry`` interface:

- ``InMemoryRegistry`` for tests and embedding.
- ``SQLiteRegistry`` for self-hosted deployments, with a unique index on
  ``domain`` backing the uniqueness check.

Every multi-step write (uniqueness + quota + insert, owner change + log
append + request approval) happens in a single transaction.
"""

from __future__ import annotations

import asyncio
import copy
import sqlite3
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog

from domainmapper.core.exceptions import (
    ConflictError,
    LimitExceededError,
    NotFoundError,
    StateError,
    ValidationError,
)
from domainmapper.domains.models import (
    MAPPING_FIELDS,
    TRANSFER_REQUEST_FIELDS,
    DomainMapping,
    MappingStatus,
    SslStatus,
    TransferLogEntry,
    TransferRequest,
    TransferStatus,
)

logger = structlog.get_logger()

_MANAGED_FIELDS = frozenset({"id", "domain", "verification_token", "created_at", "updated_at"})


def _check_fields(fields: dict[str, Any], allowed: frozenset[str]) -> None:
    bad = set(fields) - (allowed - _MANAGED_FIELDS)
    if bad:
        raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(bad))}")


def _domain_conflict(domain: str) -> ConflictError:
    return ConflictError(f"Domain {domain} is already mapped", {"domain": domain})


def _quota_exceeded(owner_id: str, limit: int) -> LimitExceededError:
    return LimitExceededError(
        f"Owner {owner_id} has reached the limit of {limit} domain(s)",
        {"owner_id": owner_id, "limit": limit},
    )


def _check_owner(current: DomainMapping, expected_owner_id: str | None) -> None:
    if expected_owner_id is not None and current.owner_id != expected_owner_id:
        raise StateError(
            f"Owner of {current.domain} is {current.owner_id}, expected {expected_owner_id}",
            {"id": current.id, "owner_id": current.owner_id, "expected": expected_owner_id},
        )


class DomainRegistry(ABC):
    """Abstract registry of domain mappings."""

    @abstractmethod
    async def create(self, mapping: DomainMapping, max_per_owner: int | None = None) -> str:
        """Insert a mapping.

        Args:
            mapping: The new mapping.
            max_per_owner: Quota for the mapping's owner, checked in the same
                transaction as the insert.

        Returns:
            The mapping id.

        Raises:
            ConflictError: If the domain is already mapped by any owner.
            LimitExceededError: If the owner already holds max_per_owner mappings.
        """

    @abstractmethod
    async def get(self, mapping_id: str) -> DomainMapping:
        """Get a mapping by id, raising NotFoundError if absent."""

    @abstractmethod
    async def find_by_domain(self, domain: str) -> DomainMapping | None:
        """Get a mapping by its normalized domain."""

    @abstractmethod
    async def list(
        self,
        owner_id: str | None = None,
        status: MappingStatus | None = None,
        ssl_statuses: Iterable[SslStatus] | None = None,
        page: int = 1,
        per_page: int = 20,
    ) -> list[DomainMapping]:
        """List mappings, newest first."""

    @abstractmethod
    async def count(self, owner_id: str) -> int:
        """Number of mappings held by an owner."""

    @abstractmethod
    async def update(
        self,
        mapping_id: str,
        expected_status: MappingStatus | None = None,
        **fields: Any,
    ) -> DomainMapping:
        """Update mapping fields.

        Args:
            mapping_id: Mapping to update.
            expected_status: When given, the update only applies if the stored
                status still equals it.
            fields: Field values to set.

        Raises:
            NotFoundError: If the mapping does not exist.
            StateError: If expected_status does not match.
        """

    @abstractmethod
    async def delete(self, mapping_id: str) -> None:
        """Delete a mapping and its transfer requests. The transfer log is kept."""

    @abstractmethod
    async def transfer_owner(
        self,
        mapping_id: str,
        new_owner_id: str,
        log_entry: TransferLogEntry,
        max_per_owner: int | None = None,
        request_id: str | None = None,
        expected_owner_id: str | None = None,
    ) -> DomainMapping:
        """Move a mapping to a new owner and append the audit entry atomically.

        The entry's old_owner_id is taken from the stored mapping inside the
        transaction. When request_id is given, that pending transfer request is
        marked approved in the same transaction.

        Raises:
            StateError: If expected_owner_id is given and no longer owns the
                mapping, or the request is not pending.
        """

    @abstractmethod
    async def list_transfer_logs(self, mapping_id: str | None = None) -> list[TransferLogEntry]:
        """List transfer log entries, oldest first."""

    @abstractmethod
    async def create_transfer_request(self, request: TransferRequest) -> str:
        """Insert a transfer request.

        Raises:
            ConflictError: If a pending request exists for the same mapping and requester.
        """

    @abstractmethod
    async def get_transfer_request(self, request_id: str) -> TransferRequest:
        """Get a transfer request, raising NotFoundError if absent."""

    @abstractmethod
    async def update_transfer_request(
        self,
        request_id: str,
        expected_status: TransferStatus | None = None,
        **fields: Any,
    ) -> TransferRequest:
        """Update a transfer request with optional compare-and-set on status."""

    @abstractmethod
    async def list_transfer_requests(
        self,
        status: TransferStatus | None = None,
        owner_id: str | None = None,
        mapping_id: str | None = None,
    ) -> list[TransferRequest]:
        """List transfer requests, newest first. owner_id matches either party."""

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryRegistry(DomainRegistry):
    """Registry kept in process memory.

    A single asyncio lock serializes writes. Multi-step writes snapshot the
    tables first and restore them if any step fails.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._mappings: dict[str, DomainMapping] = {}
        self._requests: dict[str, TransferRequest] = {}
        self._logs: list[TransferLogEntry] = []

    def _get(self, mapping_id: str) -> DomainMapping:
        mapping = self._mappings.get(mapping_id)
        if mapping is None:
            raise NotFoundError(f"Domain mapping {mapping_id} not found", {"id": mapping_id})
        return mapping

    def _count(self, owner_id: str) -> int:
        return sum(1 for m in self._mappings.values() if m.owner_id == owner_id)

    @contextmanager
    def _atomic(self) -> Iterator[None]:
        snapshot = (
            copy.deepcopy(self._mappings),
            copy.deepcopy(self._requests),
            list(self._logs),
        )
        try:
            yield
        except Exception:
            self._mappings, self._requests, self._logs = snapshot
            raise

    async def create(self, mapping: DomainMapping, max_per_owner: int | None = None) -> str:
        async with self._lock:
            if any(m.domain == mapping.domain for m in self._mappings.values()):
                raise _domain_conflict(mapping.domain)
            if max_per_owner is not None and self._count(mapping.owner_id) >= max_per_owner:
                raise _quota_exceeded(mapping.owner_id, max_per_owner)
            self._mappings[mapping.id] = mapping.copy()
            return mapping.id

    async def get(self, mapping_id: str) -> DomainMapping:
        return self._get(mapping_id).copy()

    async def find_by_domain(self, domain: str) -> DomainMapping | None:
        for mapping in self._mappings.values():
            if mapping.domain == domain:
                return mapping.copy()
        return None

    async def list(
        self,
        owner_id: str | None = None,
        status: MappingStatus | None = None,
        ssl_statuses: Iterable[SslStatus] | None = None,
        page: int = 1,
        per_page: int = 20,
    ) -> list[DomainMapping]:
        wanted_ssl = set(ssl_statuses) if ssl_statuses is not None else None
        matches = [
            m
            for m in self._mappings.values()
            if (owner_id is None or m.owner_id == owner_id)
            and (status is None or m.status == status)
            and (wanted_ssl is None or m.ssl_status in wanted_ssl)
        ]
        matches.sort(key=lambda m: m.created_at, reverse=True)
        start = (max(page, 1) - 1) * per_page
        return [m.copy() for m in matches[start : start + per_page]]

    async def count(self, owner_id: str) -> int:
        return self._count(owner_id)

    async def update(
        self,
        mapping_id: str,
        expected_status: MappingStatus | None = None,
        **fields: Any,
    ) -> DomainMapping:
        _check_fields(fields, MAPPING_FIELDS)
        async with self._lock:
            current = self._get(mapping_id)
            if expected_status is not None and current.status != expected_status:
                raise StateError(
                    f"Domain {current.domain} is {current.status.value}, "
                    f"expected {expected_status.value}",
                    {"id": mapping_id, "status": current.status.value},
                )
            updated = current.copy(**fields, updated_at=datetime.now(UTC))
            self._mappings[mapping_id] = updated
            return updated.copy()

    async def delete(self, mapping_id: str) -> None:
        async with self._lock:
            self._get(mapping_id)
            del self._mappings[mapping_id]
            self._requests = {
                rid: r for rid, r in self._requests.items() if r.mapping_id != mapping_id
            }

    async def transfer_owner(
        self,
        mapping_id: str,
        new_owner_id: str,
        log_entry: TransferLogEntry,
        max_per_owner: int | None = None,
        request_id: str | None = None,
        expected_owner_id: str | None = None,
    ) -> DomainMapping:
        async with self._lock:
            with self._atomic():
                current = self._get(mapping_id)
                _check_owner(current, expected_owner_id)
                if max_per_owner is not None and self._count(new_owner_id) >= max_per_owner:
                    raise _quota_exceeded(new_owner_id, max_per_owner)
                now = datetime.now(UTC)
                updated = current.copy(owner_id=new_owner_id, updated_at=now)
                self._mappings[mapping_id] = updated
                self._logs.append(replace(log_entry, old_owner_id=current.owner_id))
                if request_id is not None:
                    request = self._requests.get(request_id)
                    if request is None:
                        raise NotFoundError(
                            f"Transfer request {request_id} not found", {"id": request_id}
                        )
                    if request.status != TransferStatus.PENDING:
                        raise StateError(
                            f"Transfer request {request_id} is {request.status.value}",
                            {"id": request_id, "status": request.status.value},
                        )
                    self._requests[request_id] = request.copy(
                        status=TransferStatus.APPROVED, updated_at=now
                    )
                return updated.copy()

    async def list_transfer_logs(self, mapping_id: str | None = None) -> list[TransferLogEntry]:
        return [e for e in self._logs if mapping_id is None or e.mapping_id == mapping_id]

    async def create_transfer_request(self, request: TransferRequest) -> str:
        async with self._lock:
            for existing in self._requests.values():
                if (
                    existing.mapping_id == request.mapping_id
                    and existing.requesting_owner_id == request.requesting_owner_id
                    and existing.status == TransferStatus.PENDING
                ):
                    raise ConflictError(
                        f"A pending transfer request for {request.domain} already exists",
                        {"id": existing.id},
                    )
            self._requests[request.id] = request.copy()
            return request.id

    async def get_transfer_request(self, request_id: str) -> TransferRequest:
        request = self._requests.get(request_id)
        if request is None:
            raise NotFoundError(f"Transfer request {request_id} not found", {"id": request_id})
        return request.copy()

    async def update_transfer_request(
        self,
        request_id: str,
        expected_status: TransferStatus | None = None,
        **fields: Any,
    ) -> TransferRequest:
        _check_fields(fields, TRANSFER_REQUEST_FIELDS)
        async with self._lock:
            current = await self.get_transfer_request(request_id)
            if expected_status is not None and current.status != expected_status:
                raise StateError(
                    f"Transfer request {request_id} is {current.status.value}",
                    {"id": request_id, "status": current.status.value},
                )
            updated = current.copy(**fields, updated_at=datetime.now(UTC))
            self._requests[request_id] = updated
            return updated.copy()

    async def list_transfer_requests(
        self,
        status: TransferStatus | None = None,
        owner_id: str | None = None,
        mapping_id: str | None = None,
    ) -> list[TransferRequest]:
        matches = [
            r
            for r in self._requests.values()
            if (status is None or r.status == status)
            and (owner_id is None or owner_id in (r.current_owner_id, r.requesting_owner_id))
            and (mapping_id is None or r.mapping_id == mapping_id)
        ]
        matches.sort(key=lambda r: r.created_at, reverse=True)
        return [r.copy() for r in matches]


def _to_db(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (MappingStatus, SslStatus, TransferStatus)):
        return value.value
    return value


class SQLiteRegistry(DomainRegistry):
    """SQLite registry for self-hosted deployments.

    One connection is shared behind a thread lock and every call runs in a
    worker thread via asyncio.to_thread. Writes use BEGIN IMMEDIATE so the
    uniqueness and quota checks cannot interleave with another writer.
    """

    def __init__(self, db_path: str | Path = "domainmapper.db") -> None:
        """Initialize SQLite registry.

        Args:
            db_path: Path to SQLite database file, or ":memory:" for in-memory.
        """
        self.db_path = str(db_path)
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None

    def _get_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            self._conn = conn
            self._initialize(conn)
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """Get a cursor inside a write transaction with commit/rollback."""
        with self._lock:
            conn = self._get_connection()
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                yield cur
                cur.execute("COMMIT")
            except Exception:
                cur.execute("ROLLBACK")
                raise
            finally:
                cur.close()

    @contextmanager
    def cursor(self) -> Iterator[sqlite3.Cursor]:
        """Get a cursor for reads."""
        with self._lock:
            cur = self._get_connection().cursor()
            try:
                yield cur
            finally:
                cur.close()

    @staticmethod
    def _initialize(conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS domain_mappings (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                domain TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                ssl_status TEXT NOT NULL DEFAULT 'none',
                verification_token TEXT NOT NULL,
                ssl_certificate_ref TEXT,
                ssl_expiry TEXT,
                rejection_reason TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE UNIQUE INDEX IF NOT EXISTS idx_domain_mappings_domain
                ON domain_mappings (domain);
            CREATE INDEX IF NOT EXISTS idx_domain_mappings_owner
                ON domain_mappings (owner_id);
            CREATE INDEX IF NOT EXISTS idx_domain_mappings_status
                ON domain_mappings (status);

            CREATE TABLE IF NOT EXISTS transfer_requests (
                id TEXT PRIMARY KEY,
                mapping_id TEXT NOT NULL,
                domain TEXT NOT NULL,
                current_owner_id TEXT NOT NULL,
                requesting_owner_id TEXT NOT NULL,
                reason TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL DEFAULT 'pending',
                rejection_reason TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_transfer_requests_mapping
                ON transfer_requests (mapping_id, requesting_owner_id, status);

            CREATE TABLE IF NOT EXISTS transfer_logs (
                id TEXT PRIMARY KEY,
                mapping_id TEXT NOT NULL,
                domain TEXT NOT NULL,
                old_owner_id TEXT NOT NULL,
                new_owner_id TEXT NOT NULL,
                actor_id TEXT,
                reason TEXT NOT NULL DEFAULT '',
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_transfer_logs_mapping
                ON transfer_logs (mapping_id);
            """
        )

    # Synchronous helpers, always called with the lock held

    @staticmethod
    def _fetch_mapping(cur: sqlite3.Cursor, mapping_id: str) -> DomainMapping:
        cur.execute("SELECT * FROM domain_mappings WHERE id = ?", (mapping_id,))
        row = cur.fetchone()
        if row is None:
            raise NotFoundError(f"Domain mapping {mapping_id} not found", {"id": mapping_id})
        return DomainMapping.from_dict(dict(row))

    @staticmethod
    def _fetch_request(cur: sqlite3.Cursor, request_id: str) -> TransferRequest:
        cur.execute("SELECT * FROM transfer_requests WHERE id = ?", (request_id,))
        row = cur.fetchone()
        if row is None:
            raise NotFoundError(f"Transfer request {request_id} not found", {"id": request_id})
        return TransferRequest.from_dict(dict(row))

    @staticmethod
    def _count_owner(cur: sqlite3.Cursor, owner_id: str) -> int:
        cur.execute("SELECT COUNT(*) FROM domain_mappings WHERE owner_id = ?", (owner_id,))
        return int(cur.fetchone()[0])

    @staticmethod
    def _insert(cur: sqlite3.Cursor, table: str, record: dict[str, Any]) -> None:
        columns = ", ".join(record)
        placeholders = ", ".join("?" for _ in record)
        cur.execute(
            f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
            tuple(_to_db(v) for v in record.values()),
        )

    @staticmethod
    def _set(cur: sqlite3.Cursor, table: str, record_id: str, fields: dict[str, Any]) -> None:
        assignments = ", ".join(f"{name} = ?" for name in fields)
        cur.execute(
            f"UPDATE {table} SET {assignments} WHERE id = ?",
            (*(_to_db(v) for v in fields.values()), record_id),
        )

    def _create_sync(self, mapping: DomainMapping, max_per_owner: int | None) -> str:
        with self.transaction() as cur:
            cur.execute("SELECT 1 FROM domain_mappings WHERE domain = ?", (mapping.domain,))
            if cur.fetchone() is not None:
                raise _domain_conflict(mapping.domain)
            if max_per_owner is not None and self._count_owner(cur, mapping.owner_id) >= max_per_owner:
                raise _quota_exceeded(mapping.owner_id, max_per_owner)
            try:
                self._insert(cur, "domain_mappings", mapping.to_dict())
            except sqlite3.IntegrityError as e:
                raise _domain_conflict(mapping.domain) from e
        return mapping.id

    def _update_sync(
        self, mapping_id: str, expected_status: MappingStatus | None, fields: dict[str, Any]
    ) -> DomainMapping:
        with self.transaction() as cur:
            current = self._fetch_mapping(cur, mapping_id)
            if expected_status is not None and current.status != expected_status:
                raise StateError(
                    f"Domain {current.domain} is {current.status.value}, "
                    f"expected {expected_status.value}",
                    {"id": mapping_id, "status": current.status.value},
                )
            fields = {**fields, "updated_at": datetime.now(UTC)}
            self._set(cur, "domain_mappings", mapping_id, fields)
            return current.copy(**fields)

    def _delete_sync(self, mapping_id: str) -> None:
        with self.transaction() as cur:
            self._fetch_mapping(cur, mapping_id)
            cur.execute("DELETE FROM transfer_requests WHERE mapping_id = ?", (mapping_id,))
            cur.execute("DELETE FROM domain_mappings WHERE id = ?", (mapping_id,))

    def _transfer_sync(
        self,
        mapping_id: str,
        new_owner_id: str,
        log_entry: TransferLogEntry,
        max_per_owner: int | None,
        request_id: str | None,
        expected_owner_id: str | None,
    ) -> DomainMapping:
        with self.transaction() as cur:
            current = self._fetch_mapping(cur, mapping_id)
            _check_owner(current, expected_owner_id)
            if max_per_owner is not None and self._count_owner(cur, new_owner_id) >= max_per_owner:
                raise _quota_exceeded(new_owner_id, max_per_owner)
            now = datetime.now(UTC)
            self._set(
                cur, "domain_mappings", mapping_id, {"owner_id": new_owner_id, "updated_at": now}
            )
            self._insert(
                cur, "transfer_logs", replace(log_entry, old_owner_id=current.owner_id).to_dict()
            )
            if request_id is not None:
                request = self._fetch_request(cur, request_id)
                if request.status != TransferStatus.PENDING:
                    raise StateError(
                        f"Transfer request {request_id} is {request.status.value}",
                        {"id": request_id, "status": request.status.value},
                    )
                self._set(
                    cur,
                    "transfer_requests",
                    request_id,
                    {"status": TransferStatus.APPROVED, "updated_at": now},
                )
            return current.copy(owner_id=new_owner_id, updated_at=now)

    def _create_request_sync(self, request: TransferRequest) -> str:
        with self.transaction() as cur:
            cur.execute(
                "SELECT id FROM transfer_requests "
                "WHERE mapping_id = ? AND requesting_owner_id = ? AND status = ?",
                (request.mapping_id, request.requesting_owner_id, TransferStatus.PENDING.value),
            )
            row = cur.fetchone()
            if row is not None:
                raise ConflictError(
                    f"A pending transfer request for {request.domain} already exists",
                    {"id": row["id"]},
                )
            self._insert(cur, "transfer_requests", request.to_dict())
        return request.id

    def _update_request_sync(
        self, request_id: str, expected_status: TransferStatus | None, fields: dict[str, Any]
    ) -> TransferRequest:
        with self.transaction() as cur:
            current = self._fetch_request(cur, request_id)
            if expected_status is not None and current.status != expected_status:
                raise StateError(
                    f"Transfer request {request_id} is {current.status.value}",
                    {"id": request_id, "status": current.status.value},
                )
            fields = {**fields, "updated_at": datetime.now(UTC)}
            self._set(cur, "transfer_requests", request_id, fields)
            return current.copy(**fields)

    def _get_sync(self, mapping_id: str) -> DomainMapping:
        with self.cursor() as cur:
            return self._fetch_mapping(cur, mapping_id)

    def _get_request_sync(self, request_id: str) -> TransferRequest:
        with self.cursor() as cur:
            return self._fetch_request(cur, request_id)

    def _select(self, query: str, params: tuple[Any, ...]) -> list[dict[str, Any]]:
        with self.cursor() as cur:
            cur.execute(query, params)
            return [dict(row) for row in cur.fetchall()]

    # Async interface

    async def create(self, mapping: DomainMapping, max_per_owner: int | None = None) -> str:
        return await asyncio.to_thread(self._create_sync, mapping, max_per_owner)

    async def get(self, mapping_id: str) -> DomainMapping:
        return await asyncio.to_thread(self._get_sync, mapping_id)

    async def find_by_domain(self, domain: str) -> DomainMapping | None:
        rows = await asyncio.to_thread(
            self._select, "SELECT * FROM domain_mappings WHERE domain = ?", (domain,)
        )
        return DomainMapping.from_dict(rows[0]) if rows else None

    async def list(
        self,
        owner_id: str | None = None,
        status: MappingStatus | None = None,
        ssl_statuses: Iterable[SslStatus] | None = None,
        page: int = 1,
        per_page: int = 20,
    ) -> list[DomainMapping]:
        clauses: list[str] = []
        params: list[Any] = []
        if owner_id is not None:
            clauses.append("owner_id = ?")
            params.append(owner_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if ssl_statuses is not None:
            values = [s.value for s in ssl_statuses]
            if not values:
                return []
            clauses.append(f"ssl_status IN ({', '.join('?' for _ in values)})")
            params.extend(values)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([per_page, (max(page, 1) - 1) * per_page])
        rows = await asyncio.to_thread(
            self._select,
            f"SELECT * FROM domain_mappings {where} "
            "ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
            tuple(params),
        )
        return [DomainMapping.from_dict(row) for row in rows]

    async def count(self, owner_id: str) -> int:
        rows = await asyncio.to_thread(
            self._select,
            "SELECT COUNT(*) AS n FROM domain_mappings WHERE owner_id = ?",
            (owner_id,),
        )
        return int(rows[0]["n"])

    async def update(
        self,
        mapping_id: str,
        expected_status: MappingStatus | None = None,
        **fields: Any,
    ) -> DomainMapping:
        _check_fields(fields, MAPPING_FIELDS)
        return await asyncio.to_thread(self._update_sync, mapping_id, expected_status, fields)

    async def delete(self, mapping_id: str) -> None:
        await asyncio.to_thread(self._delete_sync, mapping_id)

    async def transfer_owner(
        self,
        mapping_id: str,
        new_owner_id: str,
        log_entry: TransferLogEntry,
        max_per_owner: int | None = None,
        request_id: str | None = None,
        expected_owner_id: str | None = None,
    ) -> DomainMapping:
        return await asyncio.to_thread(
            self._transfer_sync,
            mapping_id,
            new_owner_id,
            log_entry,
            max_per_owner,
            request_id,
            expected_owner_id,
        )

    async def list_transfer_logs(self, mapping_id: str | None = None) -> list[TransferLogEntry]:
        if mapping_id is None:
            query, params = "SELECT * FROM transfer_logs ORDER BY created_at, rowid", ()
        else:
            query = "SELECT * FROM transfer_logs WHERE mapping_id = ? ORDER BY created_at, rowid"
            params = (mapping_id,)
        rows = await asyncio.to_thread(self._select, query, params)
        return [TransferLogEntry.from_dict(row) for row in rows]

    async def create_transfer_request(self, request: TransferRequest) -> str:
        return await asyncio.to_thread(self._create_request_sync, request)

    async def get_transfer_request(self, request_id: str) -> TransferRequest:
        return await asyncio.to_thread(self._get_request_sync, request_id)

    async def update_transfer_request(
        self,
        request_id: str,
        expected_status: TransferStatus | None = None,
        **fields: Any,
    ) -> TransferRequest:
        _check_fields(fields, TRANSFER_REQUEST_FIELDS)
        return await asyncio.to_thread(
            self._update_request_sync, request_id, expected_status, fields
        )

    async def list_transfer_requests(
        self,
        status: TransferStatus | None = None,
        owner_id: str | None = None,
        mapping_id: str | None = None,
    ) -> list[TransferRequest]:
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if owner_id is not None:
            clauses.append("(current_owner_id = ? OR requesting_owner_id = ?)")
            params.extend([owner_id, owner_id])
        if mapping_id is not None:
            clauses.append("mapping_id = ?")
            params.append(mapping_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._select,
            f"SELECT * FROM transfer_requests {where} ORDER BY created_at DESC, rowid DESC",
            tuple(params),
        )
        return [TransferRequest.from_dict(row) for row in rows]

    async def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
        logger.debug("Registry closed", path=self.db_path)
