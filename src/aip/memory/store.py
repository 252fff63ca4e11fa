"""Durable storage layer for implementation records."""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import sqlite3
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from .schema import (
    DeploymentInfo,
    ImplementationRecord,
    ImplementationStatus,
    LogEntry,
    LogLevel,
    utc_now,
)

DEFAULT_DB_PATH = Path("data/aip.sqlite")
LOGGER = logging.getLogger(__name__)


def _as_iso(timestamp: datetime | None) -> str | None:
    """Serialise a timestamp to a timezone-aware ISO 8601 string."""
    if timestamp is None:
        return None
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat()


class ImplementationStore:
    """SQLite-backed persistence for implementation records.

    Each record is stored as a JSON payload alongside a handful of indexed
    scalar columns used for lookups (repository, batch, status, deployment
    branch).  All access goes through an internal lock so records can be read
    or cancelled from other threads while a batch is running.
    """

    @staticmethod
    def _is_writable(path: Path) -> bool:
        parent = path.parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except OSError:
            return False
        if path.exists():
            return os.access(path, os.W_OK)
        return os.access(parent, os.W_OK)

    @staticmethod
    def _fallback_db_path(source: Path) -> Path:
        digest = hashlib.sha1(source.as_posix().encode("utf-8")).hexdigest()[:12]
        fallback_dir = Path(tempfile.gettempdir()) / "aip" / "db" / digest
        fallback_dir.mkdir(parents=True, exist_ok=True)
        return fallback_dir / source.name

    @classmethod
    def _resolve_db_path(cls, requested: Path) -> Path:
        resolved = requested.resolve()
        if cls._is_writable(resolved):
            return resolved
        fallback = cls._fallback_db_path(resolved)
        if not fallback.exists():
            if resolved.exists() and os.access(resolved, os.R_OK):
                try:
                    shutil.copy2(resolved, fallback)
                except OSError:
                    fallback.touch(exist_ok=True)
            else:
                fallback.touch(exist_ok=True)
        if not cls._is_writable(fallback):
            raise OSError(f"Unable to locate writable database path (attempted {requested})")
        return fallback

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH) -> None:
        requested_path = Path(db_path)
        self.db_path = self._resolve_db_path(requested_path)
        if self.db_path != requested_path.resolve():
            LOGGER.warning(
                "Database path %s is not writable; using fallback %s",
                requested_path,
                self.db_path,
            )
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = self._open_connection()
        self._bootstrap()

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "ImplementationStore":
        paths = config.get("paths") or {}
        db_path = paths.get("db_path")
        if db_path:
            return cls(Path(db_path))
        data_path = paths.get("data") or "data"
        return cls(Path(data_path) / "aip.sqlite")

    def close(self) -> None:
        if getattr(self, "_conn", None) is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

    def __enter__(self) -> "ImplementationStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _open_connection(self) -> sqlite3.Connection:
        connection = sqlite3.connect(str(self.db_path), check_same_thread=False)
        connection.row_factory = sqlite3.Row
        return connection

    def _bootstrap(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS implementations (
                id TEXT PRIMARY KEY,
                implementation_id TEXT NOT NULL,
                title TEXT NOT NULL,
                category TEXT NOT NULL,
                status TEXT NOT NULL,
                progress INTEGER NOT NULL DEFAULT 0,
                project_name TEXT NOT NULL,
                repo_url TEXT NOT NULL,
                batch_id TEXT,
                batch_order INTEGER,
                duration_ms INTEGER,
                deployment_branch TEXT,
                deployment_success INTEGER NOT NULL DEFAULT 0,
                deployment_url TEXT,
                deployed_at TEXT,
                files_processed INTEGER NOT NULL DEFAULT 0,
                lines_added INTEGER NOT NULL DEFAULT 0,
                lines_removed INTEGER NOT NULL DEFAULT 0,
                payload TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_impl_implementation_id
                ON implementations(implementation_id);
            CREATE INDEX IF NOT EXISTS idx_impl_repo_status
                ON implementations(repo_url, status);
            CREATE INDEX IF NOT EXISTS idx_impl_project_status
                ON implementations(project_name, status);
            CREATE INDEX IF NOT EXISTS idx_impl_batch
                ON implementations(batch_id, batch_order);
            CREATE INDEX IF NOT EXISTS idx_impl_deployment
                ON implementations(repo_url, deployment_branch, deployment_success);
            """
        )
        self._conn.commit()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def _query(self, query: str, params: Tuple[Any, ...] | List[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(query, params).fetchall()

    # Record operations ---------------------------------------------------------------
    def create(self, record: ImplementationRecord) -> ImplementationRecord:
        """Persist a new record; fails if the record id already exists."""

        with self._lock:
            if self.get(record.id) is not None:
                raise ValueError(f"Implementation record already exists: {record.id}")
            self.save(record)
        return record

    def save(self, record: ImplementationRecord) -> None:
        deployment = record.deployment
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO implementations (
                    id, implementation_id, title, category, status, progress,
                    project_name, repo_url, batch_id, batch_order, duration_ms,
                    deployment_branch, deployment_success, deployment_url, deployed_at,
                    files_processed, lines_added, lines_removed, payload,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status,
                    progress = excluded.progress,
                    duration_ms = excluded.duration_ms,
                    deployment_branch = excluded.deployment_branch,
                    deployment_success = excluded.deployment_success,
                    deployment_url = excluded.deployment_url,
                    deployed_at = excluded.deployed_at,
                    files_processed = excluded.files_processed,
                    lines_added = excluded.lines_added,
                    lines_removed = excluded.lines_removed,
                    payload = excluded.payload,
                    updated_at = excluded.updated_at
                """,
                (
                    record.id,
                    record.implementation_id,
                    record.title,
                    record.category,
                    record.status.value,
                    record.progress,
                    record.project_name,
                    record.repo_url,
                    record.batch_id,
                    record.batch_order,
                    record.duration_ms,
                    deployment.branch_name,
                    1 if deployment.success else 0,
                    deployment.url,
                    _as_iso(deployment.deployed_at),
                    record.metrics.files_processed,
                    record.metrics.lines_added,
                    record.metrics.lines_removed,
                    record.model_dump_json(),
                    _as_iso(record.created_at),
                    _as_iso(record.updated_at),
                ),
            )

    def get(self, record_id: str) -> Optional[ImplementationRecord]:
        rows = self._query("SELECT payload FROM implementations WHERE id = ?", (record_id,))
        if not rows:
            return None
        return self._row_to_record(rows[0])

    def find_by_implementation_id(self, implementation_id: str) -> List[ImplementationRecord]:
        rows = self._query(
            "SELECT payload FROM implementations WHERE implementation_id = ? ORDER BY created_at DESC",
            (implementation_id,),
        )
        return [self._row_to_record(row) for row in rows]

    def update_status(
        self,
        record_id: str,
        status: ImplementationStatus,
        progress: int | None = None,
    ) -> ImplementationRecord:
        with self._lock:
            record = self._require(record_id)
            record.transition(status, progress)
            self.save(record)
        return record

    def append_log(
        self,
        record_id: str,
        level: LogLevel | str,
        message: str,
        details: Dict[str, Any] | None = None,
    ) -> LogEntry:
        with self._lock:
            record = self._require(record_id)
            entry = record.add_log(level, message, details)
            self.save(record)
        return entry

    def find_by_repository(
        self,
        repo_url: str,
        status: ImplementationStatus | None = None,
    ) -> List[ImplementationRecord]:
        return self._find_by_column("repo_url", repo_url, status)

    def find_by_project(
        self,
        project_name: str,
        status: ImplementationStatus | None = None,
    ) -> List[ImplementationRecord]:
        return self._find_by_column("project_name", project_name, status)

    def find_by_batch(self, batch_id: str) -> List[ImplementationRecord]:
        rows = self._query(
            "SELECT payload FROM implementations WHERE batch_id = ? ORDER BY batch_order ASC",
            (batch_id,),
        )
        return [self._row_to_record(row) for row in rows]

    def list_history(
        self,
        *,
        repo_url: str | None = None,
        status: ImplementationStatus | None = None,
        category: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[ImplementationRecord], int]:
        """Return a page of records (newest first) and the total match count."""

        where, params = self._filters(repo_url=repo_url, status=status, category=category)
        total_rows = self._query(f"SELECT COUNT(*) AS total FROM implementations{where}", params)
        rows = self._query(
            f"SELECT payload FROM implementations{where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
            [*params, limit, offset],
        )
        return [self._row_to_record(row) for row in rows], int(total_rows[0]["total"])

    # Deployment lookups --------------------------------------------------------------
    def latest_deployment(
        self,
        repo_url: str,
        branch_name: str,
        *,
        max_age: timedelta | None = None,
        now: datetime | None = None,
    ) -> Optional[DeploymentInfo]:
        """Most recent successful deployment with a URL for ``(repo_url, branch_name)``."""

        query = (
            "SELECT payload FROM implementations "
            "WHERE repo_url = ? AND deployment_branch = ? AND deployment_success = 1 "
            "AND deployment_url IS NOT NULL"
        )
        params: List[Any] = [repo_url, branch_name]
        if max_age is not None:
            cutoff = (now or utc_now()) - max_age
            query += " AND deployed_at >= ?"
            params.append(_as_iso(cutoff))
        query += " ORDER BY deployed_at DESC LIMIT 1"
        rows = self._query(query, params)
        if not rows:
            return None
        return self._row_to_record(rows[0]).deployment

    def repository_deployments(self, repo_url: str, limit: int = 10) -> List[ImplementationRecord]:
        rows = self._query(
            "SELECT payload FROM implementations WHERE repo_url = ? AND deployment_success = 1 "
            "ORDER BY deployed_at DESC LIMIT ?",
            (repo_url, limit),
        )
        return [self._row_to_record(row) for row in rows]

    # Statistics ----------------------------------------------------------------------
    def statistics(
        self,
        *,
        repo_url: str | None = None,
        project_name: str | None = None,
    ) -> Dict[str, Any]:
        where, params = self._filters(repo_url=repo_url, project_name=project_name)
        rows = self._query(
            f"""
            SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS completed,
                SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed,
                SUM(CASE WHEN status = 'processing' THEN 1 ELSE 0 END) AS processing,
                SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END) AS pending,
                SUM(CASE WHEN status = 'cancelled' THEN 1 ELSE 0 END) AS cancelled,
                AVG(duration_ms) AS average_duration_ms,
                SUM(files_processed) AS total_files_processed,
                SUM(lines_added) AS total_lines_added,
                SUM(lines_removed) AS total_lines_removed
            FROM implementations{where}
            """,
            params,
        )
        row = rows[0]
        return {
            "total": int(row["total"] or 0),
            "completed": int(row["completed"] or 0),
            "failed": int(row["failed"] or 0),
            "processing": int(row["processing"] or 0),
            "pending": int(row["pending"] or 0),
            "cancelled": int(row["cancelled"] or 0),
            "average_duration_ms": row["average_duration_ms"],
            "total_files_processed": int(row["total_files_processed"] or 0),
            "total_lines_added": int(row["total_lines_added"] or 0),
            "total_lines_removed": int(row["total_lines_removed"] or 0),
        }

    def category_statistics(
        self,
        *,
        repo_url: str | None = None,
        project_name: str | None = None,
    ) -> List[Dict[str, Any]]:
        where, params = self._filters(repo_url=repo_url, project_name=project_name)
        rows = self._query(
            f"""
            SELECT
                category,
                COUNT(*) AS count,
                SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS completed,
                SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed,
                AVG(duration_ms) AS average_duration_ms
            FROM implementations{where}
            GROUP BY category
            ORDER BY count DESC, category ASC
            """,
            params,
        )
        return [
            {
                "category": row["category"],
                "count": int(row["count"]),
                "completed": int(row["completed"] or 0),
                "failed": int(row["failed"] or 0),
                "average_duration_ms": row["average_duration_ms"],
            }
            for row in rows
        ]

    # Helpers ------------------------------------------------------------------------
    def _require(self, record_id: str) -> ImplementationRecord:
        record = self.get(record_id)
        if record is None:
            raise KeyError(f"Unknown implementation record: {record_id}")
        return record

    def _find_by_column(
        self,
        column: str,
        value: str,
        status: ImplementationStatus | None,
    ) -> List[ImplementationRecord]:
        query = f"SELECT payload FROM implementations WHERE {column} = ?"
        params: List[Any] = [value]
        if status is not None:
            query += " AND status = ?"
            params.append(ImplementationStatus(status).value)
        query += " ORDER BY created_at DESC"
        return [self._row_to_record(row) for row in self._query(query, params)]

    @staticmethod
    def _filters(**filters: Any) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in filters.items():
            if value is None:
                continue
            if isinstance(value, ImplementationStatus):
                value = value.value
            clauses.append(f"{column} = ?")
            params.append(value)
        if not clauses:
            return "", params
        return " WHERE " + " AND ".join(clauses), params

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> ImplementationRecord:
        return ImplementationRecord.model_validate_json(row["payload"])


__all__ = ["DEFAULT_DB_PATH", "ImplementationStore"]
