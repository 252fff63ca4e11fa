"""Deployment triggering with per-key de-duplication.

A deployment is identified by ``lower(repo_url:branch_name:project_name)``.
Results are remembered in a TTL cache backend and, through the implementation
store, across process restarts.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol

from aip.memory.schema import DeploymentInfo, utc_now
from aip.memory.store import ImplementationStore

LOGGER = logging.getLogger(__name__)

DEFAULT_CACHE_TTL = 300.0
VERCEL_API_URL = "https://api.vercel.com/v13/deployments"


class DeploymentError(RuntimeError):
    """Raised when a deployment provider rejects or cannot receive a trigger."""


# ---------------------------------------------------------------- cache backends


class CacheBackend(Protocol):
    def get(self, key: str) -> Any | None:
        ...

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def clear(self) -> None:
        ...

    def keys(self) -> List[str]:
        ...


class InMemoryTTLCache:
    """Process-local cache whose entries expire ``ttl`` seconds after being set."""

    def __init__(self, default_ttl: float = DEFAULT_CACHE_TTL, *, clock: Callable[[], float] | None = None) -> None:
        self.default_ttl = default_ttl
        self._clock = clock or time.monotonic
        self._entries: Dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        lifetime = self.default_ttl if ttl is None else ttl
        with self._lock:
            self._entries[key] = (self._clock() + lifetime, value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def keys(self) -> List[str]:
        now = self._clock()
        with self._lock:
            expired = [key for key, (expires_at, _) in self._entries.items() if now >= expires_at]
            for key in expired:
                del self._entries[key]
            return list(self._entries)


# ---------------------------------------------------------------- deployers


class Deployer(Protocol):
    def trigger(self, repo_identifier: str, ref: str) -> Dict[str, Any]:
        ...


Transport = Callable[[Dict[str, Any]], str]


class VercelDeployer:
    """Triggers git-backed deployments through the Vercel REST API."""

    def __init__(
        self,
        *,
        project_name: str,
        token: Optional[str] = None,
        api_url: str = VERCEL_API_URL,
        transport: Optional[Transport] = None,
        timeout: float = 30.0,
    ) -> None:
        self.project_name = project_name
        self._token = token or os.getenv("VERCEL_TOKEN")
        self._api_url = api_url
        self._timeout = timeout
        self._transport = transport or self._http_transport
        if transport is None and not self._token:
            raise ValueError("A Vercel token is required when using the default transport.")

    def build_payload(self, repo_identifier: str, ref: str) -> Dict[str, Any]:
        return {
            "name": self.project_name,
            "gitSource": {"type": "github", "repoId": repo_identifier, "ref": ref},
        }

    def trigger(self, repo_identifier: str, ref: str) -> Dict[str, Any]:
        payload = self.build_payload(repo_identifier, ref)
        try:
            raw = self._transport(payload)
        except DeploymentError:
            raise
        except Exception as error:  # pragma: no cover - defensive path
            raise DeploymentError(f"Transport rejected the request: {error}") from error
        try:
            data = json.loads(raw) if raw else {}
        except json.JSONDecodeError as error:
            raise DeploymentError("Deployment response was not valid JSON") from error
        if not isinstance(data, dict):
            raise DeploymentError("Deployment response was not a JSON object")
        if data.get("error"):
            detail = data["error"]
            message = detail.get("message") if isinstance(detail, dict) else str(detail)
            raise DeploymentError(f"Deployment rejected: {message}")
        url = data.get("url")
        if url and not str(url).startswith(("http://", "https://")):
            url = f"https://{url}"
        status = data.get("readyState") or data.get("status") or "queued"
        return {"url": url, "deployment_id": data.get("id"), "status": str(status).lower()}

    def _http_transport(self, payload: Dict[str, Any]) -> str:
        import urllib.error
        import urllib.request

        request = urllib.request.Request(
            self._api_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self._token}",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                return response.read().decode("utf-8")
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise DeploymentError("Deployment request timed out.") from error
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            message = error.read().decode("utf-8", errors="ignore")
            raise DeploymentError(f"HTTP {error.code}: {message}") from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise DeploymentError(f"Failed to reach deployment endpoint: {error.reason}") from error


# ---------------------------------------------------------------- cache


def cache_key(repo_url: str, branch_name: str, project_name: str) -> str:
    return f"{repo_url}:{branch_name}:{project_name}".lower()


class DeploymentCache:
    """Check-then-trigger-then-write deployment de-duplication."""

    def __init__(
        self,
        *,
        store: ImplementationStore | None = None,
        backend: CacheBackend | None = None,
        deployer: Deployer | None = None,
        ttl: float = DEFAULT_CACHE_TTL,
        persisted_max_age: timedelta | None = None,
    ) -> None:
        self.store = store
        self.backend: CacheBackend = backend if backend is not None else InMemoryTTLCache(ttl)
        self.deployer = deployer
        self.ttl = ttl
        self.persisted_max_age = persisted_max_age
        self._key_locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            return self._key_locks.setdefault(key, threading.Lock())

    def find_existing(self, repo_url: str, branch_name: str, project_name: str) -> DeploymentInfo | None:
        key = cache_key(repo_url, branch_name, project_name)
        cached = self.backend.get(key)
        if cached is not None:
            LOGGER.info("Deployment cache hit for %s", key)
            return cached
        if self.store is None:
            return None
        persisted = self.store.latest_deployment(repo_url, branch_name, max_age=self.persisted_max_age)
        if persisted is None:
            LOGGER.debug("No existing deployment found for %s", key)
            return None
        LOGGER.info("Found persisted deployment for %s", key)
        self.backend.set(key, persisted, self.ttl)
        return persisted

    def cache_deployment_result(
        self,
        repo_url: str,
        branch_name: str,
        project_name: str,
        result: DeploymentInfo,
        *,
        record_id: str | None = None,
    ) -> None:
        """Remember ``result`` in the backend and, when given, on the stored record."""
        key = cache_key(repo_url, branch_name, project_name)
        self.backend.set(key, result, self.ttl)
        if self.store is not None and record_id is not None:
            record = self.store.get(record_id)
            if record is not None:
                record.deployment = result
                self.store.save(record)
        LOGGER.info("Deployment cached for %s", key)

    def deploy(
        self,
        repo_url: str,
        branch_name: str,
        project_name: str,
        *,
        repo_identifier: str | None = None,
        record_id: str | None = None,
    ) -> DeploymentInfo:
        """Return a deployment for the key, triggering the deployer at most once per window."""

        key = cache_key(repo_url, branch_name, project_name)
        with self._lock_for(key):
            existing = self.find_existing(repo_url, branch_name, project_name)
            if existing is not None:
                return existing.model_copy(update={"cached": True})
            if self.deployer is None:
                return DeploymentInfo(
                    success=False,
                    branch_name=branch_name,
                    status="skipped",
                    error="No deployer configured",
                )
            started = time.monotonic()
            try:
                payload = self.deployer.trigger(repo_identifier or repo_url, branch_name)
            except DeploymentError as error:
                LOGGER.warning("Deployment trigger failed for %s: %s", key, error)
                return DeploymentInfo(success=False, branch_name=branch_name, status="error", error=str(error))
            result = DeploymentInfo(
                success=True,
                url=payload.get("url"),
                deployment_id=payload.get("deployment_id"),
                branch_name=branch_name,
                status=payload.get("status") or "queued",
                deployed_at=utc_now(),
                build_time_ms=int((time.monotonic() - started) * 1000),
            )
            self.cache_deployment_result(repo_url, branch_name, project_name, result, record_id=record_id)
            return result

    # ------------------------------------------------------------ lookups
    def deployment_status(self, implementation_id: str) -> Dict[str, Any] | None:
        if self.store is None:
            return None
        records = self.store.find_by_implementation_id(implementation_id)
        if not records:
            return None
        deployment = records[0].deployment
        return {
            "success": deployment.success,
            "url": deployment.url,
            "status": deployment.status,
            "branch_name": deployment.branch_name,
            "deployed_at": deployment.deployed_at.isoformat() if deployment.deployed_at else None,
        }

    def is_branch_deployed(self, repo_url: str, branch_name: str) -> DeploymentInfo | None:
        if self.store is None:
            return None
        return self.store.latest_deployment(repo_url, branch_name)

    def repository_deployments(self, repo_url: str, limit: int = 10) -> List[Dict[str, Any]]:
        if self.store is None:
            return []
        return [
            {
                "implementation_id": record.implementation_id,
                "title": record.title,
                "deployment": record.deployment.model_dump(mode="json"),
                "created_at": record.created_at.isoformat(),
            }
            for record in self.store.repository_deployments(repo_url, limit)
        ]

    def clear(self, repo_url: str, branch_name: str, project_name: str) -> None:
        key = cache_key(repo_url, branch_name, project_name)
        self.backend.delete(key)
        with self._guard:
            lock = self._key_locks.get(key)
            if lock is not None and not lock.locked():
                del self._key_locks[key]
        LOGGER.info("Cleared deployment cache for %s", key)

    def clear_all(self) -> None:
        self.backend.clear()
        with self._guard:
            idle = [name for name, lock in self._key_locks.items() if not lock.locked()]
            for name in idle:
                del self._key_locks[name]
        LOGGER.info("Cleared all deployment cache entries")

    def stats(self) -> Dict[str, Any]:
        keys = self.backend.keys()
        with self._guard:
            lock_count = len(self._key_locks)
        return {"size": len(keys), "keys": keys, "ttl_seconds": self.ttl, "key_locks": lock_count}


__all__ = [
    "CacheBackend",
    "DEFAULT_CACHE_TTL",
    "Deployer",
    "DeploymentCache",
    "DeploymentError",
    "InMemoryTTLCache",
    "VERCEL_API_URL",
    "VercelDeployer",
    "cache_key",
]
