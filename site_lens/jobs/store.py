# site_lens/jobs/store.py
"""
TTL job store for asynchronous scans.

A job lives as one JSON blob in a key-value store. Every write refreshes its
expiry; a read past ``expiresAt`` behaves exactly like a missing key. Redis is
the persistent backend; the in-memory store has the same get/set/expire
semantics and is only allowed outside production.
"""
from __future__ import annotations

import json
import logging
import math
import time
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Literal, Optional, Protocol, Tuple

from redis.asyncio import Redis
from redis.exceptions import RedisError

from site_lens.config import ScannerConfig
from site_lens.errors import ConfigurationError, sanitize_error_message
from site_lens.utils import sanitize_text

__all__ = (
    "JobStatus",
    "Job",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "RedisKeyValueStore",
    "open_key_value_store",
    "JobStore",
    "MAX_JOB_TEXT",
)

logger = logging.getLogger("SiteLens")

JobStatus = Literal["queued", "running", "complete", "failed"]
JOB_STATUSES: Tuple[str, ...] = ("queued", "running", "complete", "failed")
MAX_JOB_TEXT = 280

WallClock = Callable[[], float]


class KeyValueStore(Protocol):
    """Minimal async blob store: string values with a per-key TTL."""

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_ms: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def close(self) -> None: ...


class MemoryKeyValueStore:
    """Process-local store; expired keys are dropped lazily on read."""

    def __init__(self, *, clock: WallClock = time.time) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[str, float]] = {}

    async def get(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            self._data.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: str, ttl_ms: int) -> None:
        self._data[key] = (value, self._clock() + max(1, int(ttl_ms)) / 1000.0)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def close(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


class RedisKeyValueStore:
    """Redis backend (``redis.asyncio``); expiry is delegated to ``PX``."""

    def __init__(self, client: Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> RedisKeyValueStore:
        return cls(Redis.from_url(url, encoding="utf-8", decode_responses=True))

    async def ping(self) -> None:
        await self._client.ping()

    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(key)

    async def set(self, key: str, value: str, ttl_ms: int) -> None:
        await self._client.set(key, value, px=max(1, int(ttl_ms)))

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def close(self) -> None:
        await self._client.aclose()


async def open_key_value_store(config: ScannerConfig) -> KeyValueStore:
    """
    Redis, если задан ``jobs.redis_url`` и сервер отвечает на PING.
    В production недоступный Redis считается ошибкой конфигурации, иначе
    используется хранилище в памяти с предупреждением в логе.
    """
    url = config.jobs.redis_url
    problem = "REDIS_URL is not configured"
    if url:
        store = RedisKeyValueStore.from_url(url)
        try:
            await store.ping()
            logger.info("Job store: redis")
            return store
        except (RedisError, OSError) as exc:
            problem = f"Redis unavailable: {sanitize_error_message(exc)}"
            await store.close()

    if config.is_production:
        raise ConfigurationError(f"Persistent job store is required in production. {problem}")
    logger.warning("%s; using in-memory job store (jobs are lost on restart).", problem)
    return MemoryKeyValueStore()


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, timezone.utc).isoformat()


def _parse_iso(value: Any) -> Optional[float]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value)).timestamp()
    except ValueError:
        return None


def _progress(percent: Any, message: Any, previous: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    previous = previous or {}
    try:
        value = float(percent)
    except (TypeError, ValueError):
        value = float(previous.get("percent") or 0)
    if not math.isfinite(value):
        value = float(previous.get("percent") or 0)
    return {
        "percent": max(0, min(100, int(round(value)))),
        "message": sanitize_text(message, previous.get("message") or ""),
    }


def _error(error: Any, code: Optional[str] = None) -> Optional[Dict[str, str]]:
    if error is None:
        return None
    if isinstance(error, dict):
        message = sanitize_text(error.get("message"), "Unknown error.")
        code = code or error.get("code")
    elif isinstance(error, BaseException):
        message = sanitize_text(sanitize_error_message(error, MAX_JOB_TEXT), "Unknown error.")
    else:
        message = sanitize_text(error, "Unknown error.")
    data = {"message": message or "Unknown error."}
    if code:
        data = {"code": sanitize_text(code), **data}
    return data


@dataclass(frozen=True, slots=True)
class Job:
    job_id: str
    status: JobStatus
    progress: Dict[str, Any]
    created_at: str
    updated_at: str
    expires_at: str
    payload: Any = None
    result: Any = None
    error: Optional[Dict[str, str]] = None
    completed_at: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.status in ("complete", "failed")

    def to_dict(self, *, include_payload: bool = False) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "jobId": self.job_id,
            "status": self.status,
            "progress": dict(self.progress),
            "result": self.result,
            "error": self.error,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "completedAt": self.completed_at,
            "expiresAt": self.expires_at,
        }
        if include_payload:
            data["payload"] = self.payload
        return data

    @classmethod
    def from_dict(cls, job_id: str, data: Dict[str, Any]) -> Job:
        status = str(data.get("status") or "queued").lower()
        return cls(
            job_id=job_id,
            status=status if status in JOB_STATUSES else "queued",  # type: ignore[arg-type]
            progress=_progress(
                (data.get("progress") or {}).get("percent"),
                (data.get("progress") or {}).get("message"),
            ),
            created_at=str(data.get("createdAt") or ""),
            updated_at=str(data.get("updatedAt") or ""),
            expires_at=str(data.get("expiresAt") or ""),
            payload=data.get("payload"),
            result=data.get("result"),
            error=_error(data.get("error")),
            completed_at=data.get("completedAt"),
        )


_UNSET: Any = object()


class JobStore:
    """Жизненный цикл задания: queued → running → complete | failed."""

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        ttl_ms: int = 30 * 60 * 1000,
        key_prefix: str = "site-lens:job:",
        clock: WallClock = time.time,
    ) -> None:
        self.kv = kv
        self.ttl_ms = ttl_ms
        self.key_prefix = key_prefix
        self.clock = clock

    @classmethod
    async def open(cls, config: ScannerConfig) -> JobStore:
        kv = await open_key_value_store(config)
        return cls(kv, ttl_ms=config.jobs.ttl_ms, key_prefix=config.jobs.key_prefix)

    async def close(self) -> None:
        await self.kv.close()

    def _key(self, job_id: str) -> str:
        return f"{self.key_prefix}{job_id}"

    async def _write(self, job: Job) -> Job:
        await self.kv.set(self._key(job.job_id), json.dumps(job.to_dict(include_payload=True)), self.ttl_ms)
        return job

    async def create(self, payload: Any = None) -> Job:
        now = self.clock()
        job = Job(
            job_id=f"scan_{uuid.uuid4()}",
            status="queued",
            progress={"percent": 0, "message": "Queued for processing."},
            created_at=_iso(now),
            updated_at=_iso(now),
            expires_at=_iso(now + self.ttl_ms / 1000.0),
            payload=payload,
        )
        logger.debug("Job %s queued", job.job_id)
        return await self._write(job)

    async def get(self, job_id: str) -> Optional[Job]:
        job_id = str(job_id or "").strip()
        if not job_id:
            return None
        raw = await self.kv.get(self._key(job_id))
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Job %s: unreadable record dropped", job_id)
            await self.kv.delete(self._key(job_id))
            return None
        if not isinstance(data, dict):
            return None
        job = Job.from_dict(job_id, data)
        expires = _parse_iso(job.expires_at)
        if expires is not None and self.clock() > expires:
            await self.kv.delete(self._key(job_id))
            return None
        return job

    async def update(
        self,
        job_id: str,
        *,
        status: Optional[JobStatus] = None,
        percent: Any = None,
        message: Any = None,
        result: Any = _UNSET,
        error: Any = _UNSET,
        completed: bool = False,
    ) -> Optional[Job]:
        """Применяет изменения и продлевает TTL. Возвращает None для неизвестного задания."""
        job = await self.get(job_id)
        if job is None:
            return None
        now = self.clock()
        changes: Dict[str, Any] = {
            "updated_at": _iso(now),
            "expires_at": _iso(now + self.ttl_ms / 1000.0),
        }
        if status is not None:
            changes["status"] = status
        if percent is not None or message is not None:
            changes["progress"] = _progress(
                job.progress["percent"] if percent is None else percent,
                message,
                job.progress,
            )
        if result is not _UNSET:
            changes["result"] = result
        if error is not _UNSET:
            changes["error"] = _error(error)
        if completed:
            changes["completed_at"] = _iso(now)
        return await self._write(replace(job, **changes))

    async def mark_running(self, job_id: str, percent: Any, message: str) -> Optional[Job]:
        return await self.update(job_id, status="running", percent=percent, message=message)

    async def complete(self, job_id: str, result: Any) -> Optional[Job]:
        logger.info("Job %s complete", job_id)
        return await self.update(
            job_id,
            status="complete",
            percent=100,
            message="Scan completed.",
            result=result,
            error=None,
            completed=True,
        )

    async def fail(self, job_id: str, error: Any, code: str = "scan_failed") -> Optional[Job]:
        details = _error(error, code)
        logger.warning("Job %s failed: %s", job_id, details["message"] if details else "")
        return await self.update(
            job_id,
            status="failed",
            percent=100,
            message="Scan failed.",
            error=details,
            completed=True,
        )

    async def delete(self, job_id: str) -> None:
        await self.kv.delete(self._key(job_id))
