"""
Job record persistence.

Two backends share the ``JobStore`` interface:

- ``RedisJobStore`` keeps one hash per job (``job:{jobId}``) and performs
  create-if-absent and compare-and-set status transitions inside Lua
  scripts, so concurrent writers can never move a job backwards or out of a
  terminal state.
- ``InMemoryJobStore`` keeps records in a lock-protected dict for local
  single-process runs and tests.

Both only ever write whole, validated ``JobRecord`` variants, so a stored
job always satisfies the per-status field rules of the model.
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from threading import Lock
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as redis

from .configuration import Settings
from .errors import JobAlreadyExists, JobNotFound
from .models import ALLOWED_SOURCES, JobBase, JobRecord, JobStatus, parse_job_record, utcnow

logger = logging.getLogger(__name__)

_BASE_FIELDS = set(JobBase.model_fields)


def advance_record(current: JobRecord, status: JobStatus | str, fields: Dict[str, Any]) -> JobRecord:
    """
    Build the record a job would have after moving to ``status``.

    Base fields (id, type, source, timestamps) are carried over; the
    status-specific fields of the previous variant are dropped and replaced
    by ``fields``. Validation fails if ``fields`` do not fit the target
    variant, e.g. ``completed`` without ``output_url``.
    """
    data = current.model_dump(include=_BASE_FIELDS)
    data.update(fields)
    data["status"] = JobStatus(status).value
    data["updated_at"] = utcnow()
    return parse_job_record(data)


class JobStore(ABC):
    """Keyed store of job records with atomic status transitions."""

    @abstractmethod
    async def create(self, record: JobRecord) -> None:
        """Insert a new record; raises ``JobAlreadyExists`` if the id is taken."""

    @abstractmethod
    async def get(self, job_id: str) -> Optional[JobRecord]:
        """Return the record for ``job_id`` or None."""

    @abstractmethod
    async def transition(self, job_id: str, status: JobStatus | str, **fields: Any) -> Optional[JobRecord]:
        """
        Move a job to ``status`` if its current status allows it.

        Args:
            job_id: The job to update
            status: Target status
            **fields: Status-specific fields (``output_url``, ``ocr_result``, ``error``)

        Returns:
            The updated record, or None when the current status is not an
            allowed source for ``status`` (the record is left untouched)

        Raises:
            JobNotFound: If no record exists for ``job_id``
        """

    async def close(self) -> None:
        return None


class InMemoryJobStore(JobStore):
    """
    Dict-backed store guarded by a lock.

    Thread Safety:
        Every read-modify-write happens under a single lock, which makes
        create and transition atomic with respect to each other.
    """

    def __init__(self, ttl_seconds: Optional[int] = None) -> None:
        self.ttl_seconds = ttl_seconds
        self._jobs: Dict[str, Tuple[JobRecord, Optional[float]]] = {}
        self._lock = Lock()

    def _expiry(self) -> Optional[float]:
        return time.monotonic() + self.ttl_seconds if self.ttl_seconds else None

    def _lookup(self, job_id: str) -> Optional[JobRecord]:
        entry = self._jobs.get(job_id)
        if entry is None:
            return None
        record, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            del self._jobs[job_id]
            return None
        return record

    async def create(self, record: JobRecord) -> None:
        with self._lock:
            if self._lookup(record.job_id) is not None:
                raise JobAlreadyExists(record.job_id)
            self._jobs[record.job_id] = (record, self._expiry())

    async def get(self, job_id: str) -> Optional[JobRecord]:
        with self._lock:
            return self._lookup(job_id)

    async def transition(self, job_id: str, status: JobStatus | str, **fields: Any) -> Optional[JobRecord]:
        target = JobStatus(status)
        with self._lock:
            current = self._lookup(job_id)
            if current is None:
                raise JobNotFound(job_id)
            if current.status not in ALLOWED_SOURCES[target.value]:
                return None
            updated = advance_record(current, target, fields)
            self._jobs[job_id] = (updated, self._expiry())
            return updated


# KEYS[1] = job hash; ARGV[1] = ttl seconds (0 keeps forever); ARGV[2..] = field/value pairs
_CREATE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return 0
end
for i = 2, #ARGV, 2 do
    redis.call('HSET', KEYS[1], ARGV[i], ARGV[i + 1])
end
if tonumber(ARGV[1]) > 0 then
    redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return 1
"""

# KEYS[1] = job hash; ARGV[1] = comma separated allowed source statuses;
# ARGV[2] = ttl seconds; ARGV[3..] = field/value pairs.
# Returns -1 when the job is missing, 0 when the status is not allowed, 1 on success.
_TRANSITION_SCRIPT = """
local current = redis.call('HGET', KEYS[1], 'status')
if not current then
    return -1
end
local allowed = false
for status in string.gmatch(ARGV[1], '[^,]+') do
    if status == current then
        allowed = true
    end
end
if not allowed then
    return 0
end
for i = 3, #ARGV, 2 do
    redis.call('HSET', KEYS[1], ARGV[i], ARGV[i + 1])
end
if tonumber(ARGV[2]) > 0 then
    redis.call('EXPIRE', KEYS[1], ARGV[2])
end
return 1
"""


def _to_hash(record: JobRecord) -> Dict[str, str]:
    data = record.model_dump(mode="json", by_alias=True, exclude_none=True)
    flat: Dict[str, str] = {}
    for key, value in data.items():
        flat[key] = json.dumps(value) if isinstance(value, (dict, list)) else str(value)
    return flat


def _from_hash(data: Dict[str, str]) -> JobRecord:
    fields: Dict[str, Any] = dict(data)
    if "ocrResult" in fields:
        fields["ocrResult"] = json.loads(fields["ocrResult"])
    return parse_job_record(fields)


def _flatten(mapping: Dict[str, str]) -> list[str]:
    args: list[str] = []
    for key, value in mapping.items():
        args.extend((key, value))
    return args


class RedisJobStore(JobStore):
    """Job records as Redis hashes with per-field values (``ocrResult`` as JSON)."""

    def __init__(
        self,
        client: redis.Redis,
        key_prefix: str = "job:",
        ttl_seconds: Optional[int] = None,
    ) -> None:
        self._redis = client
        self.key_prefix = key_prefix
        self.ttl_seconds = ttl_seconds
        self._create = client.register_script(_CREATE_SCRIPT)
        self._transition = client.register_script(_TRANSITION_SCRIPT)

    @classmethod
    def from_url(cls, url: str, key_prefix: str = "job:", ttl_seconds: Optional[int] = None) -> "RedisJobStore":
        return cls(redis.from_url(url, decode_responses=True), key_prefix=key_prefix, ttl_seconds=ttl_seconds)

    def _key(self, job_id: str) -> str:
        return f"{self.key_prefix}{job_id}"

    async def create(self, record: JobRecord) -> None:
        created = await self._create(
            keys=[self._key(record.job_id)],
            args=[self.ttl_seconds or 0, *_flatten(_to_hash(record))],
        )
        if int(created) == 0:
            raise JobAlreadyExists(record.job_id)

    async def get(self, job_id: str) -> Optional[JobRecord]:
        data = await self._redis.hgetall(self._key(job_id))
        if not data:
            return None
        return _from_hash(data)

    async def transition(self, job_id: str, status: JobStatus | str, **fields: Any) -> Optional[JobRecord]:
        target = JobStatus(status)
        current = await self.get(job_id)
        if current is None:
            raise JobNotFound(job_id)
        if current.status not in ALLOWED_SOURCES[target.value]:
            return None

        # Base fields never change after creation, so only the status-specific
        # fields and the timestamp need writing; the script re-checks the status.
        updated = advance_record(current, target, fields)
        changes = _to_hash(updated)
        for name in ("jobId", "type", "sourceUrl", "originalFilename", "createdAt"):
            changes.pop(name, None)

        result = int(
            await self._transition(
                keys=[self._key(job_id)],
                args=[",".join(sorted(ALLOWED_SOURCES[target.value])), self.ttl_seconds or 0, *_flatten(changes)],
            )
        )
        if result < 0:
            raise JobNotFound(job_id)
        if result == 0:
            return None
        return updated

    async def close(self) -> None:
        await self._redis.aclose()


def build_job_store(settings: Settings) -> JobStore:
    """Create the job store selected by ``settings.job_store.backend``."""
    options = settings.job_store
    if options.backend == "memory":
        logger.info("Using in-memory job store")
        return InMemoryJobStore(ttl_seconds=options.ttl_seconds)
    logger.info("Using Redis job store at %s", settings.redis.url)
    return RedisJobStore.from_url(settings.redis.url, key_prefix=options.key_prefix, ttl_seconds=options.ttl_seconds)
