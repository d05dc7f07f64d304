"""
Redis-backed job store for multi-instance deployments.

Layout (all keys under ``{prefix}``)
------------------------------------
    {prefix}:job:{id}         hash: status, token, type, score, record
    {prefix}:waiting:{type}   zset: claimable jobs, score orders priority then FIFO
    {prefix}:delayed          zset: queued jobs not yet due, score = run_at ms
    {prefix}:active           zset: processing jobs, score = lease expiry ms
    {prefix}:completed        zset: score = completed_at ms
    {prefix}:failed           zset: score = completed_at ms
    {prefix}:cancelled        zset: score = completed_at ms
    {prefix}:jobs             zset: every job, score = creation sequence
    {prefix}:types            set:  job types seen
    {prefix}:seq              counter for FIFO ordering

Every state change goes through one Lua script that checks the expected
status (and lease token) and moves the id between the state sets in the
same atomic step. Claims are optimistic: read the heads of the waiting sets,
then compare-and-set from queued; a worker that loses the race moves on to
the next candidate.
"""

from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Iterable, Iterator, List, Optional, Sequence, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from reporadar.core.exceptions import JobQueueError, StoreConnectionError
from reporadar.core.jobs.models import (
    TERMINAL_STATUSES,
    Job,
    JobStatus,
    QueueStats,
    utcnow,
)
from reporadar.core.logging import get_logger

logger = get_logger(__name__)

# Larger than any creation sequence, so priority always dominates.
PRIORITY_WEIGHT = 1_000_000_000_000
CLAIM_SCAN = 10
LIST_PAGE = 200

COMMIT_SCRIPT = """
local current = redis.call('HGET', KEYS[1], 'status')
if ARGV[2] == '' then
  if current then return 0 end
else
  if not current then return 0 end
  local matched = false
  for s in string.gmatch(ARGV[2], '[^,]+') do
    if s == current then matched = true end
  end
  if not matched then return 0 end
  if ARGV[3] ~= '' and redis.call('HGET', KEYS[1], 'token') ~= ARGV[3] then
    return 0
  end
end
redis.call('HSET', KEYS[1], 'status', ARGV[4], 'token', ARGV[5],
           'type', ARGV[6], 'score', ARGV[7], 'record', ARGV[8])
for i = 3, #KEYS do
  redis.call('ZREM', KEYS[i], ARGV[1])
end
redis.call('ZADD', KEYS[2], ARGV[9], ARGV[1])
return 1
"""

PROMOTE_SCRIPT = """
local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
for _, id in ipairs(due) do
  local key = ARGV[2] .. ':job:' .. id
  local job_type = redis.call('HGET', key, 'type')
  local score = redis.call('HGET', key, 'score')
  redis.call('ZREM', KEYS[1], id)
  if job_type and redis.call('HGET', key, 'status') == 'queued' then
    redis.call('ZADD', ARGV[2] .. ':waiting:' .. job_type, score, id)
  end
end
return #due
"""


def _ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class RedisJobStore:
    """
    Redis job store.

    Args:
        url: ``redis://`` or ``rediss://`` URL.
        prefix: Key prefix, normally the queue name.
        client: Pre-built redis.asyncio client (tests inject fakeredis).
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        prefix: str = "reporadar-jobs",
        client: Optional[Any] = None,
    ) -> None:
        self.url = url
        self.prefix = prefix
        self._redis = client
        self._owns_client = client is None

    @contextmanager
    def _errors(self) -> Iterator[None]:
        try:
            yield
        except RedisError as e:
            raise StoreConnectionError(f"Redis error at {self.url}: {e}") from e

    def _key(self, *parts: str) -> str:
        return ":".join((self.prefix, *parts))

    def _job_key(self, job_id: str) -> str:
        return self._key("job", job_id)

    def _state_keys(self, job_type: str) -> List[str]:
        return [
            self._key("waiting", job_type),
            self._key("delayed"),
            self._key("active"),
            self._key("completed"),
            self._key("failed"),
            self._key("cancelled"),
        ]

    def _placement(self, job: Job, waiting_score: str) -> Tuple[str, str]:
        """Target state set and score for the job's current state."""
        if job.status == JobStatus.QUEUED:
            if job.run_at > utcnow():
                return self._key("delayed"), str(_ms(job.run_at))
            return self._key("waiting", job.type), waiting_score
        if job.status == JobStatus.PROCESSING:
            expires = job.lease_expires_at or utcnow()
            return self._key("active"), str(_ms(expires))
        finished = job.completed_at or utcnow()
        return self._key(job.status.value), str(_ms(finished))

    async def initialize(self) -> None:
        """Connect and verify the server is reachable."""
        if self._redis is None:
            self._redis = redis.from_url(self.url, decode_responses=True)
        with self._errors():
            await self._redis.ping()
        logger.info("Connected to Redis job store", url=self.url, prefix=self.prefix)

    async def close(self) -> None:
        if self._redis is not None and self._owns_client:
            await self._redis.aclose()
            self._redis = None

    async def _commit(
        self,
        job: Job,
        expected: Iterable[JobStatus],
        token: Optional[str],
        waiting_score: str,
    ) -> bool:
        target, score = self._placement(job, waiting_score)
        keys = [self._job_key(job.id), target, *self._state_keys(job.type)]
        args = [
            job.id,
            ",".join(s.value for s in expected),
            token or "",
            job.status.value,
            job.lease_token or "",
            job.type,
            waiting_score,
            job.to_json(),
            score,
        ]
        with self._errors():
            written = await self._redis.eval(COMMIT_SCRIPT, len(keys), *keys, *args)
        return bool(written)

    async def add(self, job: Job) -> None:
        """Persist a new job."""
        with self._errors():
            seq = await self._redis.incr(self._key("seq"))
        waiting_score = str(-job.priority * PRIORITY_WEIGHT + seq)
        if not await self._commit(job, [], None, waiting_score):
            raise JobQueueError(f"Job {job.id} already exists in the store")
        with self._errors():
            async with self._redis.pipeline(transaction=False) as pipe:
                pipe.zadd(self._key("jobs"), {job.id: seq})
                pipe.sadd(self._key("types"), job.type)
                await pipe.execute()

    async def get(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        with self._errors():
            record = await self._redis.hget(self._job_key(job_id), "record")
        return Job.from_json(record) if record else None

    async def update(
        self,
        job: Job,
        expected: Iterable[JobStatus],
        token: Optional[str] = None,
    ) -> bool:
        """Compare-and-set write of the job record."""
        expected = list(expected)
        if not expected:
            return False
        with self._errors():
            waiting_score = await self._redis.hget(self._job_key(job.id), "score")
        if waiting_score is None:
            return False
        return await self._commit(job, expected, token, waiting_score)

    async def renew_lease(
        self, job_id: str, token: str, lease_expires_at: datetime
    ) -> bool:
        """
        Extend the lease of a job still held under ``token``.

        Uses WATCH on the job hash so a concurrent progress write is never
        overwritten with an older record.
        """
        key = self._job_key(job_id)
        with self._errors():
            async with self._redis.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(key)
                        status, held, record = await pipe.hmget(
                            key, "status", "token", "record"
                        )
                        if status != JobStatus.PROCESSING.value or held != token:
                            await pipe.unwatch()
                            return False
                        job = Job.from_json(record)
                        job.lease_expires_at = lease_expires_at
                        pipe.multi()
                        pipe.hset(key, "record", job.to_json())
                        pipe.zadd(self._key("active"), {job_id: _ms(lease_expires_at)})
                        await pipe.execute()
                        return True
                    except WatchError:
                        continue

    async def claim(
        self,
        worker_id: str,
        job_types: Sequence[str],
        now: datetime,
        lease_seconds: float,
    ) -> Optional[Job]:
        """Claim the highest-priority, oldest eligible job."""
        candidates: List[Tuple[str, float]] = []
        with self._errors():
            for job_type in job_types:
                heads = await self._redis.zrange(
                    self._key("waiting", job_type), 0, CLAIM_SCAN - 1, withscores=True
                )
                candidates.extend(heads)

        for job_id, score in sorted(candidates, key=lambda item: item[1]):
            job = await self.get(job_id)
            if job is None or not job.is_eligible(now):
                continue
            job.mark_processing(
                worker_id=worker_id,
                lease_expires_at=now + timedelta(seconds=lease_seconds),
                now=now,
            )
            waiting_score = str(int(score))
            if await self._commit(job, [JobStatus.QUEUED], None, waiting_score):
                return job
        return None

    async def promote_delayed(self, now: datetime) -> int:
        """Move due delayed jobs into their waiting sets."""
        with self._errors():
            moved = await self._redis.eval(
                PROMOTE_SCRIPT, 1, self._key("delayed"), _ms(now), self.prefix
            )
        return int(moved)

    async def _load_many(self, job_ids: Sequence[str]) -> List[Job]:
        if not job_ids:
            return []
        with self._errors():
            async with self._redis.pipeline(transaction=False) as pipe:
                for job_id in job_ids:
                    pipe.hget(self._job_key(job_id), "record")
                records = await pipe.execute()
        return [Job.from_json(record) for record in records if record]

    async def find_expired(self, now: datetime) -> List[Job]:
        """Processing jobs whose lease ran out."""
        with self._errors():
            job_ids = await self._redis.zrangebyscore(
                self._key("active"), "-inf", _ms(now)
            )
        return [job for job in await self._load_many(job_ids) if job.is_lease_expired(now)]

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        job_type: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        """List jobs newest first."""
        wanted = offset + limit
        matched: List[Job] = []
        start = 0
        while len(matched) < wanted:
            with self._errors():
                job_ids = await self._redis.zrevrange(
                    self._key("jobs"), start, start + LIST_PAGE - 1
                )
            if not job_ids:
                break
            for job in await self._load_many(job_ids):
                if status is not None and job.status != status:
                    continue
                if job_type is not None and job.type != job_type:
                    continue
                matched.append(job)
            start += LIST_PAGE
        return matched[offset:wanted]

    async def stats(self, now: datetime) -> QueueStats:
        """Count jobs by state; due delayed jobs count as waiting."""
        now_ms = _ms(now)
        with self._errors():
            job_types = await self._redis.smembers(self._key("types"))
            async with self._redis.pipeline(transaction=False) as pipe:
                for job_type in sorted(job_types):
                    pipe.zcard(self._key("waiting", job_type))
                pipe.zcount(self._key("delayed"), "-inf", now_ms)
                pipe.zcount(self._key("delayed"), f"({now_ms}", "+inf")
                pipe.zcard(self._key("active"))
                pipe.zcard(self._key("completed"))
                pipe.zcard(self._key("failed"))
                pipe.zcard(self._key("cancelled"))
                counts = await pipe.execute()

        waiting = sum(counts[: len(job_types)])
        due, delayed, active, completed, failed, cancelled = counts[len(job_types) :]
        return QueueStats(
            waiting=waiting + due,
            active=active,
            completed=completed,
            failed=failed,
            delayed=delayed,
            cancelled=cancelled,
        )

    async def delete_terminal(self, older_than: datetime) -> int:
        """Delete terminal jobs completed before ``older_than``."""
        cutoff = f"({_ms(older_than)}"
        removed = 0
        with self._errors():
            for status in TERMINAL_STATUSES:
                state_key = self._key(status.value)
                job_ids = await self._redis.zrangebyscore(state_key, "-inf", cutoff)
                if not job_ids:
                    continue
                async with self._redis.pipeline(transaction=True) as pipe:
                    for job_id in job_ids:
                        pipe.delete(self._job_key(job_id))
                    pipe.zrem(state_key, *job_ids)
                    pipe.zrem(self._key("jobs"), *job_ids)
                    await pipe.execute()
                removed += len(job_ids)
        return removed
