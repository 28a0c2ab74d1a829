"""
Durable per-user session storage.

Besides plain get/put/delete/scan, the store offers ``transact``: an optimistic
read-modify-write on a single key.  The mutation callback sees the record as it
is stored right now and returns the record to write, ``DELETE``, or ``None`` to
leave the key untouched.  If another writer changes the key between the read
and the write, the callback is re-run against the fresh record.  Every guarded
transition in the state machines is built on it.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol, Tuple, Union

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from exambot.core.errors import StoreUnavailable
from exambot.models.session import SessionRecord, Stage

logger = logging.getLogger(__name__)


class _Delete:
    def __repr__(self) -> str:
        return "DELETE"


DELETE = _Delete()

Outcome = Union[SessionRecord, _Delete, None]
Mutation = Callable[[Optional[SessionRecord]], Outcome]

MAX_TRANSACTION_ATTEMPTS = 32


@dataclass(frozen=True)
class Transition:
    before: Optional[SessionRecord]
    after: Optional[SessionRecord]
    applied: bool


class SessionStore(Protocol):
    async def get(self, key: str) -> Optional[SessionRecord]: ...

    async def put(self, key: str, record: SessionRecord) -> SessionRecord: ...

    async def delete(self, key: str) -> None: ...

    async def scan(self, stage: Stage) -> List[Tuple[str, SessionRecord]]: ...

    async def transact(self, key: str, mutate: Mutation) -> Transition: ...

    async def claim_event(self, event_id: str, ttl: int) -> bool: ...

    async def release_event(self, event_id: str) -> None: ...


def _bump(record: SessionRecord, before: Optional[SessionRecord]) -> SessionRecord:
    return record.model_copy(update={"revision": (before.revision if before else 0) + 1})


class RedisSessionStore:
    """Sessions as JSON strings under ``{prefix}:{key}`` with a set index per stage."""

    def __init__(self, redis: Redis, prefix: str = "session", ttl: Optional[int] = None):
        self.redis = redis
        self.prefix = prefix
        self.ttl = ttl

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def _stage_key(self, stage: Stage) -> str:
        return f"{self.prefix}:stage:{stage.value}"

    def _event_key(self, event_id: str) -> str:
        return f"{self.prefix}:event:{event_id}"

    def _decode(self, key: str, raw: Optional[str]) -> Optional[SessionRecord]:
        if raw is None:
            return None
        try:
            return SessionRecord.from_json(raw)
        except (ValidationError, ValueError):
            logger.warning(f"Discarding undecodable session for {key}")
            return None

    async def get(self, key: str) -> Optional[SessionRecord]:
        try:
            raw = await self.redis.get(self._key(key))
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StoreUnavailable(str(exc)) from exc
        return self._decode(key, raw)

    async def put(self, key: str, record: SessionRecord) -> SessionRecord:
        return (await self.transact(key, lambda before: record)).after

    async def delete(self, key: str) -> None:
        await self.transact(key, lambda before: DELETE if before is not None else None)

    async def scan(self, stage: Stage) -> List[Tuple[str, SessionRecord]]:
        try:
            members = sorted(await self.redis.smembers(self._stage_key(stage)))
            if not members:
                return []
            raws = await self.redis.mget([self._key(m) for m in members])
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StoreUnavailable(str(exc)) from exc

        found: List[Tuple[str, SessionRecord]] = []
        stale: List[str] = []
        for member, raw in zip(members, raws):
            record = self._decode(member, raw)
            if record is None or record.stage is not stage:
                stale.append(member)
                continue
            found.append((member, record))
        if stale:
            # Expired keys leave their index entry behind
            try:
                await self.redis.srem(self._stage_key(stage), *stale)
            except (RedisConnectionError, RedisTimeoutError):
                logger.warning(f"Could not prune {len(stale)} stale index entries for {stage.value}")
        return found

    async def transact(self, key: str, mutate: Mutation) -> Transition:
        skey = self._key(key)
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                for _ in range(MAX_TRANSACTION_ATTEMPTS):
                    try:
                        await pipe.watch(skey)
                        before = self._decode(key, await pipe.get(skey))
                        outcome = mutate(before)
                        if outcome is None:
                            await pipe.unwatch()
                            return Transition(before, before, applied=False)

                        pipe.multi()
                        if before is not None:
                            pipe.srem(self._stage_key(before.stage), key)
                        if isinstance(outcome, _Delete):
                            after = None
                            pipe.delete(skey)
                        else:
                            after = _bump(outcome, before)
                            pipe.set(skey, after.to_json(), ex=self.ttl)
                            pipe.sadd(self._stage_key(after.stage), key)
                        await pipe.execute()
                        return Transition(before, after, applied=True)
                    except WatchError:
                        logger.debug(f"Session {key} changed during transaction, retrying")
                        continue
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StoreUnavailable(str(exc)) from exc
        raise StoreUnavailable(f"session {key} kept changing; gave up after {MAX_TRANSACTION_ATTEMPTS} attempts")

    async def claim_event(self, event_id: str, ttl: int) -> bool:
        try:
            return bool(await self.redis.set(self._event_key(event_id), "1", nx=True, ex=ttl))
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StoreUnavailable(str(exc)) from exc

    async def release_event(self, event_id: str) -> None:
        try:
            await self.redis.delete(self._event_key(event_id))
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StoreUnavailable(str(exc)) from exc


class MemorySessionStore:
    """In-process store with the same optimistic semantics, for tests and local runs."""

    def __init__(self):
        self._records: Dict[str, SessionRecord] = {}
        self._events: set = set()
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[SessionRecord]:
        return self._records.get(key)

    async def put(self, key: str, record: SessionRecord) -> SessionRecord:
        return (await self.transact(key, lambda before: record)).after

    async def delete(self, key: str) -> None:
        await self.transact(key, lambda before: DELETE if before is not None else None)

    async def scan(self, stage: Stage) -> List[Tuple[str, SessionRecord]]:
        return sorted((k, r) for k, r in self._records.items() if r.stage is stage)

    async def transact(self, key: str, mutate: Mutation) -> Transition:
        for _ in range(MAX_TRANSACTION_ATTEMPTS):
            before = self._records.get(key)
            outcome = mutate(before)
            if outcome is None:
                return Transition(before, before, applied=False)
            # Yield so concurrent writers can interleave between read and write
            await asyncio.sleep(0)
            async with self._lock:
                if self._records.get(key) is not before:
                    continue
                if isinstance(outcome, _Delete):
                    self._records.pop(key, None)
                    return Transition(before, None, applied=True)
                after = _bump(outcome, before)
                self._records[key] = after
                return Transition(before, after, applied=True)
        raise StoreUnavailable(f"session {key} kept changing; gave up after {MAX_TRANSACTION_ATTEMPTS} attempts")

    async def claim_event(self, event_id: str, ttl: int) -> bool:
        if event_id in self._events:
            return False
        self._events.add(event_id)
        return True

    async def release_event(self, event_id: str) -> None:
        self._events.discard(event_id)
