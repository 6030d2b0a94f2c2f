"""
Work Queue - Leased FIFO Handoff

Decouples submission latency from processing latency. A dequeued entry is
leased to exactly one worker; ack removes it, nack releases it, and a lease
that is neither acked nor nacked expires after lease_timeout so the entry is
delivered again. That expiry is the only recovery path for crashed workers.

Implementations:
- InMemoryWorkQueue: single process (tests, local development)
- RedisWorkQueue: shared across worker processes
"""

import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections import OrderedDict, deque
from typing import Callable, Dict, Optional, Tuple

import redis
from pydantic import ValidationError as PydanticValidationError

from upscaler.core.config import settings
from upscaler.core.exceptions import InfrastructureError
from upscaler.core.logging import get_logger
from upscaler.modules.imagery.schemas import LeasedEntry, QueueEntry

logger = get_logger(__name__)


class PoisonEntryError(Exception):
    """Raised by dequeue when a stored entry cannot be decoded. It has been dropped."""

    def __init__(self, entry_id: str, error: str):
        self.entry_id = entry_id
        super().__init__(f"Undecodable queue entry {entry_id}: {error}")


class IWorkQueue(ABC):
    """Interface for the work queue."""

    def __init__(self, lease_timeout: float):
        if lease_timeout <= 0:
            raise ValueError("lease_timeout must be positive")
        self.lease_timeout = lease_timeout

    @abstractmethod
    def enqueue(self, entry: QueueEntry) -> None:
        """Durably persist an entry and make it eligible for delivery."""
        pass

    @abstractmethod
    def dequeue(self, timeout: float = 0.0) -> Optional[LeasedEntry]:
        """
        Lease the oldest eligible entry.

        Args:
            timeout: Seconds to wait for an entry when none is eligible

        Returns:
            The leased entry, or None if nothing became eligible in time
        """
        pass

    @abstractmethod
    def ack(self, leased: LeasedEntry) -> bool:
        """Remove a leased entry permanently. False if the lease was lost."""
        pass

    @abstractmethod
    def nack(self, leased: LeasedEntry, delay: float = 0.0) -> bool:
        """
        Release a lease so the entry is redelivered. False if the lease was lost.

        With a positive delay the entry stays leased for that many seconds and
        is redelivered when the lease runs out, so a worker that cannot act on
        it yet does not get it straight back.
        """
        pass

    @abstractmethod
    def extend(self, leased: LeasedEntry, seconds: float = None) -> bool:
        """Push the lease deadline to now + seconds (default lease_timeout). False if lost."""
        pass

    @abstractmethod
    def depth(self) -> int:
        """Entries waiting for delivery (excluding leased ones)."""
        pass

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass


# =============================================================================
# In-Memory Implementation
# =============================================================================

class InMemoryWorkQueue(IWorkQueue):
    """Thread-safe leased queue held in process memory."""

    def __init__(
        self,
        lease_timeout: float = 600.0,
        clock: Callable[[], float] = time.monotonic
    ):
        super().__init__(lease_timeout)
        self._clock = clock
        self._cond = threading.Condition()
        self._pending: deque = deque()
        # entry_id -> (entry, token, deadline), insertion ordered = delivery order
        self._leased: "OrderedDict[str, Tuple[QueueEntry, str, float]]" = OrderedDict()
        self._deliveries: Dict[str, int] = {}

    def enqueue(self, entry: QueueEntry) -> None:
        with self._cond:
            self._pending.append(entry)
            self._cond.notify()

    def _reclaim_expired(self) -> None:
        now = self._clock()
        expired = [
            entry_id for entry_id, (_, _, deadline) in self._leased.items()
            if deadline <= now
        ]
        # Expired entries are older than anything pending; keep them first
        for entry_id in reversed(expired):
            entry, _, _ = self._leased.pop(entry_id)
            self._pending.appendleft(entry)
            logger.warning("queue_lease_expired", entry_id=entry_id, job_id=entry.job_id)

    def _next_lease_deadline(self) -> Optional[float]:
        if not self._leased:
            return None
        return min(deadline for _, _, deadline in self._leased.values())

    def dequeue(self, timeout: float = 0.0) -> Optional[LeasedEntry]:
        give_up_at = time.monotonic() + max(timeout, 0.0)
        with self._cond:
            while True:
                self._reclaim_expired()
                if self._pending:
                    entry = self._pending.popleft()
                    token = uuid.uuid4().hex
                    self._leased[entry.entry_id] = (entry, token, self._clock() + self.lease_timeout)
                    count = self._deliveries.get(entry.entry_id, 0) + 1
                    self._deliveries[entry.entry_id] = count
                    return LeasedEntry(entry=entry, lease_token=token, delivery_count=count)

                remaining = give_up_at - time.monotonic()
                if remaining <= 0:
                    return None
                wait_for = remaining
                next_deadline = self._next_lease_deadline()
                if next_deadline is not None:
                    wait_for = min(wait_for, max(next_deadline - self._clock(), 0.01))
                self._cond.wait(wait_for)

    def _owns_lease(self, leased: LeasedEntry) -> bool:
        current = self._leased.get(leased.entry.entry_id)
        return current is not None and current[1] == leased.lease_token

    def ack(self, leased: LeasedEntry) -> bool:
        with self._cond:
            if not self._owns_lease(leased):
                logger.warning("queue_ack_lease_lost", entry_id=leased.entry.entry_id)
                return False
            del self._leased[leased.entry.entry_id]
            self._deliveries.pop(leased.entry.entry_id, None)
            return True

    def nack(self, leased: LeasedEntry, delay: float = 0.0) -> bool:
        if delay > 0:
            return self.extend(leased, delay)
        with self._cond:
            if not self._owns_lease(leased):
                logger.warning("queue_nack_lease_lost", entry_id=leased.entry.entry_id)
                return False
            entry, _, _ = self._leased.pop(leased.entry.entry_id)
            self._pending.appendleft(entry)
            self._cond.notify()
            return True

    def extend(self, leased: LeasedEntry, seconds: float = None) -> bool:
        seconds = self.lease_timeout if seconds is None else seconds
        with self._cond:
            if not self._owns_lease(leased):
                logger.warning("queue_extend_lease_lost", entry_id=leased.entry.entry_id)
                return False
            entry, token, _ = self._leased[leased.entry.entry_id]
            self._leased[leased.entry.entry_id] = (entry, token, self._clock() + seconds)
            # Waiting dequeuers recompute their wake-up from the new deadline
            self._cond.notify_all()
            return True

    def depth(self) -> int:
        with self._cond:
            self._reclaim_expired()
            return len(self._pending)

    def leased_count(self) -> int:
        with self._cond:
            return len(self._leased)


# =============================================================================
# Redis Implementation
# =============================================================================

# KEYS: pending, leased, entries, tokens, deliveries
# ARGV: now, lease_deadline, token
_DEQUEUE_SCRIPT = """
local expired = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1])
-- oldest lease ends up at the pop end
for i = #expired, 1, -1 do
    local entry_id = expired[i]
    redis.call('ZREM', KEYS[2], entry_id)
    redis.call('HDEL', KEYS[4], entry_id)
    redis.call('RPUSH', KEYS[1], entry_id)
end
local entry_id = redis.call('RPOP', KEYS[1])
if not entry_id then
    return nil
end
redis.call('ZADD', KEYS[2], ARGV[2], entry_id)
redis.call('HSET', KEYS[4], entry_id, ARGV[3])
local count = redis.call('HINCRBY', KEYS[5], entry_id, 1)
local payload = redis.call('HGET', KEYS[3], entry_id)
return {entry_id, payload or '', count}
"""

# KEYS: pending, leased, entries, tokens, deliveries
# ARGV: entry_id, token, mode ('ack' | 'nack')
_SETTLE_SCRIPT = """
if redis.call('HGET', KEYS[4], ARGV[1]) ~= ARGV[2] then
    return 0
end
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('HDEL', KEYS[4], ARGV[1])
if ARGV[3] == 'ack' then
    redis.call('HDEL', KEYS[3], ARGV[1])
    redis.call('HDEL', KEYS[5], ARGV[1])
else
    redis.call('RPUSH', KEYS[1], ARGV[1])
end
return 1
"""

# KEYS: pending, leased, entries, tokens, deliveries
# ARGV: entry_id, token, new_deadline
_EXTEND_SCRIPT = """
if redis.call('HGET', KEYS[4], ARGV[1]) ~= ARGV[2] then
    return 0
end
redis.call('ZADD', KEYS[2], 'XX', ARGV[3], ARGV[1])
return 1
"""

# KEYS: pending, leased, entries, tokens, deliveries
# ARGV: entry_id
_DROP_SCRIPT = """
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('HDEL', KEYS[3], ARGV[1])
redis.call('HDEL', KEYS[4], ARGV[1])
redis.call('HDEL', KEYS[5], ARGV[1])
return 1
"""


class RedisWorkQueue(IWorkQueue):
    """
    Leased queue stored in Redis.

    Layout under the queue name:
    - <name>:pending     list of entry ids, LPUSH new / RPOP oldest
    - <name>:leased      sorted set of entry ids scored by lease deadline
    - <name>:entries     hash entry id -> JSON payload
    - <name>:tokens      hash entry id -> current lease token
    - <name>:deliveries  hash entry id -> delivery count
    Reclaim, pop and lease happen in one Lua script, so two workers can never
    lease the same entry.
    """

    def __init__(
        self,
        client: redis.Redis,
        name: str = "image-processing",
        lease_timeout: float = 600.0,
        poll_interval: float = 0.5
    ):
        super().__init__(lease_timeout)
        self.client = client
        self.name = name
        self.poll_interval = poll_interval
        self._keys = [
            f"{name}:pending",
            f"{name}:leased",
            f"{name}:entries",
            f"{name}:tokens",
            f"{name}:deliveries",
        ]
        self._dequeue = client.register_script(_DEQUEUE_SCRIPT)
        self._settle = client.register_script(_SETTLE_SCRIPT)
        self._drop = client.register_script(_DROP_SCRIPT)
        self._extend = client.register_script(_EXTEND_SCRIPT)

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisWorkQueue":
        return cls(redis.Redis.from_url(url, decode_responses=True), **kwargs)

    def _call(self, operation: str, func, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except redis.RedisError as e:
            logger.error("work_queue_unavailable", operation=operation, error=str(e))
            raise InfrastructureError(f"Work queue unavailable during {operation}: {e}", component="work_queue") from e

    def enqueue(self, entry: QueueEntry) -> None:
        pipe = self.client.pipeline(transaction=True)
        pipe.hset(self._keys[2], entry.entry_id, entry.to_json())
        pipe.lpush(self._keys[0], entry.entry_id)
        self._call("enqueue", pipe.execute)

    def dequeue(self, timeout: float = 0.0) -> Optional[LeasedEntry]:
        give_up_at = time.monotonic() + max(timeout, 0.0)
        while True:
            now = time.time()
            token = uuid.uuid4().hex
            result = self._call(
                "dequeue",
                self._dequeue,
                keys=self._keys,
                args=[now, now + self.lease_timeout, token],
            )
            if result:
                entry_id, payload, count = result
                try:
                    entry = QueueEntry.from_json(payload)
                except PydanticValidationError as e:
                    self._call("drop", self._drop, keys=self._keys, args=[entry_id])
                    raise PoisonEntryError(entry_id, str(e))
                return LeasedEntry(entry=entry, lease_token=token, delivery_count=int(count))

            remaining = give_up_at - time.monotonic()
            if remaining <= 0:
                return None
            time.sleep(min(self.poll_interval, remaining))

    def _settle_entry(self, leased: LeasedEntry, mode: str) -> bool:
        settled = self._call(
            mode,
            self._settle,
            keys=self._keys,
            args=[leased.entry.entry_id, leased.lease_token, mode],
        )
        if not settled:
            logger.warning(f"queue_{mode}_lease_lost", entry_id=leased.entry.entry_id)
        return bool(settled)

    def ack(self, leased: LeasedEntry) -> bool:
        return self._settle_entry(leased, "ack")

    def nack(self, leased: LeasedEntry, delay: float = 0.0) -> bool:
        if delay > 0:
            return self.extend(leased, delay)
        return self._settle_entry(leased, "nack")

    def extend(self, leased: LeasedEntry, seconds: float = None) -> bool:
        seconds = self.lease_timeout if seconds is None else seconds
        extended = self._call(
            "extend",
            self._extend,
            keys=self._keys,
            args=[leased.entry.entry_id, leased.lease_token, time.time() + seconds],
        )
        if not extended:
            logger.warning("queue_extend_lease_lost", entry_id=leased.entry.entry_id)
        return bool(extended)

    def depth(self) -> int:
        return int(self._call("depth", self.client.llen, self._keys[0]))

    def ping(self) -> bool:
        return bool(self._call("ping", self.client.ping))

    def close(self) -> None:
        self.client.close()


def create_work_queue(backend: str = None, **overrides) -> IWorkQueue:
    """Build the configured work queue. Owned and closed by the entry point."""
    backend = (backend or settings.QUEUE_BACKEND).lower()
    lease_timeout = overrides.pop("lease_timeout", settings.LEASE_TIMEOUT_SECONDS)

    if backend == "memory":
        return InMemoryWorkQueue(lease_timeout=lease_timeout, **overrides)
    if backend == "redis":
        return RedisWorkQueue.from_url(
            overrides.pop("url", settings.REDIS_URL),
            name=overrides.pop("name", settings.QUEUE_NAME),
            lease_timeout=lease_timeout,
            **overrides
        )
    raise ValueError(f"Unknown queue backend: {backend}")
