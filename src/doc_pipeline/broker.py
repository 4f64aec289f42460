"""
Queue Broker
============

Each pipeline stage owns three queues:

- ``<stage>.primary``: durable work queue; broker-level rejects go to the DLQ.
- ``<stage>.retry``: durable delay queue; a message expires after the retry
  delay and is then routed back to the primary queue.
- ``<stage>.dlq``: durable and terminal.

Two backends implement the same small interface (declare, publish, receive,
ack, nack, reject). ``InMemoryBroker`` runs in-process and takes an
injectable clock so retry delays can be exercised in tests. ``RedisBroker``
keeps the queues in Redis, using a sorted set for the delay queue and a
per-consumer processing list so unacknowledged deliveries survive a crash.
Moves between Redis keys run as Lua scripts so each one is atomic.

Both backends hand out at most ``prefetch`` unacknowledged deliveries per
broker instance; workers use one instance each with a prefetch of 1.
"""

from __future__ import annotations

import base64
import itertools
import json
import os
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Protocol

import redis
import structlog

from .errors import BrokerError

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class QueueSpec:
    name: str
    durable: bool = True
    message_ttl_ms: int | None = None
    dead_letter_to: str | None = None


@dataclass(frozen=True)
class QueueTopology:
    stage: str
    primary: str
    retry: str
    dlq: str
    retry_delay_ms: int

    @classmethod
    def for_stage(cls, stage: str, retry_delay_seconds: float) -> QueueTopology:
        return cls(
            stage=stage,
            primary=f"{stage}.primary",
            retry=f"{stage}.retry",
            dlq=f"{stage}.dlq",
            retry_delay_ms=int(retry_delay_seconds * 1000),
        )

    def specs(self) -> list[QueueSpec]:
        return [
            QueueSpec(self.primary, dead_letter_to=self.dlq),
            QueueSpec(
                self.retry,
                message_ttl_ms=self.retry_delay_ms,
                dead_letter_to=self.primary,
            ),
            QueueSpec(self.dlq),
        ]


@dataclass
class Delivery:
    delivery_tag: Any
    queue: str
    body: bytes
    redelivered: bool = False


class Broker(Protocol):
    def declare(self, topology: QueueTopology) -> None: ...

    def publish(self, queue: str, body: bytes) -> None: ...

    def receive(self, queue: str, timeout: float = 0) -> Delivery | None: ...

    def ack(self, delivery: Delivery) -> None: ...

    def nack(self, delivery: Delivery, requeue: bool = True) -> None: ...

    def reject(self, delivery: Delivery) -> None: ...

    def close(self) -> None: ...


@dataclass
class _Stored:
    body: bytes
    expires_at: float | None = None
    redelivered: bool = False


class InMemoryBroker:
    """Process-local broker with queue TTL and dead-letter routing."""

    def __init__(self, *, prefetch: int = 1, clock: Callable[[], float] = time.monotonic):
        self.prefetch = max(1, int(prefetch))
        self._clock = clock
        self._lock = threading.RLock()
        self._specs: dict[str, QueueSpec] = {}
        self._queues: dict[str, deque[_Stored]] = {}
        self._unacked: dict[int, Delivery] = {}
        self._tags = itertools.count(1)

    def declare(self, topology: QueueTopology) -> None:
        with self._lock:
            for spec in topology.specs():
                self._specs[spec.name] = spec
                self._queues.setdefault(spec.name, deque())

    def _spec(self, queue: str) -> QueueSpec:
        spec = self._specs.get(queue)
        if spec is None:
            raise BrokerError(f"Queue '{queue}' has not been declared")
        return spec

    def _append(self, queue: str, body: bytes, *, redelivered: bool = False) -> None:
        spec = self._spec(queue)
        expires_at = None
        if spec.message_ttl_ms:
            expires_at = self._clock() + spec.message_ttl_ms / 1000.0
        self._queues[queue].append(_Stored(body, expires_at, redelivered))

    def _expire(self) -> None:
        now = self._clock()
        for name, spec in self._specs.items():
            if not spec.message_ttl_ms:
                continue
            queue = self._queues[name]
            # One TTL per queue, so the head always expires first
            while queue and queue[0].expires_at is not None and queue[0].expires_at <= now:
                stored = queue.popleft()
                if spec.dead_letter_to:
                    self._append(spec.dead_letter_to, stored.body)

    def publish(self, queue: str, body: bytes) -> None:
        with self._lock:
            self._append(queue, body)

    def receive(self, queue: str, timeout: float = 0) -> Delivery | None:
        """
        Return the next ready message, or None.

        The in-memory backend never blocks; ``timeout`` is accepted for
        interface compatibility.
        """
        with self._lock:
            self._spec(queue)
            self._expire()
            if len(self._unacked) >= self.prefetch:
                return None
            pending = self._queues[queue]
            if not pending:
                return None
            stored = pending.popleft()
            delivery = Delivery(
                delivery_tag=next(self._tags),
                queue=queue,
                body=stored.body,
                redelivered=stored.redelivered,
            )
            self._unacked[delivery.delivery_tag] = delivery
            return delivery

    def _settle(self, delivery: Delivery) -> Delivery:
        settled = self._unacked.pop(delivery.delivery_tag, None)
        if settled is None:
            raise BrokerError(
                f"Delivery {delivery.delivery_tag} is unknown or already settled"
            )
        return settled

    def ack(self, delivery: Delivery) -> None:
        with self._lock:
            self._settle(delivery)

    def nack(self, delivery: Delivery, requeue: bool = True) -> None:
        with self._lock:
            settled = self._settle(delivery)
            if requeue:
                self._queues[settled.queue].appendleft(
                    _Stored(settled.body, redelivered=True)
                )
            else:
                self._dead_letter(settled)

    def reject(self, delivery: Delivery) -> None:
        with self._lock:
            self._dead_letter(self._settle(delivery))

    def _dead_letter(self, delivery: Delivery) -> None:
        target = self._spec(delivery.queue).dead_letter_to
        if target:
            self._append(target, delivery.body)

    def close(self) -> None:
        pass

    # --- inspection helpers ---

    def messages(self, queue: str) -> list[bytes]:
        with self._lock:
            self._expire()
            return [stored.body for stored in self._queues.get(queue, ())]

    def depth(self, queue: str) -> int:
        return len(self.messages(queue))

    @property
    def unacked_count(self) -> int:
        with self._lock:
            return len(self._unacked)


# Moves every due member of a delay queue to its dead-letter target in one step
_PROMOTE_SCRIPT = """
local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
for _, raw in ipairs(due) do
  redis.call('ZREM', KEYS[1], raw)
  if ARGV[2] ~= '' then
    local item = cjson.decode(raw)
    item['queue'] = ARGV[2]
    item['redelivered'] = false
    redis.call('RPUSH', KEYS[2], cjson.encode(item))
  end
end
return #due
"""

# Removes a delivery from a processing list and places it in its next queue
_SETTLE_SCRIPT = """
if redis.call('LREM', KEYS[1], 1, ARGV[1]) == 0 then
  return 0
end
if ARGV[3] == 'delayed' then
  redis.call('ZADD', KEYS[2], ARGV[4], ARGV[2])
elseif ARGV[3] == 'head' then
  redis.call('LPUSH', KEYS[2], ARGV[2])
else
  redis.call('RPUSH', KEYS[2], ARGV[2])
end
return 1
"""

# Returns everything in a processing list to the head of its source queue
_RECOVER_SCRIPT = """
local moved = 0
while true do
  local raw = redis.call('RPOP', KEYS[1])
  if not raw then
    break
  end
  local item = cjson.decode(raw)
  item['redelivered'] = true
  redis.call('LPUSH', ARGV[1] .. item['queue'], cjson.encode(item))
  moved = moved + 1
end
return moved
"""


class RedisBroker:
    """
    Redis-backed broker.

    Plain queues are Redis lists. Queues with a message TTL are sorted sets
    scored by expiry time; due members are moved to the dead-letter target
    before every receive. Deliveries are moved atomically into a processing
    list owned by this consumer. Settling a delivery removes it from that
    list and places it in its next queue in a single script, so a lost
    connection never drops a message.

    Each consumer refreshes a heartbeat key while it runs. ``recover`` only
    takes deliveries back from consumers whose heartbeat has expired.
    """

    def __init__(
        self,
        *,
        url: str | None = None,
        client: Any = None,
        namespace: str = "docpipe",
        consumer_id: str | None = None,
        prefetch: int = 1,
        heartbeat_ttl_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        if client is None:
            if not url:
                raise ValueError("REDIS_URL must be provided for the redis broker")
            client = redis.Redis.from_url(url)
        self._client = client
        self._namespace = namespace
        self.consumer_id = consumer_id or f"{os.getpid()}-{uuid.uuid4().hex[:8]}"
        self.prefetch = max(1, int(prefetch))
        self.heartbeat_ttl_seconds = max(1, int(heartbeat_ttl_seconds))
        self._clock = clock
        self._lock = threading.RLock()
        self._specs: dict[str, QueueSpec] = {}
        self._unacked: dict[bytes, Delivery] = {}
        # Set when a settlement failed and the delivery stayed in our list
        self._stranded = False
        self._promote_script = client.register_script(_PROMOTE_SCRIPT)
        self._settle_script = client.register_script(_SETTLE_SCRIPT)
        self._recover_script = client.register_script(_RECOVER_SCRIPT)

    def _queue_key(self, queue: str) -> str:
        return f"{self._namespace}:queue:{queue}"

    def _delayed_key(self, queue: str) -> str:
        return f"{self._namespace}:delayed:{queue}"

    def _processing_key(self, consumer_id: str | None = None) -> str:
        return f"{self._namespace}:processing:{consumer_id or self.consumer_id}"

    def _heartbeat_key(self, consumer_id: str | None = None) -> str:
        return f"{self._namespace}:consumer:{consumer_id or self.consumer_id}"

    def _spec(self, queue: str) -> QueueSpec:
        spec = self._specs.get(queue)
        if spec is None:
            raise BrokerError(f"Queue '{queue}' has not been declared")
        return spec

    @staticmethod
    def _encode(queue: str, body: bytes, *, redelivered: bool = False) -> bytes:
        item = {
            "id": uuid.uuid4().hex,
            "queue": queue,
            "body": base64.b64encode(body).decode("ascii"),
            "redelivered": redelivered,
        }
        return json.dumps(item, sort_keys=True, separators=(",", ":")).encode("utf-8")

    @staticmethod
    def _decode(raw: bytes) -> dict:
        item = json.loads(raw)
        item["body"] = base64.b64decode(item["body"])
        return item

    def declare(self, topology: QueueTopology) -> None:
        with self._lock:
            for spec in topology.specs():
                self._specs[spec.name] = spec

    def _placement(
        self, queue: str, body: bytes, *, head: bool = False, redelivered: bool = False
    ) -> tuple[str, bytes, str, float]:
        """Return ``(key, item, mode, score)`` describing where a message goes."""
        spec = self._spec(queue)
        item = self._encode(queue, body, redelivered=redelivered)
        if spec.message_ttl_ms:
            due = self._clock() + spec.message_ttl_ms / 1000.0
            return self._delayed_key(queue), item, "delayed", due
        return self._queue_key(queue), item, "head" if head else "tail", 0

    def _push(self, queue: str, body: bytes, *, head: bool = False, redelivered: bool = False) -> None:
        key, item, mode, due = self._placement(queue, body, head=head, redelivered=redelivered)
        if mode == "delayed":
            self._client.zadd(key, {item: due})
        elif mode == "head":
            self._client.lpush(key, item)
        else:
            self._client.rpush(key, item)

    def _promote_due(self) -> None:
        now = self._clock()
        for name, spec in self._specs.items():
            if not spec.message_ttl_ms:
                continue
            keys = [self._delayed_key(name)]
            if spec.dead_letter_to:
                keys.append(self._queue_key(spec.dead_letter_to))
            self._promote_script(keys=keys, args=[now, spec.dead_letter_to or ""])

    def _beat(self) -> None:
        self._client.set(self._heartbeat_key(), self._clock(), ex=self.heartbeat_ttl_seconds)

    def publish(self, queue: str, body: bytes) -> None:
        with self._lock:
            try:
                self._push(queue, body)
            except redis.RedisError as e:
                raise BrokerError(f"Failed to publish to '{queue}': {e}") from e

    def receive(self, queue: str, timeout: float = 0) -> Delivery | None:
        with self._lock:
            self._spec(queue)
            if len(self._unacked) >= self.prefetch:
                return None
            try:
                self._beat()
                if self._stranded and not self._unacked:
                    self._requeue_processing(self._processing_key())
                    self._stranded = False
                self._promote_due()
                if timeout > 0:
                    raw = self._client.blmove(
                        self._queue_key(queue), self._processing_key(), timeout, "LEFT", "RIGHT"
                    )
                else:
                    raw = self._client.lmove(
                        self._queue_key(queue), self._processing_key(), "LEFT", "RIGHT"
                    )
            except redis.RedisError as e:
                raise BrokerError(f"Failed to receive from '{queue}': {e}") from e
            if raw is None:
                return None
            item = self._decode(raw)
            delivery = Delivery(
                delivery_tag=raw,
                queue=queue,
                body=item["body"],
                redelivered=bool(item.get("redelivered")),
            )
            self._unacked[raw] = delivery
            return delivery

    def _settle(
        self,
        delivery: Delivery,
        move_to: str | None = None,
        *,
        head: bool = False,
        redelivered: bool = False,
    ) -> None:
        """Remove the delivery from the processing list, moving it to ``move_to`` if given."""
        if delivery.delivery_tag not in self._unacked:
            raise BrokerError("Delivery is unknown or already settled")
        # Unknown to this process from here on; a failed settlement leaves the
        # item in the processing list and the next receive requeues it
        del self._unacked[delivery.delivery_tag]
        try:
            if move_to is None:
                removed = self._client.lrem(self._processing_key(), 1, delivery.delivery_tag)
            else:
                key, item, mode, due = self._placement(
                    move_to, delivery.body, head=head, redelivered=redelivered
                )
                removed = self._settle_script(
                    keys=[self._processing_key(), key],
                    args=[delivery.delivery_tag, item, mode, due],
                )
        except redis.RedisError as e:
            self._stranded = True
            raise BrokerError(f"Failed to settle delivery from '{delivery.queue}': {e}") from e
        if not removed:
            raise BrokerError("Delivery was not found in the processing list")

    def ack(self, delivery: Delivery) -> None:
        with self._lock:
            self._settle(delivery)

    def nack(self, delivery: Delivery, requeue: bool = True) -> None:
        with self._lock:
            if requeue:
                self._settle(delivery, delivery.queue, head=True, redelivered=True)
            else:
                self._settle(delivery, self._spec(delivery.queue).dead_letter_to)

    def reject(self, delivery: Delivery) -> None:
        with self._lock:
            self._settle(delivery, self._spec(delivery.queue).dead_letter_to)

    def _requeue_processing(self, key: str) -> int:
        return int(self._recover_script(keys=[key], args=[f"{self._namespace}:queue:"]))

    def recover(self) -> int:
        """
        Return deliveries held by dead consumers to the head of their queues.

        A consumer counts as dead once its heartbeat key has expired. This
        consumer's own list is recovered as well when it holds nothing, which
        covers a restart under a fixed ``WORKER_ID``.
        """
        prefix = f"{self._namespace}:processing:"
        moved = 0
        with self._lock:
            try:
                self._beat()
                for key in self._client.scan_iter(match=f"{prefix}*"):
                    if isinstance(key, bytes):
                        key = key.decode("utf-8")
                    consumer_id = key[len(prefix):]
                    if consumer_id == self.consumer_id:
                        if self._unacked:
                            continue
                    elif self._client.exists(self._heartbeat_key(consumer_id)):
                        continue
                    count = self._requeue_processing(key)
                    if count:
                        log.warning(
                            "Recovered unacknowledged deliveries",
                            consumer_id=consumer_id,
                            count=count,
                        )
                    moved += count
            except redis.RedisError as e:
                raise BrokerError(f"Failed to recover deliveries: {e}") from e
        return moved

    def close(self) -> None:
        try:
            self._client.delete(self._heartbeat_key())
        except redis.RedisError:
            log.warning("Failed to clear consumer heartbeat", consumer_id=self.consumer_id)
        self._client.close()


def create_broker(
    settings, *, consumer_id: str | None = None, recover: bool = True
) -> InMemoryBroker | RedisBroker:
    if settings.BROKER_BACKEND == "redis":
        broker = RedisBroker(
            url=settings.REDIS_URL,
            consumer_id=consumer_id or settings.WORKER_ID,
            heartbeat_ttl_seconds=max(300, 2 * settings.CLASSIFY_TIMEOUT),
        )
        if recover:
            broker.recover()
        return broker
    return InMemoryBroker()
