"""
Audit Outbox

Bounded outbound queue for internally produced audit events (session
transitions, monitor detections). Backed by a Redis list when Redis is
reachable, by an in-process deque otherwise. Events wait here until the
drainer pushes them through the normal ingestion path.

Events on this queue never carry sensitive fields, so the durable queue
never holds plaintext PHI. When the queue is full new events are rejected
with OutboxFull.

On Redis a drained event moves to a processing list and is removed only
once ingestion has handled it; an event that could not be stored goes back
to the head of the Redis list. Delivery is at-least-once, and ingestion is
idempotent per event id.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from phi_audit.audit.errors import (
    AuditValidationError,
    EncryptionFailure,
    OutboxFull,
    StoreWriteFailure,
)
from phi_audit.audit.models import SENSITIVE_FIELDS, AuditEvent
from phi_audit.config import settings
from phi_audit.infra.background import PeriodicTask
from phi_audit.infra.redis import APP_PREFIX

if TYPE_CHECKING:
    from phi_audit.audit.ingestion import AuditIngestionService

logger = logging.getLogger(__name__)


@dataclass
class DrainResult:
    """Outcome of one drain pass."""

    ingested: int = 0
    dropped: int = 0
    requeued: int = 0

    @property
    def blocked(self) -> bool:
        return self.requeued > 0


class AuditOutbox:
    """
    Bounded queue of pending internal audit events.

    Keys (with namespace):
    - phi-audit:v1:audit:outbox -> list of event JSON
    - phi-audit:v1:audit:outbox:processing -> events taken by a drain, not yet handled
    """

    KEY = f"{APP_PREFIX}audit:outbox"
    PROCESSING_KEY = f"{APP_PREFIX}audit:outbox:processing"

    def __init__(self, redis_client: Optional[Redis] = None, max_size: Optional[int] = None):
        self.redis = redis_client
        self.max_size = max_size or settings.audit_outbox_max_size
        self._memory: deque[str] = deque()
        self._pending: set[asyncio.Task] = set()

    async def size(self) -> int:
        if self.redis is not None:
            try:
                queued = await self.redis.llen(self.KEY)
                in_flight = await self.redis.llen(self.PROCESSING_KEY)
                return queued + in_flight + len(self._memory)
            except RedisError as e:
                logger.warning(f"Redis unavailable for outbox size, using memory: {e}")
        return len(self._memory)

    async def put(self, event: AuditEvent) -> None:
        """
        Queue an event.

        Raises:
            ValueError: If the event carries a sensitive field
            OutboxFull: If the queue is at capacity
        """
        for name in SENSITIVE_FIELDS:
            if getattr(event, name):
                raise ValueError(f"Outbox events must not carry {name}")

        if await self.size() >= self.max_size:
            logger.error(f"Audit outbox full, rejected event id={event.id} ({event.event})")
            raise OutboxFull(self.max_size)

        payload = event.model_dump_json(by_alias=True, exclude_none=True)

        if self.redis is not None:
            try:
                await self.redis.rpush(self.KEY, payload)
                return
            except RedisError as e:
                logger.warning(f"Redis unavailable for outbox, using memory: {e}")

        self._memory.append(payload)

    def submit(self, event: AuditEvent) -> None:
        """
        Queue an event from synchronous code (timer callbacks).

        The put runs as a tracked task; a rejection is logged by `put`.
        """
        task = asyncio.get_running_loop().create_task(self.put(event))
        self._pending.add(task)
        task.add_done_callback(self._on_submitted)

    def _on_submitted(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None and not isinstance(error, OutboxFull):
            logger.error(f"Failed to queue internal audit event: {error}")

    async def flush(self) -> None:
        """Wait for submitted events to land on the queue."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def recover(self) -> int:
        """
        Requeue events a previous process took for draining but never finished.

        Called once at startup, before the drainer runs.
        """
        if self.redis is None:
            return 0

        moved = 0
        try:
            while await self.redis.lmove(self.PROCESSING_KEY, self.KEY, "RIGHT", "LEFT") is not None:
                moved += 1
        except RedisError as e:
            logger.warning(f"Redis unavailable for outbox recovery: {e}")
        if moved:
            logger.info(f"Requeued {moved} unfinished outbox events")
        return moved

    async def _pop(self) -> Optional[tuple[AuditEvent, str, bool]]:
        # Memory holds events queued while Redis was down; they go first
        if self._memory:
            payload = self._memory.popleft()
            return AuditEvent.model_validate_json(payload), payload, False

        if self.redis is not None:
            try:
                payload = await self.redis.lmove(self.KEY, self.PROCESSING_KEY, "LEFT", "RIGHT")
            except RedisError as e:
                logger.warning(f"Redis unavailable for outbox pop: {e}")
                return None
            if payload is not None:
                return AuditEvent.model_validate_json(payload), payload, True
        return None

    async def _ack(self, payload: str, from_redis: bool) -> None:
        """Forget an event ingestion has handled."""
        if not from_redis:
            return
        try:
            await self.redis.lrem(self.PROCESSING_KEY, 1, payload)
        except RedisError as e:
            # Left in processing; recover() requeues it and the store skips the duplicate id
            logger.warning(f"Redis unavailable for outbox ack: {e}")

    async def _push_back(self, payload: str, from_redis: bool) -> None:
        """Return an event to the head of the queue it came from."""
        if not from_redis:
            self._memory.appendleft(payload)
            return
        try:
            await self.redis.lpush(self.KEY, payload)
            await self.redis.lrem(self.PROCESSING_KEY, 1, payload)
        except RedisError as e:
            logger.warning(f"Redis unavailable for outbox push-back: {e}")

    async def drain_once(
        self,
        ingestion: "AuditIngestionService",
        max_events: int = 100,
    ) -> DrainResult:
        """
        Submit queued events through ingestion.

        Retryable failures put the event back at the head and stop the pass.
        Validation failures can never succeed, so the event is dropped.
        """
        result = DrainResult()

        while result.ingested + result.dropped < max_events:
            popped = await self._pop()
            if popped is None:
                break
            event, payload, from_redis = popped

            try:
                await ingestion.ingest(event)
                await self._ack(payload, from_redis)
                result.ingested += 1
            except AuditValidationError as e:
                logger.error(f"Dropped invalid internal audit event id={event.id}: {e.message}")
                await self._ack(payload, from_redis)
                result.dropped += 1
            except (EncryptionFailure, StoreWriteFailure) as e:
                logger.warning(f"Outbox drain blocked at event id={event.id}: {e.code}")
                await self._push_back(payload, from_redis)
                result.requeued += 1
                break

        if result.ingested:
            logger.debug(f"Outbox drained {result.ingested} events")
        return result


class OutboxDrainer(PeriodicTask):
    """Drains the outbox on an interval, backing off while ingestion is failing."""

    name = "outbox-drainer"

    def __init__(
        self,
        outbox: AuditOutbox,
        ingestion: "AuditIngestionService",
        interval_seconds: Optional[float] = None,
        max_interval_seconds: float = 60.0,
    ):
        super().__init__(interval_seconds or settings.audit_outbox_drain_interval_seconds)
        self.base_interval = self.interval_seconds
        self.max_interval_seconds = max_interval_seconds
        self.outbox = outbox
        self.ingestion = ingestion

    async def run_once(self) -> None:
        result = await self.outbox.drain_once(self.ingestion)
        if result.blocked:
            self.interval_seconds = min(self.interval_seconds * 2, self.max_interval_seconds)
        else:
            self.interval_seconds = self.base_interval
