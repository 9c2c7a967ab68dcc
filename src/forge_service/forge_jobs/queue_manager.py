"""
Queue Manager

Redis Streams queue between submission and the worker pool. Entries stay in
the stream until a worker acknowledges them, so jobs that were queued when
the process stopped are still there when it starts again.
Submission never blocks: a full queue is rejected immediately so
backpressure is visible to the caller.
"""
import logging
import time
from typing import Any, Dict, List, Optional, Set, Tuple

import redis.asyncio as redis
from redis.exceptions import ResponseError

from ..errors import QueueFullError

logger = logging.getLogger(__name__)


def _text(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


class QueueManager:
    def __init__(
        self,
        redis_client: redis.Redis,
        max_depth: int = 100,
        stream_key: str = "forge:jobs:stream",
        consumer_group: str = "forge-workers",
    ):
        self.redis = redis_client
        self.max_depth = max_depth
        self.stream_key = stream_key
        self.consumer_group = consumer_group
        self.enqueued_total = 0
        self.rejected_total = 0
        self._group_ready = False

    async def initialize_consumer_group(self) -> None:
        """Create the consumer group (and the stream) if they do not exist."""
        if self._group_ready:
            return
        try:
            await self.redis.xgroup_create(
                name=self.stream_key,
                groupname=self.consumer_group,
                id="0",
                mkstream=True,
            )
        except ResponseError as e:
            # Group already exists
            if "BUSYGROUP" not in str(e):
                raise
        self._group_ready = True

    async def enqueue(self, job_id: str) -> str:
        """
        Append a job id to the stream.

        The depth check counts every unacknowledged entry, so jobs being
        executed still occupy a slot.

        Raises:
            QueueFullError: the stream already holds max_depth entries
        """
        depth = await self.get_depth()
        if depth >= self.max_depth:
            self.rejected_total += 1
            raise QueueFullError(
                f"Job queue full. {self.max_depth} jobs pending. Try again later."
            )

        message_id = await self.redis.xadd(
            self.stream_key,
            {"job_id": job_id, "timestamp": time.time()},
        )
        self.enqueued_total += 1
        return _text(message_id)

    async def dequeue(self, consumer_name: str, timeout: float = 1.0) -> Optional[Tuple[str, str]]:
        """
        Next (message_id, job_id) for this consumer, or None if nothing
        arrived within timeout. The entry stays pending until ack().
        """
        await self.initialize_consumer_group()
        messages = await self.redis.xreadgroup(
            groupname=self.consumer_group,
            consumername=consumer_name,
            streams={self.stream_key: ">"},
            count=1,
            block=max(int(timeout * 1000), 1),
        )

        if messages:
            for _stream_name, message_list in messages:
                for message_id, message_data in message_list:
                    job_id = message_data.get("job_id") or message_data.get(b"job_id")
                    return _text(message_id), _text(job_id)
        return None

    async def ack(self, message_id: str) -> None:
        """Acknowledge and delete a processed entry."""
        await self.redis.xack(self.stream_key, self.consumer_group, message_id)
        await self.redis.xdel(self.stream_key, message_id)

    async def drop_stale_pending(self, min_idle_ms: int) -> List[str]:
        """
        Remove entries delivered to a consumer that never acknowledged them
        within min_idle_ms (its process died). Returns their job ids.
        """
        await self.initialize_consumer_group()
        pending = await self.redis.xpending_range(
            self.stream_key,
            self.consumer_group,
            min="-",
            max="+",
            count=max(self.max_depth, 1) * 2,
            idle=min_idle_ms,
        )
        job_ids = []
        for entry in pending:
            message_id = _text(entry["message_id"])
            for _id, data in await self.redis.xrange(self.stream_key, min=message_id, max=message_id, count=1):
                job_ids.append(_text(data.get("job_id") or data.get(b"job_id")))
            await self.ack(message_id)
        if job_ids:
            logger.warning(f"Dropped {len(job_ids)} stale pending queue entries")
        return job_ids

    async def queued_job_ids(self) -> Set[str]:
        """Job ids of every entry still in the stream, delivered or not."""
        entries = await self.redis.xrange(self.stream_key, count=max(self.max_depth, 1) * 2)
        return {_text(data.get("job_id") or data.get(b"job_id")) for _id, data in entries}

    async def get_depth(self) -> int:
        """Entries not yet acknowledged."""
        return await self.redis.xlen(self.stream_key)

    async def get_stats(self) -> Dict[str, Any]:
        """Get queue statistics."""
        await self.initialize_consumer_group()
        length = await self.redis.xlen(self.stream_key)
        try:
            pending_info = await self.redis.xpending(self.stream_key, self.consumer_group)
            # xpending returns a dict (count, min, max, consumers) or a list in the same order
            if isinstance(pending_info, dict):
                pending_count = pending_info.get("pending", 0)
            elif isinstance(pending_info, (list, tuple)) and pending_info:
                pending_count = pending_info[0]
            else:
                pending_count = 0
        except ResponseError as e:
            logger.warning(f"Could not read pending entries: {e}")
            pending_count = 0

        return {
            "depth": length,
            "pending": pending_count,
            "max_depth": self.max_depth,
            "enqueued_total": self.enqueued_total,
            "rejected_total": self.rejected_total,
        }
