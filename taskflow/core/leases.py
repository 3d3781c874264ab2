"""Mutex lease table: at most one runnable instance per mutex key."""

import threading
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from .logging import get_logger

logger = get_logger(__name__)

# (priority desc, requested_at asc, instance_id asc)
_WaiterKey = Tuple[int, datetime, str]


class MutexLeaseTable:
    """Grants each mutex key to one instance at a time; waiters queue by priority then FIFO.

    Acquire and release are atomic under a single lock. A waiter is only
    granted the lease when the key is free and it heads the queue.
    """

    def __init__(self):
        self._holders: Dict[str, str] = {}
        self._waiters: Dict[str, Dict[str, _WaiterKey]] = {}
        self._lock = threading.Lock()

    def try_acquire(self, key: str, instance_id: str, priority: int = 0,
                    requested_at: Optional[datetime] = None) -> bool:
        """
        Acquire ``key`` for ``instance_id`` or join its wait queue.

        Args:
            key: Mutex key
            instance_id: Instance asking for the lease
            priority: Higher priorities are served first
            requested_at: Start request time, breaks priority ties

        Returns:
            True if the instance holds the lease after the call
        """
        with self._lock:
            holder = self._holders.get(key)
            if holder == instance_id:
                return True
            queue = self._waiters.setdefault(key, {})
            queue.setdefault(instance_id, (-priority, requested_at or datetime.min, instance_id))
            if holder is not None:
                return False
            head = min(queue.items(), key=lambda item: item[1])[0]
            if head != instance_id:
                return False
            del queue[instance_id]
            if not queue:
                del self._waiters[key]
            self._holders[key] = instance_id
        logger.info(f"Mutex '{key}' acquired by instance {instance_id}")
        return True

    def restore(self, key: str, instance_id: str) -> bool:
        """Record an existing holder (an adopted running instance). False if someone else holds it."""
        with self._lock:
            holder = self._holders.get(key)
            if holder is not None and holder != instance_id:
                return False
            self._holders[key] = instance_id
            queue = self._waiters.get(key)
            if queue:
                queue.pop(instance_id, None)
        return True

    def release(self, key: str, instance_id: str) -> bool:
        """Release the lease if held by ``instance_id`` and drop it from the queue."""
        released = False
        with self._lock:
            if self._holders.get(key) == instance_id:
                del self._holders[key]
                released = True
            queue = self._waiters.get(key)
            if queue is not None:
                queue.pop(instance_id, None)
                if not queue:
                    del self._waiters[key]
        if released:
            logger.info(f"Mutex '{key}' released by instance {instance_id}")
        return released

    def holder(self, key: str) -> Optional[str]:
        with self._lock:
            return self._holders.get(key)

    def waiters(self, key: str) -> List[str]:
        """Queued instance ids in the order they will be served."""
        with self._lock:
            queue = self._waiters.get(key, {})
            return [instance_id for instance_id, _ in sorted(queue.items(), key=lambda item: item[1])]

    def snapshot(self) -> Dict[str, Dict[str, object]]:
        with self._lock:
            keys = set(self._holders) | set(self._waiters)
            return {
                key: {
                    "holder": self._holders.get(key),
                    "waiting": [
                        i for i, _ in sorted(self._waiters.get(key, {}).items(), key=lambda item: item[1])
                    ],
                }
                for key in sorted(keys)
            }
