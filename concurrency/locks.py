"""
Keepsake - Lock Management
Named locks with acquisition tracking and statistics
"""

import threading
import time
from datetime import datetime
from typing import Dict, Optional, Any, Union
from dataclasses import dataclass
from contextlib import contextmanager
from collections import defaultdict

from core.logger import log_section, log_subsection


@dataclass
class LockStats:
    """Statistics for a single lock."""
    acquisitions: int = 0
    contentions: int = 0  # Times lock was already held by another thread
    total_wait_time: float = 0.0
    total_hold_time: float = 0.0
    max_wait_time: float = 0.0
    max_hold_time: float = 0.0
    last_acquired: Optional[datetime] = None
    last_released: Optional[datetime] = None


class LockManager:
    """
    Manages named locks with monitoring and statistics.

    Lock names used by the engine:
        database          - multi-statement store operations
        memory            - memory creation / dedup lookups
        memory_extraction - one batch extraction run at a time
        identity          - identity record writes
        consolidation     - one consolidation run at a time
        llm_requests      - semaphore bounding concurrent model calls
    """

    def __init__(self, llm_concurrency: int = 3):
        self._locks: Dict[str, threading.RLock] = {}
        self._semaphores: Dict[str, threading.Semaphore] = {}
        self._stats: Dict[str, LockStats] = defaultdict(LockStats)
        self._meta_lock = threading.Lock()  # Protects the dictionaries
        self._active_holders: Dict[str, Optional[int]] = {}  # lock_name -> thread_id

        for name in ("database", "memory", "memory_extraction", "identity", "consolidation"):
            self._locks[name] = threading.RLock()
            self._stats[name] = LockStats()

        self._semaphores["llm_requests"] = threading.Semaphore(llm_concurrency)
        self._stats["llm_requests"] = LockStats()

    def _resolve(self, lock_name: str) -> Union[threading.RLock, threading.Semaphore]:
        with self._meta_lock:
            if lock_name in self._locks:
                return self._locks[lock_name]
            if lock_name in self._semaphores:
                return self._semaphores[lock_name]
        raise KeyError(f"Unknown lock: {lock_name}")

    @contextmanager
    def acquire(self, lock_name: str, timeout: Optional[float] = None):
        """
        Acquire a named lock with optional timeout.

        Args:
            lock_name: Name of the lock to acquire
            timeout: Optional timeout in seconds

        Raises:
            TimeoutError: If timeout expires before lock acquired
            KeyError: If lock_name doesn't exist
        """
        lock = self._resolve(lock_name)
        thread_id = threading.current_thread().ident
        start_wait = time.time()

        with self._meta_lock:
            current_holder = self._active_holders.get(lock_name)
            if current_holder is not None and current_holder != thread_id:
                self._stats[lock_name].contentions += 1

        if timeout is not None:
            if not lock.acquire(timeout=timeout):
                raise TimeoutError(f"Timeout waiting for lock: {lock_name}")
        else:
            lock.acquire()

        acquire_time = time.time()
        wait_time = acquire_time - start_wait

        with self._meta_lock:
            stats = self._stats[lock_name]
            stats.acquisitions += 1
            stats.total_wait_time += wait_time
            stats.max_wait_time = max(stats.max_wait_time, wait_time)
            stats.last_acquired = datetime.now()
            self._active_holders[lock_name] = thread_id

        try:
            yield
        finally:
            hold_time = time.time() - acquire_time

            with self._meta_lock:
                stats = self._stats[lock_name]
                stats.total_hold_time += hold_time
                stats.max_hold_time = max(stats.max_hold_time, hold_time)
                stats.last_released = datetime.now()
                self._active_holders[lock_name] = None

            lock.release()

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics for all locks."""
        with self._meta_lock:
            return {
                name: {
                    "acquisitions": stats.acquisitions,
                    "contentions": stats.contentions,
                    "avg_wait_time": stats.total_wait_time / max(stats.acquisitions, 1),
                    "max_wait_time": stats.max_wait_time,
                    "avg_hold_time": stats.total_hold_time / max(stats.acquisitions, 1),
                    "max_hold_time": stats.max_hold_time,
                    "currently_held": self._active_holders.get(name) is not None
                }
                for name, stats in self._stats.items()
            }

    def log_stats(self) -> None:
        """Log current lock statistics."""
        log_section("Lock Statistics", "🔒")

        for name, data in self.get_stats().items():
            if data["acquisitions"] > 0:
                log_subsection(
                    f"{name}: {data['acquisitions']} acq, "
                    f"{data['contentions']} contentions, "
                    f"avg wait {data['avg_wait_time']*1000:.1f}ms, "
                    f"avg hold {data['avg_hold_time']*1000:.1f}ms"
                )
