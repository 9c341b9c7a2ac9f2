"""
Outbound side-effect queue.

Work that follows a committed state transition (cache invalidation, audit
entries, notifications) is queued here instead of running inside the
transaction. Each task is retried with exponential backoff and moved to a
dead-letter list once its attempts are exhausted. Failures never reach the
code that enqueued the task.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from capguard.db.base import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SideEffect:
    """A queued unit of post-commit work."""

    name: str
    """Short label used in logs, e.g. ``notify:proj_123``."""

    func: Callable[[], Any]
    attempts: int = 0
    last_error: str | None = None
    enqueued_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "enqueued_at": self.enqueued_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class SideEffectQueue:
    """
    Runs side effects on a worker pool with retries and dead letters.

    With ``inline=True`` tasks run synchronously in the caller's thread,
    which keeps tests deterministic.
    """

    def __init__(
        self,
        max_workers: int = 2,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        inline: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Initialize the queue.

        Args:
            max_workers: Worker threads for asynchronous delivery
            max_attempts: Attempts per task before dead-lettering
            base_delay: Delay before the first retry, in seconds
            max_delay: Upper bound on any retry delay
            inline: Run tasks synchronously in the caller
            sleep: Sleep function used between attempts
        """
        self._max_workers = max_workers
        self._max_attempts = max(1, max_attempts)
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._inline = inline
        self._sleep = sleep
        self._executor: ThreadPoolExecutor | None = None
        self._lock = threading.Lock()
        self._pending: set[Future] = set()
        self._dead_letters: list[SideEffect] = []
        self._delivered = 0

    @property
    def executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self._max_workers,
                thread_name_prefix="capguard-side-effect",
            )
        return self._executor

    @property
    def dead_letters(self) -> list[SideEffect]:
        with self._lock:
            return list(self._dead_letters)

    @property
    def delivered_count(self) -> int:
        return self._delivered

    def calculate_backoff(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        return min(self._base_delay * (2 ** (attempt - 1)), self._max_delay)

    def enqueue(self, name: str, func: Callable[[], Any]) -> SideEffect:
        """
        Queue a side effect.

        Args:
            name: Label for logs and dead letters
            func: Zero-argument callable performing the work

        Returns:
            The queued SideEffect
        """
        effect = SideEffect(name=name, func=func)
        if self._inline:
            self._run(effect)
            return effect

        future = self.executor.submit(self._run, effect)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)
        return effect

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def _run(self, effect: SideEffect) -> bool:
        while effect.attempts < self._max_attempts:
            effect.attempts += 1
            try:
                effect.func()
            except Exception as e:
                effect.last_error = str(e)
                if effect.attempts < self._max_attempts:
                    delay = self.calculate_backoff(effect.attempts)
                    logger.warning(
                        f"Side effect '{effect.name}' failed: {e}. "
                        f"Retrying in {delay}s (attempt {effect.attempts})"
                    )
                    self._sleep(delay)
                continue

            effect.completed_at = utcnow()
            with self._lock:
                self._delivered += 1
            return True

        logger.error(
            f"Side effect '{effect.name}' dead-lettered after {effect.attempts} attempts: "
            f"{effect.last_error}"
        )
        with self._lock:
            self._dead_letters.append(effect)
        return False

    def retry_dead_letters(self) -> int:
        """
        Re-queue every dead-lettered task with a fresh attempt budget.

        Returns:
            Number of tasks re-queued
        """
        with self._lock:
            letters = list(self._dead_letters)
            self._dead_letters.clear()

        for effect in letters:
            self.enqueue(effect.name, effect.func)
        if letters:
            logger.info(f"Re-queued {len(letters)} dead-lettered side effects")
        return len(letters)

    def drain(self, timeout: float | None = None) -> bool:
        """
        Wait for queued tasks to finish.

        Returns:
            True if everything finished within the timeout
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                pending = list(self._pending)
            if not pending:
                return True
            for future in pending:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                try:
                    future.result(timeout=remaining)
                except FutureTimeoutError:
                    return False

    def shutdown(self, wait: bool = True) -> None:
        """Stop the worker pool."""
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
            logger.info("Side-effect queue shut down")
