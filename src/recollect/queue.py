"""Background task queue for fire-and-forget persistence work.

Tasks start in FIFO order with bounded concurrency. Each attempt runs under
a timeout and failed attempts are retried with a linear back-off. Results
are delivered through a future that always resolves to a TaskResult, so a
failing background write never raises into the caller's event loop.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

# Seconds to wait before retry number n is RETRY_DELAY * n
RETRY_DELAY = 0.05


@dataclass
class TaskResult:
    """Outcome of a queued task.

    Attributes:
        task_id: Identifier given at enqueue time
        success: True if any attempt completed
        attempts: Number of attempts made
        result: Return value of the successful attempt
        error: Last error when every attempt failed
    """
    task_id: str
    success: bool
    attempts: int
    result: Any = None
    error: Optional[BaseException] = None


class BackgroundQueue:
    """Bounded-concurrency asyncio work queue with timeouts and retries.

    Args:
        max_concurrency: Maximum tasks running at once (default: 10)
        default_timeout: Per-attempt timeout in seconds (default: 30)
        default_retries: Retries after the first attempt (default: 5)

    Example:
        >>> queue = BackgroundQueue(max_concurrency=2)
        >>> future = queue.enqueue(lambda: storage.add_message(msg, "u1", "c1"))
        >>> result = await future
        >>> result.success
        True
    """

    def __init__(
        self,
        max_concurrency: int = 10,
        default_timeout: float = 30.0,
        default_retries: int = 5,
    ):
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be at least 1, got {max_concurrency}")
        if default_retries < 0:
            raise ValueError(f"default_retries cannot be negative, got {default_retries}")

        self.max_concurrency = max_concurrency
        self.default_timeout = default_timeout
        self.default_retries = default_retries
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._tasks: set[asyncio.Task] = set()
        self._pending = 0
        self._active = 0

    @property
    def pending_count(self) -> int:
        """Tasks waiting for a concurrency slot."""
        return self._pending

    @property
    def active_count(self) -> int:
        """Tasks currently running."""
        return self._active

    def enqueue(
        self,
        operation: Callable[[], Awaitable[Any]],
        task_id: Optional[str] = None,
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
    ) -> "asyncio.Future[TaskResult]":
        """Schedule an operation on the running event loop.

        Args:
            operation: Zero-argument callable returning a fresh awaitable per attempt
            task_id: Identifier for logs and the TaskResult (default: random uuid)
            timeout: Per-attempt timeout override
            retries: Retry count override

        Returns:
            Future resolving to a TaskResult; it never raises

        Raises:
            RuntimeError: If called without a running event loop
        """
        loop = asyncio.get_running_loop()
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrency)

        task_id = task_id or str(uuid.uuid4())
        self._pending += 1
        task = loop.create_task(
            self._run(
                operation,
                task_id,
                self.default_timeout if timeout is None else timeout,
                self.default_retries if retries is None else retries,
            ),
            name=f"recollect-queue-{task_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug(f"Enqueued task {task_id}")
        return task

    async def _run(
        self,
        operation: Callable[[], Awaitable[Any]],
        task_id: str,
        timeout: float,
        retries: int,
    ) -> TaskResult:
        assert self._semaphore is not None
        async with self._semaphore:
            self._pending -= 1
            self._active += 1
            try:
                return await self._attempt(operation, task_id, timeout, retries)
            finally:
                self._active -= 1

    async def _attempt(
        self,
        operation: Callable[[], Awaitable[Any]],
        task_id: str,
        timeout: float,
        retries: int,
    ) -> TaskResult:
        max_attempts = retries + 1
        last_error: Optional[BaseException] = None

        for attempt in range(1, max_attempts + 1):
            try:
                result = await asyncio.wait_for(operation(), timeout=timeout)
                logger.debug(f"Task {task_id} completed (attempt {attempt}/{max_attempts})")
                return TaskResult(task_id=task_id, success=True, attempts=attempt, result=result)

            except asyncio.TimeoutError as e:
                last_error = TimeoutError(f"Task {task_id} timeout after {timeout}s")
                last_error.__cause__ = e
            except Exception as e:
                last_error = e

            if attempt < max_attempts:
                logger.warning(
                    f"Task {task_id} failed (attempt {attempt}/{max_attempts}), retrying: {last_error}"
                )
                await asyncio.sleep(RETRY_DELAY * attempt)

        logger.error(f"Task {task_id} failed after {max_attempts} attempts: {last_error}")
        return TaskResult(task_id=task_id, success=False, attempts=max_attempts, error=last_error)

    async def join(self) -> None:
        """Wait until every task enqueued so far has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
