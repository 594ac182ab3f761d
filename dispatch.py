"""Bounded fan-out of per-recipient deliveries with deadlines.

At most ``max_workers`` deliveries are in flight at once, all on one
executor. Each delivery gets its own deadline when it starts. A slot frees
as soon as its delivery finishes or its deadline passes. A delivery still
running at its deadline is reported as DeliveryTimeout and abandoned, so a
hung transport never holds up the remaining recipients.
"""

from __future__ import annotations

import collections
import concurrent.futures
import logging
import time
from dataclasses import dataclass
from typing import Callable

log = logging.getLogger(__name__)


class DeliveryError(Exception):
    """Delivery to one recipient failed. Never aborts the rest of a batch."""

    def __init__(self, recipient: str, subject: str, reason: str):
        super().__init__(f"{reason} (recipient={recipient}, subject={subject!r})")
        self.recipient = recipient
        self.subject = subject
        self.reason = reason


class DeliveryTimeout(DeliveryError):
    """Delivery to one recipient did not complete before its deadline."""


@dataclass(frozen=True)
class DeliveryTask:
    """One recipient of one batch. The worker builds everything else itself."""

    recipient: str
    subject: str


SendFunc = Callable[[DeliveryTask, float], None]


@dataclass(frozen=True)
class _InFlight:
    index: int
    task: DeliveryTask
    deadline: float


def fan_out(
    tasks: list[DeliveryTask],
    send: SendFunc,
    timeout: float,
    max_workers: int = 1,
) -> list[DeliveryError]:
    """Run send(task, deadline) for every task; return one error per failed task.

    Errors are returned in task order. Every task is attempted exactly once.
    """
    if max_workers < 1:
        raise ValueError("max_workers must be >= 1")
    if not tasks:
        return []

    queued = collections.deque(enumerate(tasks))
    running: dict[concurrent.futures.Future, _InFlight] = {}
    errors: dict[int, DeliveryError] = {}

    # Abandoned deliveries keep their thread, so the executor may need one
    # thread per task; concurrency is bounded by the submit loop below.
    executor = concurrent.futures.ThreadPoolExecutor(
        max_workers=len(tasks), thread_name_prefix="deliver"
    )
    try:
        while queued or running:
            while queued and len(running) < max_workers:
                index, task = queued.popleft()
                deadline = time.monotonic() + timeout
                running[executor.submit(send, task, deadline)] = _InFlight(index, task, deadline)

            next_deadline = min(item.deadline for item in running.values())
            concurrent.futures.wait(
                running,
                timeout=max(0.0, next_deadline - time.monotonic()),
                return_when=concurrent.futures.FIRST_COMPLETED,
            )

            now = time.monotonic()
            for future, item in list(running.items()):
                if future.done():
                    del running[future]
                    error = _failure(item.task, future)
                elif now >= item.deadline:
                    del running[future]
                    future.cancel()
                    log.debug("Abandoning delivery to %s after %.1fs", item.task.recipient, timeout)
                    error = DeliveryTimeout(
                        item.task.recipient, item.task.subject, f"no response within {timeout:g}s"
                    )
                else:
                    continue
                if error is not None:
                    errors[item.index] = error
    finally:
        # Don't join threads still stuck in a transport call.
        executor.shutdown(wait=False, cancel_futures=True)

    return [errors[index] for index in sorted(errors)]


def _failure(task: DeliveryTask, future: concurrent.futures.Future) -> DeliveryError | None:
    exc = future.exception()
    if exc is None:
        return None

    if isinstance(exc, DeliveryError):
        return exc
    if isinstance(exc, TimeoutError):
        error: DeliveryError = DeliveryTimeout(task.recipient, task.subject, f"timed out: {exc}")
    else:
        error = DeliveryError(task.recipient, task.subject, str(exc) or type(exc).__name__)
    error.__cause__ = exc
    return error
