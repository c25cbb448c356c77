"""
Bounded task runner for rollup phases.

Runs a list of zero-argument coroutine factories with at most ``limit``
in flight, and returns one settled result per input in input order. A
failing operation never cancels or blocks its siblings.

Each call owns its own pool of workers; nothing is shared between calls,
so concurrent runs (or tests) never see each other's state.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settled(Generic[T]):
    """
    Outcome of one operation.

    Exactly one of ``value`` / ``error`` is meaningful: ``error`` is None
    when the operation succeeded.
    """

    value: Optional[T] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        """True if the operation completed without raising."""
        return self.error is None

    @property
    def error_message(self) -> str:
        """Human-readable failure reason ("" on success)."""
        if self.error is None:
            return ""
        return str(self.error) or type(self.error).__name__


async def run_bounded(
    operations: Sequence[Callable[[], Awaitable[T]]],
    limit: int,
) -> list[Settled[T]]:
    """
    Execute operations with bounded concurrency.

    Args:
        operations: Zero-argument callables returning awaitables
        limit: Maximum number of operations in flight (values < 1 mean 1)

    Returns:
        One Settled per operation, in the same order as ``operations``

    Note:
        If the awaiting caller is cancelled, the cancellation propagates
        to every worker so no operation is left running unobserved.
    """
    total = len(operations)
    if total == 0:
        return []

    # Each worker writes only its own slots
    results: list[Optional[Settled[T]]] = [None] * total
    next_index = 0

    async def worker() -> None:
        nonlocal next_index
        while next_index < total:
            index = next_index
            next_index += 1
            try:
                value = await operations[index]()
                results[index] = Settled(value=value)
            except Exception as e:
                logger.debug(f"Operation {index} failed: {e}")
                results[index] = Settled(error=e)

    worker_count = min(max(1, int(limit)), total)
    workers = [asyncio.ensure_future(worker()) for _ in range(worker_count)]
    try:
        await asyncio.gather(*workers)
    except BaseException:
        for task in workers:
            task.cancel()
        raise

    return [r if r is not None else Settled(error=RuntimeError("not run")) for r in results]


# Cap on per-item error examples kept in a run summary
MAX_ERROR_EXAMPLES = 25


@dataclass
class BatchOutcome:
    """Aggregate of one write phase (upserts or deletes)."""

    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: dict[str, str] = field(default_factory=dict)


def summarize_results(
    results: Sequence[Settled[Any]],
    key_prefix: str,
    max_error_examples: int = MAX_ERROR_EXAMPLES,
) -> BatchOutcome:
    """
    Count settled results and keep the first few failure messages.

    Errors are keyed "<key_prefix>:<index>" so they can be matched back to
    the submitted item.
    """
    outcome = BatchOutcome(attempted=len(results))
    for index, result in enumerate(results):
        if result.ok:
            outcome.succeeded += 1
            continue
        outcome.failed += 1
        message = result.error_message
        if len(outcome.errors) < max_error_examples:
            outcome.errors[f"{key_prefix}:{index}"] = message
            logger.warning(f"{key_prefix} {index} failed: {message}")
        else:
            logger.debug(f"{key_prefix} {index} failed: {message}")
    return outcome
