"""
HolderRank Rate-Limited Batcher
═══════════════════════════════════════════════════════════════════════════════
Runs an async operation over a list of work items in fixed-size batches.
Items inside a batch run concurrently; batches run strictly one after the other
with a pause in between, because the upstream APIs limit total request rate.

Each item is retried with capped exponential backoff. An item that still fails
is recorded as "no data" unless the batcher is in fail-fast mode, in which case
RetriesExhausted is raised once the current batch has settled.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable

logger = logging.getLogger(__name__)

# Request settings
BATCH_SIZE = 10
BATCH_DELAY = 0.5
MAX_RETRIES = 3
RETRY_BASE_DELAY = 0.5
RETRY_MAX_DELAY = 8.0

_NO_DATA = object()


class RetriesExhausted(Exception):
    """An item kept failing after every retry."""

    def __init__(self, item: Any, error: BaseException):
        super().__init__(f"Retries exhausted for {item!r}: {error}")
        self.item = item
        self.error = error


@dataclass
class BatchReport:
    """Results aligned with the input items; failed items hold None."""

    results: list[Any] = field(default_factory=list)
    failed: list[Any] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return len(self.results) - len(self.failed)


class RateLimitedBatcher:
    """Concurrency-bounded, delay-paced executor with per-item retries."""

    def __init__(
        self,
        batch_size: int = BATCH_SIZE,
        batch_delay: float = BATCH_DELAY,
        max_retries: int = MAX_RETRIES,
        retry_base_delay: float = RETRY_BASE_DELAY,
        retry_max_delay: float = RETRY_MAX_DELAY,
        fail_fast: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.fail_fast = fail_fast
        self._sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number attempt+1 (attempt is 0-based)."""
        return min(self.retry_base_delay * (2**attempt), self.retry_max_delay)

    async def _attempt(
        self, item: Any, operation: Callable[[Any], Awaitable[Any]], label: str
    ) -> Any:
        last_error: Exception | None = None
        for attempt in range(self.max_retries):
            try:
                return await operation(item)
            except Exception as e:
                last_error = e
                if attempt < self.max_retries - 1:
                    delay = self.backoff_delay(attempt)
                    logger.debug(
                        "%s %s failed (attempt %d/%d), retrying in %.2fs: %s",
                        label, item, attempt + 1, self.max_retries, delay, e,
                    )
                    await self._sleep(delay)

        logger.error(
            "%s %s failed after %d attempts: %s",
            label, item, self.max_retries, last_error,
        )
        if self.fail_fast:
            raise RetriesExhausted(item, last_error) from last_error
        return _NO_DATA

    async def run(
        self,
        items: Iterable[Any],
        operation: Callable[[Any], Awaitable[Any]],
        label: str = "item",
    ) -> BatchReport:
        """Run operation over items batch by batch and collect the results."""
        items = list(items)
        report = BatchReport()
        if not items:
            return report

        num_batches = (len(items) + self.batch_size - 1) // self.batch_size
        for batch_num, start in enumerate(range(0, len(items), self.batch_size), 1):
            batch = items[start : start + self.batch_size]
            logger.debug(
                "Processing %s batch %d/%d (%d items)",
                label, batch_num, num_batches, len(batch),
            )

            outcomes = await asyncio.gather(
                *(self._attempt(item, operation, label) for item in batch),
                return_exceptions=True,
            )

            exhausted = None
            for item, outcome in zip(batch, outcomes):
                if isinstance(outcome, RetriesExhausted):
                    exhausted = exhausted or outcome
                    report.results.append(None)
                    report.failed.append(item)
                elif isinstance(outcome, BaseException):
                    raise outcome
                elif outcome is _NO_DATA:
                    report.results.append(None)
                    report.failed.append(item)
                else:
                    report.results.append(outcome)

            if exhausted is not None:
                raise exhausted

            if batch_num < num_batches and self.batch_delay > 0:
                await self._sleep(self.batch_delay)

        if report.failed:
            logger.warning(
                "%d of %d %s lookups returned no data after retries",
                len(report.failed), len(items), label,
            )
        return report
