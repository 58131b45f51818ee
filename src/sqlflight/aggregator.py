"""
Result aggregation: fans a FlightInfo out to bounded concurrent endpoint fetchers and
merges their batches into one lazy sequence.

Each endpoint gets its own worker task. At most `concurrency` workers are connected at a
time, each may hold at most `lookahead` undelivered batches, and workers only read from the
network when there is room for another batch. A consumer that stops iterating therefore
stops the network reads too.
"""

import asyncio
import collections
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple, Union

import pyarrow as pa

from sqlflight import metrics
from sqlflight.config import ExecutionConfig, FailurePolicy, Ordering
from sqlflight.exceptions import (
    EndpointError,
    ExecutionCancelledError,
    ExecutionFailedError,
    PartialResultError,
    SchemaMismatchError,
    SqlFlightError,
)
from sqlflight.fetcher import EndpointFetcher, EndpointStream
from sqlflight.models import EndpointOutcome, FlightEndpoint, FlightInfo, schema_differences
from sqlflight.state import ExecutionState, ExecutionStateMachine
from sqlflight.transport import FlightTransport
from sqlflight.utils.custom_logging import LoggingContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Batch:
    endpoint_index: int
    batch: pa.RecordBatch


@dataclass(frozen=True)
class _Done:
    outcome: EndpointOutcome


class _Wake:
    """Wakes a waiting consumer after a cancellation."""


_Message = Union[_Batch, _Done, _Wake]


class _CompletionOrderOutbox:
    """Batches are released as soon as any endpoint produces them."""

    def __init__(self, endpoint_count: int, lookahead: int):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._slots = [asyncio.Semaphore(lookahead) for _ in range(endpoint_count)]

    async def put_batch(self, index: int, batch: pa.RecordBatch) -> None:
        await self._slots[index].acquire()
        self._queue.put_nowait(_Batch(index, batch))

    async def put_done(self, outcome: EndpointOutcome) -> None:
        self._queue.put_nowait(_Done(outcome))

    async def wake(self) -> None:
        self._queue.put_nowait(_Wake())

    async def get(self) -> _Message:
        message = await self._queue.get()
        if isinstance(message, _Batch):
            self._slots[message.endpoint_index].release()
        return message


class _StrictOrderOutbox:
    """
    Endpoints are released in declaration order, batches within an endpoint in stream order.

    The endpoint at the head may buffer `lookahead` batches. Endpoints behind it buffer
    against a shared byte budget and block once it is used up; a single batch is always
    accepted into an empty buffer so an oversized batch cannot stall the execution.
    """

    def __init__(self, endpoint_count: int, lookahead: int, max_buffered_bytes: int, surface_failures_early: bool):
        self._buffers: List[Deque[Tuple[pa.RecordBatch, int]]] = [collections.deque() for _ in range(endpoint_count)]
        self._done: Dict[int, EndpointOutcome] = {}
        self._early_failures: Deque[EndpointOutcome] = collections.deque()
        self._lookahead = lookahead
        self._max_buffered_bytes = max_buffered_bytes
        self._surface_failures_early = surface_failures_early
        self._head = 0
        self._buffered_bytes = 0
        self._woken = False
        self._cond = asyncio.Condition()

    @property
    def buffered_bytes(self) -> int:
        return self._buffered_bytes

    def _has_room(self, index: int, nbytes: int) -> bool:
        if index == self._head:
            return len(self._buffers[index]) < self._lookahead
        return self._buffered_bytes == 0 or self._buffered_bytes + nbytes <= self._max_buffered_bytes

    async def put_batch(self, index: int, batch: pa.RecordBatch) -> None:
        nbytes = batch.nbytes
        async with self._cond:
            await self._cond.wait_for(lambda: self._has_room(index, nbytes))
            self._buffers[index].append((batch, nbytes))
            self._buffered_bytes += nbytes
            self._cond.notify_all()

    async def put_done(self, outcome: EndpointOutcome) -> None:
        async with self._cond:
            if outcome.failed and self._surface_failures_early:
                self._early_failures.append(outcome)
            else:
                self._done[outcome.endpoint_index] = outcome
            self._cond.notify_all()

    async def wake(self) -> None:
        async with self._cond:
            self._woken = True
            self._cond.notify_all()

    def _ready(self) -> bool:
        return bool(
            self._woken or self._early_failures or self._buffers[self._head] or self._head in self._done
        )

    async def get(self) -> _Message:
        async with self._cond:
            await self._cond.wait_for(self._ready)
            if self._woken:
                return _Wake()
            if self._early_failures:
                return _Done(self._early_failures.popleft())

            buffer = self._buffers[self._head]
            if buffer:
                batch, nbytes = buffer.popleft()
                self._buffered_bytes -= nbytes
                self._cond.notify_all()
                return _Batch(self._head, batch)

            outcome = self._done.pop(self._head)
            if self._head < len(self._buffers) - 1:
                self._head += 1
            self._cond.notify_all()
            return _Done(outcome)


class Execution:
    """
    The lazy result of one statement: an async iterable of record batches.

    Iterating starts the endpoint fetchers. The sequence can be consumed once. Breaking out
    of the loop, closing the iterator or calling `cancel()` stops every fetcher and ends in
    the CANCELLED state without raising.

    Under FAIL_FAST the first endpoint error is raised from the iteration. Under BEST_EFFORT
    the iteration yields every batch it can and then raises `PartialResultError` (some data
    was delivered) or `ExecutionFailedError` (all endpoints failed before delivering any).
    """

    def __init__(
        self,
        info: FlightInfo,
        fetcher: EndpointFetcher,
        config: Optional[ExecutionConfig] = None,
        shared: Optional[FlightTransport] = None,
    ):
        self.info = info
        self.config = config or ExecutionConfig.create_default()
        self._fetcher = fetcher
        self._shared = shared
        self._machine = ExecutionStateMachine(self.config.failure_policy)
        self._outcomes: Dict[int, EndpointOutcome] = {}
        self._tasks: List[asyncio.Task] = []
        self._outbox: Optional[Union[_CompletionOrderOutbox, _StrictOrderOutbox]] = None
        self._started = False
        self._cancel_requested = False
        self._active = 0
        self.batches_yielded = 0

    @property
    def state(self) -> ExecutionState:
        return self._machine.state

    @property
    def history(self) -> List[ExecutionState]:
        return list(self._machine.history)

    @property
    def outcomes(self) -> Dict[int, EndpointOutcome]:
        """Outcomes of the endpoints that finished so far, keyed by endpoint index."""
        return dict(self._outcomes)

    @property
    def failures(self) -> List[EndpointOutcome]:
        return [outcome for _, outcome in sorted(self._outcomes.items()) if outcome.failed]

    @property
    def active_fetchers(self) -> int:
        """Fetchers holding a concurrency slot; endpoints waiting for one are not counted."""
        return self._active

    def __aiter__(self) -> AsyncIterator[pa.RecordBatch]:
        if self._started:
            raise RuntimeError("An execution can only be iterated once")
        self._started = True
        return self._run()

    async def __aenter__(self) -> "Execution":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.cancel()

    def _create_outbox(self, endpoint_count: int):
        if self.config.ordering == Ordering.STRICT:
            return _StrictOrderOutbox(
                endpoint_count,
                self.config.lookahead,
                self.config.max_buffered_bytes,
                surface_failures_early=self.config.failure_policy == FailurePolicy.FAIL_FAST,
            )
        return _CompletionOrderOutbox(endpoint_count, self.config.lookahead)

    async def _run(self) -> AsyncIterator[pa.RecordBatch]:
        endpoints = self.info.endpoints
        if self._cancel_requested:
            return
        self._machine.start_fetching(len(endpoints))
        logger.info(
            "Fetching %s endpoint(s) with concurrency %s (%s, %s ordering)",
            len(endpoints),
            self.config.concurrency,
            self.config.failure_policy.value,
            self.config.ordering.value,
        )

        self._outbox = self._create_outbox(len(endpoints))
        gate = asyncio.Semaphore(self.config.concurrency)
        # Created in declaration order; the semaphore wakes waiters first-in first-out.
        self._tasks = [
            asyncio.create_task(self._run_endpoint(index, endpoint, gate), name=f"sqlflight-endpoint-{index}")
            for index, endpoint in enumerate(endpoints)
        ]

        remaining = len(endpoints)
        try:
            while remaining and not self._cancel_requested:
                message = await self._outbox.get()
                if isinstance(message, _Wake):
                    break
                if isinstance(message, _Batch):
                    self._machine.batch_delivered()
                    self.batches_yielded += 1
                    yield message.batch
                    continue

                remaining -= 1
                self._record(message.outcome)
                if message.outcome.failed:
                    self._handle_failure(message.outcome)

            if not self._cancel_requested:
                self._settle()
        finally:
            await self._shutdown()

    def _record(self, outcome: EndpointOutcome) -> None:
        self._outcomes[outcome.endpoint_index] = outcome
        self._machine.endpoint_finished(outcome)
        metrics.endpoints_finished_total.labels(outcome="failed" if outcome.failed else "completed").inc()
        if outcome.completed:
            logger.debug(
                "Endpoint %s completed: %s batches, %s rows",
                outcome.endpoint_index,
                outcome.batch_count,
                outcome.row_count,
            )

    def _handle_failure(self, outcome: EndpointOutcome) -> None:
        error = outcome.error
        if not isinstance(error, SqlFlightError):
            self._abort(error)
            raise error
        if self.config.failure_policy == FailurePolicy.FAIL_FAST:
            logger.error(f"Endpoint {outcome.endpoint_index} failed, aborting execution: {error}")
            self._abort(error)
            raise error
        logger.warning(f"Endpoint {outcome.endpoint_index} failed, continuing with remaining endpoints: {error}")

    def _abort(self, error: BaseException) -> None:
        self._machine.fail(error)
        metrics.executions_finished_total.labels(state=ExecutionState.FAILED.value).inc()

    def _settle(self) -> None:
        state = self._machine.finish()
        metrics.executions_finished_total.labels(state=state.value).inc()
        failures = self.failures
        total = len(self.info.endpoints)
        if state == ExecutionState.COMPLETED:
            logger.info("Execution completed: %s batches from %s endpoint(s)", self.batches_yielded, total)
        elif state == ExecutionState.PARTIALLY_FAILED:
            raise PartialResultError(
                f"{len(failures)} of {total} endpoint(s) failed; {self.batches_yielded} batch(es) were delivered",
                failures,
                self.batches_yielded,
            )
        else:
            raise ExecutionFailedError(f"All {total} endpoint(s) failed", failures, self.batches_yielded)

    async def _run_endpoint(self, index: int, endpoint: FlightEndpoint, gate: asyncio.Semaphore) -> None:
        async with gate:
            self._active += 1
            metrics.active_fetchers.inc()
            stream: Optional[EndpointStream] = None
            try:
                with LoggingContext(endpoint=index):
                    try:
                        stream = await self._fetcher.open(endpoint, self._shared, index=index)
                        self._reconcile_schema(index, stream)
                        async for batch in stream:
                            await self._outbox.put_batch(index, batch)
                        outcome = stream.outcome()
                    except EndpointError as e:
                        outcome = EndpointOutcome.failure(
                            index,
                            e,
                            locations_tried=e.locations_tried,
                            batch_count=stream.batches_yielded if stream else 0,
                        )
                    except Exception as e:
                        logger.error(f"Unexpected error fetching endpoint {index}: {e}", exc_info=True)
                        outcome = EndpointOutcome.failure(
                            index,
                            e,
                            locations_tried=stream.locations_tried if stream else 0,
                            batch_count=stream.batches_yielded if stream else 0,
                        )
            finally:
                if stream is not None:
                    stream.close()
                self._active -= 1
                metrics.active_fetchers.dec()
        await self._outbox.put_done(outcome)

    def _reconcile_schema(self, index: int, stream: EndpointStream) -> None:
        declared, actual = self.info.schema, stream.schema
        # Servers may leave the declared schema empty; then every stream is accepted as is.
        if declared is None or len(declared) == 0:
            return
        fatal, advisory = schema_differences(declared, actual)
        for difference in advisory:
            logger.warning("Endpoint %s schema differs from the declared schema: %s", index, difference)
        if fatal:
            raise SchemaMismatchError(index, declared, actual, fatal, locations_tried=stream.locations_tried)

    async def cancel(self) -> None:
        """Stop all fetchers and end the execution in the CANCELLED state."""
        if self._machine.is_terminal:
            await self._stop_fetchers()
            return
        self._cancel_requested = True
        if self._machine.cancel():
            metrics.executions_finished_total.labels(state=ExecutionState.CANCELLED.value).inc()
            logger.info("Execution cancelled after %s batch(es)", self.batches_yielded)
        if self._outbox is not None:
            await self._outbox.wake()
        await self._stop_fetchers()

    async def _shutdown(self) -> None:
        if not self._machine.is_terminal:
            self._cancel_requested = True
            if self._machine.cancel():
                metrics.executions_finished_total.labels(state=ExecutionState.CANCELLED.value).inc()
                logger.info("Execution cancelled after %s batch(es)", self.batches_yielded)
        await self._stop_fetchers()

    async def _stop_fetchers(self) -> None:
        pending = [task for task in self._tasks if not task.done()]
        if not pending:
            return
        for task in pending:
            task.cancel()
        _, still_running = await asyncio.wait(pending, timeout=self.config.cancel_grace_period)
        if still_running:
            logger.warning(
                "%s fetcher(s) did not stop within %.1fs", len(still_running), self.config.cancel_grace_period
            )

    async def to_table(self) -> pa.Table:
        """
        Collect the whole result into a table.

        Raises:
            ExecutionCancelledError: If the execution was cancelled before it completed.
        """
        batches = [batch async for batch in self]
        if self.state == ExecutionState.CANCELLED:
            raise ExecutionCancelledError(
                f"Execution was cancelled after {self.batches_yielded} batch(es)",
                details={"batches_yielded": self.batches_yielded},
            )
        if not batches:
            return (self.info.schema or pa.schema([])).empty_table()

        target = batches[0].schema
        batches = [
            batch if batch.schema.equals(target) else pa.RecordBatch.from_arrays(batch.columns, schema=target)
            for batch in batches
        ]
        return pa.Table.from_batches(batches, schema=target)


class ResultAggregator:
    """Turns a FlightInfo into an Execution over all of its endpoints."""

    def __init__(self, fetcher: EndpointFetcher, config: Optional[ExecutionConfig] = None):
        self.fetcher = fetcher
        self.config = config or ExecutionConfig.create_default()

    def execute(
        self,
        info: FlightInfo,
        shared: Optional[FlightTransport] = None,
        config: Optional[ExecutionConfig] = None,
    ) -> Execution:
        """
        Create the lazy result sequence for a FlightInfo. Nothing is fetched until the
        returned Execution is iterated.

        Args:
            info: The planned result.
            shared: The transport the metadata call was made on, reused for endpoints
                without locations.
            config: Overrides the aggregator's configuration for this execution.
        """
        return Execution(info, self.fetcher, config or self.config, shared)
