"""
Shared fan-out for both orchestrators: bounded-concurrency adapter calls,
cancellation with a grace period, and conversion of adapter exceptions into
SourceOutcome provenance.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Optional, Sequence

from ..adapters.base import BaseAdapter
from ..auth.credentials import CredentialProvider
from ..config import CollectionConfig
from ..errors import AuditPipelineError, PartialResult
from ..models import OutcomeStatus, QueryFilters, Record, SourceOutcome, TimeWindow

logger = logging.getLogger("m365_audit.orchestrator")


class CancellationToken:
    """
    Cooperative cancellation: fires on cancel() or once the optional
    deadline (seconds from construction) has passed.
    """

    def __init__(self, deadline_seconds: Optional[float] = None):
        self._event = asyncio.Event()
        self._deadline = (
            time.monotonic() + deadline_seconds if deadline_seconds is not None else None
        )

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self._event.set()
            return True
        return False

    @property
    def remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    async def wait(self):
        """Return once the token fires."""
        if self.cancelled:
            return
        if self._deadline is None:
            await self._event.wait()
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=self.remaining)
        except asyncio.TimeoutError:
            self._event.set()


@dataclass
class AdapterRun:
    """Records returned by one adapter call plus its outcome."""
    adapter: BaseAdapter
    outcome: SourceOutcome
    records: list[Record] = field(default_factory=list)


async def run_adapters(
    adapters: Sequence[BaseAdapter],
    window: TimeWindow,
    filters: QueryFilters,
    provider: CredentialProvider,
    config: CollectionConfig,
    cancel: Optional[CancellationToken] = None,
) -> list[AdapterRun]:
    """
    Call every adapter concurrently, at most `degree_of_parallelism` at a
    time. Results come back in the order of `adapters`. Never raises for
    adapter failures.
    """
    cancel = cancel or CancellationToken()
    semaphore = asyncio.Semaphore(max(1, config.degree_of_parallelism))
    started = time.monotonic()

    tasks = [
        asyncio.create_task(
            _run_one(a, window, filters, provider, cancel, semaphore),
            name=f"adapter:{a.adapter_id.value}",
        )
        for a in adapters
    ]
    try:
        await _wait_with_grace(tasks, cancel, config.cancel_grace_seconds)
    except asyncio.CancelledError:
        for t in tasks:
            t.cancel()
        raise

    runs = []
    for adapter, task in zip(adapters, tasks):
        if task.cancelled():
            runs.append(AdapterRun(adapter, SourceOutcome(
                adapter_id=adapter.adapter_id.value,
                status=OutcomeStatus.CANCELLED,
                error="cancelled after grace period",
                duration_seconds=round(time.monotonic() - started, 2),
            )))
        else:
            runs.append(task.result())
    return runs


async def _wait_with_grace(
    tasks: list[asyncio.Task],
    cancel: CancellationToken,
    grace: float,
):
    """Wait for all tasks; once cancel fires, allow `grace` seconds then cancel stragglers."""
    if not tasks:
        return
    waiter = asyncio.create_task(cancel.wait())
    try:
        pending = set(tasks)
        while pending:
            done, _ = await asyncio.wait(pending | {waiter}, return_when=asyncio.FIRST_COMPLETED)
            pending -= done
            if waiter in done:
                break
        if pending:
            logger.warning(
                f"[orchestrator] Cancellation requested; {len(pending)} adapter(s) "
                f"have {grace}s to return partial results"
            )
            _, pending = await asyncio.wait(pending, timeout=grace)
            for t in pending:
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
    finally:
        waiter.cancel()


async def _run_one(
    adapter: BaseAdapter,
    window: TimeWindow,
    filters: QueryFilters,
    provider: CredentialProvider,
    cancel: CancellationToken,
    semaphore: asyncio.Semaphore,
) -> AdapterRun:
    aid = adapter.adapter_id.value
    async with semaphore:
        start = time.monotonic()
        if cancel.cancelled:
            return AdapterRun(adapter, SourceOutcome(
                adapter_id=aid, status=OutcomeStatus.CANCELLED, error="cancelled before start",
            ))

        logger.info(f"[orchestrator] Starting {aid}")
        try:
            connection = await provider.get_connection(adapter.adapter_id)
            records = await adapter.fetch(window, filters, connection, cancel)
        except PartialResult as p:
            status = OutcomeStatus.CANCELLED if p.cancelled else OutcomeStatus.PARTIAL
            outcome = SourceOutcome(
                adapter_id=aid,
                status=status,
                record_count=len(p.records),
                completed_slices=tuple(p.completed_slices),
                failed_slices=tuple(p.failed_slices),
                error=p.message or f"{len(p.failed_slices)} slice(s) not fetched",
                duration_seconds=round(time.monotonic() - start, 2),
            )
            logger.warning(f"[orchestrator] {aid}: {status.value} ({outcome.error})")
            return AdapterRun(adapter, outcome, list(p.records))
        except AuditPipelineError as e:
            logger.warning(f"[orchestrator] {aid}: failed: {e}")
            return AdapterRun(adapter, SourceOutcome(
                adapter_id=aid,
                status=OutcomeStatus.FAILED,
                error=str(e),
                duration_seconds=round(time.monotonic() - start, 2),
            ))
        except Exception as e:
            logger.exception(f"[orchestrator] {aid}: unexpected failure")
            return AdapterRun(adapter, SourceOutcome(
                adapter_id=aid,
                status=OutcomeStatus.FAILED,
                error=f"{type(e).__name__}: {e}",
                duration_seconds=round(time.monotonic() - start, 2),
            ))

    duration = round(time.monotonic() - start, 2)
    logger.info(f"[orchestrator] {aid}: {len(records)} records ({duration}s)")
    return AdapterRun(adapter, SourceOutcome(
        adapter_id=aid,
        status=OutcomeStatus.COMPLETE,
        record_count=len(records),
        duration_seconds=duration,
    ), list(records))


def outcome_warnings(outcomes: Sequence[SourceOutcome]) -> tuple[str, ...]:
    """One "<adapter>: <status>: <error>" line per non-complete outcome."""
    return tuple(
        f"{o.adapter_id}: {o.status.value}: {o.error}"
        for o in outcomes if o.status != OutcomeStatus.COMPLETE
    )
