"""
Base adapter classes — the contract every source adapter fulfils.

    fetch(window, filters, connection, cancel) -> list of records
        raises SourceUnavailable  when nothing could be fetched
        raises PartialResult      when some slices / sections failed

EventAdapter implements time-window slicing for log-style sources;
FindingAdapter wraps configuration sources whose secondary sections may
fail independently of the primary listing.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Awaitable, Optional

from ..config import CollectionConfig
from ..errors import PartialResult, SourceUnavailable
from ..models import (
    AdapterId,
    Finding,
    NormalizedEvent,
    QueryFilters,
    Record,
    SourceKind,
    TimeWindow,
)

logger = logging.getLogger("m365_audit.adapters")


class BaseAdapter(ABC):
    """
    Abstract base class for all adapters.

    Adapters hold no per-run state: everything a run needs (window, filters,
    connection, cancellation) is passed into fetch(), so one adapter
    instance can serve concurrent runs.
    """

    adapter_id: AdapterId
    name: str = "base"
    description: str = "Base adapter"
    time_bound: bool = False

    def __init__(self, config: Optional[CollectionConfig] = None):
        self.config = config or CollectionConfig()

    @abstractmethod
    async def fetch(
        self,
        window: TimeWindow,
        filters: QueryFilters,
        connection: Any,
        cancel: Any = None,
    ) -> list[Record]:
        raise NotImplementedError


class EventAdapter(BaseAdapter):
    """
    Log-style source. Splits the window into slices no longer than the
    source's span, fetches them in order with one retry each, and returns
    records clipped to the window in ascending timestamp order.
    """

    source: SourceKind
    time_bound = True

    @property
    def max_slice_span(self) -> Optional[timedelta]:
        return self.config.slice_span(self.source.value)

    async def fetch(
        self,
        window: TimeWindow,
        filters: QueryFilters,
        connection: Any,
        cancel: Any = None,
    ) -> list[NormalizedEvent]:
        slices = window.slices(self.max_slice_span)
        records: list[NormalizedEvent] = []
        seen_ids: set[str] = set()
        completed: list[str] = []
        failed: list[str] = []
        cancelled = False

        logger.info(f"[{self.name}] Fetching {window.label} in {len(slices)} slice(s)")

        for i, sl in enumerate(slices):
            if cancel is not None and cancel.cancelled:
                cancelled = True
                failed.extend(s.label for s in slices[i:])
                break
            try:
                batch = await self._fetch_slice_with_retry(sl, filters, connection)
            except asyncio.CancelledError:
                # Hard cancel mid-call: keep what the earlier slices returned
                cancelled = True
                failed.extend(s.label for s in slices[i:])
                break
            except Exception as e:
                logger.warning(f"[{self.name}] Slice {sl.label} failed after retry: {e}")
                failed.append(sl.label)
                continue

            completed.append(sl.label)
            in_slice = [ev for ev in batch if sl.contains(ev.timestamp)]
            for ev in sorted(in_slice, key=lambda e: e.timestamp):
                if ev.record_id:
                    if ev.record_id in seen_ids:
                        continue
                    seen_ids.add(ev.record_id)
                records.append(ev)

        if failed or cancelled:
            if not completed and not cancelled:
                raise SourceUnavailable(self.name, f"all {len(slices)} slice(s) failed")
            raise PartialResult(
                self.name, records, completed, failed, cancelled=cancelled,
            )
        logger.info(f"[{self.name}] {len(records)} events from {len(slices)} slice(s)")
        return records

    async def _fetch_slice_with_retry(
        self,
        sl: TimeWindow,
        filters: QueryFilters,
        connection: Any,
    ) -> list[NormalizedEvent]:
        """One retry with backoff, then let the failure surface."""
        try:
            return await self.fetch_slice(sl, filters, connection)
        except Exception as e:
            backoff = self.config.slice_retry_backoff_seconds
            logger.warning(f"[{self.name}] Slice {sl.label} failed ({e}); retrying in {backoff}s")
            await asyncio.sleep(backoff)
            return await self.fetch_slice(sl, filters, connection)

    @abstractmethod
    async def fetch_slice(
        self,
        sl: TimeWindow,
        filters: QueryFilters,
        connection: Any,
    ) -> list[NormalizedEvent]:
        """Fetch and normalize one slice. Raise on failure."""
        raise NotImplementedError


class SectionTracker:
    """Records which named sections of a finding adapter succeeded."""

    def __init__(self, adapter_name: str):
        self.adapter_name = adapter_name
        self.completed: list[str] = []
        self.failed: list[str] = []
        self.errors: list[str] = []

    async def run(self, section: str, awaitable: Awaitable, default: Any = None) -> Any:
        """Await a secondary section; a failure is recorded, not raised."""
        try:
            value = await awaitable
        except Exception as e:
            logger.warning(f"[{self.adapter_name}] Section {section} failed: {e}")
            self.failed.append(section)
            self.errors.append(f"{section}: {e}")
            return default
        self.completed.append(section)
        return value

    def mark_failed(self, section: str, error: str):
        logger.warning(f"[{self.adapter_name}] Section {section} failed: {error}")
        self.failed.append(section)
        self.errors.append(f"{section}: {error}")

    def mark_completed(self, section: str):
        self.completed.append(section)


class FindingAdapter(BaseAdapter):
    """
    Configuration source. collect() raises if the primary listing fails and
    routes optional lookups through the SectionTracker.
    """

    async def fetch(
        self,
        window: TimeWindow,
        filters: QueryFilters,
        connection: Any,
        cancel: Any = None,
    ) -> list[Finding]:
        tracker = SectionTracker(self.name)
        try:
            findings = await self.collect(window, connection, tracker)
        except Exception as e:
            logger.exception(f"[{self.name}] Collection failed")
            raise SourceUnavailable(self.name, f"{type(e).__name__}: {e}") from e

        if tracker.failed:
            raise PartialResult(
                self.name,
                findings,
                ["primary", *tracker.completed],
                tracker.failed,
                message="; ".join(tracker.errors),
            )
        logger.info(f"[{self.name}] {len(findings)} findings")
        return findings

    @abstractmethod
    async def collect(
        self,
        window: TimeWindow,
        connection: Any,
        tracker: SectionTracker,
    ) -> list[Finding]:
        raise NotImplementedError


def get_safe(data: Any, *keys, default=None):
    """Safely navigate nested dict keys."""
    current = data
    for key in keys:
        if isinstance(current, dict):
            current = current.get(key)
        else:
            return default
    return default if current is None else current
