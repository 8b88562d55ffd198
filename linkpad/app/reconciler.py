"""Incremental link reconciliation.

Bridges text edits to reachability probes:

- every buffer mutation restarts one debounce timer; when it fires, URLs in the
  *latest* text that have no status record are probed,
- "check all" re-probes every distinct URL sequentially with a pacing delay,
- a URL already in ``checking`` is never dispatched twice.

Everything runs on the asyncio loop of the owning session; there is no locking
because nothing here runs in parallel.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from linkpad.app.links import LinkState, LinkStatus, StatusTable, extract_urls

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 2.0
DEFAULT_PACING_SECONDS = 0.3
NETWORK_ERROR = "Network error"


def _debug_enabled() -> bool:
    return os.getenv("LINKPAD_DEBUG_LINKS", "0") not in ("0", "false", "False", "")


@dataclass(frozen=True)
class ProbeResult:
    state: LinkState
    http_status: Optional[int] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "status": self.state.value,
            "httpStatus": self.http_status,
            "error": self.error,
        }


Prober = Callable[[str], Awaitable[ProbeResult]]
Listener = Callable[[Optional[LinkStatus]], None]


class Reconciler:
    """Owns the status table's lifecycle transitions and the debounce slot.

    Parameters
    ----------
    prober:
        Awaitable ``prober(url) -> ProbeResult``.
    text_source:
        Returns the current buffer; read when the timer fires, not when scheduled.
    listener:
        Called with the changed record after each table update, and with
        ``None`` when :attr:`is_checking` flips.
    """

    def __init__(
        self,
        prober: Prober,
        text_source: Callable[[], str],
        table: Optional[StatusTable] = None,
        *,
        debounce: float = DEFAULT_DEBOUNCE_SECONDS,
        pacing: float = DEFAULT_PACING_SECONDS,
        listener: Optional[Listener] = None,
    ) -> None:
        self._prober = prober
        self._text_source = text_source
        self.table = table if table is not None else StatusTable()
        self.debounce = debounce
        self.pacing = pacing
        self._listener = listener
        self._timer: Optional[asyncio.TimerHandle] = None
        self._in_flight: set[asyncio.Task] = set()
        self._checking_all = False

    @property
    def is_checking(self) -> bool:
        return self._checking_all

    @property
    def timer_pending(self) -> bool:
        return self._timer is not None

    def text_changed(self) -> None:
        """Restart the debounce timer; a burst of edits collapses into one pass."""
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.debounce, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self.reconcile()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def reconcile(self) -> list[asyncio.Task]:
        """Dispatch probes for URLs in the current text that have no record yet."""
        tasks: list[asyncio.Task] = []
        urls = extract_urls(self._text_source())
        if _debug_enabled():
            logger.debug(f"Reconcile pass found {len(urls)} URL(s)")
        for url in urls:
            if url in self.table:
                continue
            task = self.dispatch(url)
            if task is not None:
                tasks.append(task)
        return tasks

    def dispatch(self, url: str) -> Optional[asyncio.Task]:
        """Mark ``url`` as checking and start its probe.

        The guard and the ``checking`` upsert happen before the first await so
        near-simultaneous triggers cannot both start a probe.
        """
        if self.table.contains_in_flight(url):
            if _debug_enabled():
                logger.debug(f"Probe already in flight for {url}")
            return None
        text = self._text_source()
        start = text.find(url)
        span = (start, start + len(url)) if start >= 0 else None
        self._update(LinkStatus(url, LinkState.CHECKING, span=span))
        task = asyncio.get_running_loop().create_task(self._probe(url))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    async def check_url(self, url: str) -> None:
        task = self.dispatch(url)
        if task is not None:
            await task

    async def check_all(self) -> int:
        """Re-probe every distinct URL in the buffer, one at a time.

        Returns the number of probes started. A call made while another
        check-all is running returns 0 immediately.
        """
        if self._checking_all:
            return 0
        urls = list(dict.fromkeys(extract_urls(self._text_source())))
        if not urls:
            return 0
        self._checking_all = True
        self._notify(None)
        started = 0
        try:
            for index, url in enumerate(urls):
                if index:
                    await asyncio.sleep(self.pacing)
                task = self.dispatch(url)
                if task is None:
                    continue
                started += 1
                # Cancelling the pass stops further dispatches, not this probe.
                await asyncio.shield(task)
        finally:
            self._checking_all = False
            self._notify(None)
        return started

    async def drain(self) -> None:
        """Wait for every probe currently in flight."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    def close(self) -> None:
        # In-flight probes are left to finish; only the timer is owned here.
        self._cancel_timer()

    async def _probe(self, url: str) -> None:
        previous = self.table.get(url)
        span = previous.span if previous else None
        try:
            result = await self._prober(url)
        except Exception as exc:
            logger.warning(f"Probe for {url} failed: {exc}")
            record = LinkStatus(url, LinkState.UNREACHABLE, NETWORK_ERROR, span)
        else:
            if result.state == LinkState.REACHABLE:
                record = LinkStatus(url, LinkState.REACHABLE, None, span)
            else:
                record = LinkStatus(url, LinkState.UNREACHABLE, result.error or NETWORK_ERROR, span)
        if _debug_enabled():
            logger.debug(f"Probe result {url} -> {record.state.value} ({record.error})")
        self._update(record)

    def _update(self, record: LinkStatus) -> None:
        self.table.upsert(record)
        self._notify(record)

    def _notify(self, record: Optional[LinkStatus]) -> None:
        if self._listener is None:
            return
        try:
            self._listener(record)
        except Exception:
            logger.exception("Link status listener failed")
