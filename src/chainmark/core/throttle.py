"""Debounced re-anchoring and rate-limited refresh signals."""

import asyncio
import time
from collections.abc import Callable, Sequence

from loguru import logger

from chainmark.config import EDIT_QUIET_PERIOD, REFRESH_INTERVAL
from chainmark.errors import StaleDocumentError
from chainmark.models.document import TextEdit

EditProcessor = Callable[[str, list[TextEdit]], object]


class ChangeThrottle:
    """Coalesces edit notifications and rate-limits refreshes.

    Edits are collected per document. A single timer, restarted by every
    new edit, fires after the quiet period and hands each pending document
    to ``process`` in one pass. A document whose version moved on while it
    was processed is queued again with no edits, forcing a full pass.

    Without a running event loop (command-line use) both edits and
    refreshes are handled immediately.

    Attributes:
        quiet_period: Seconds without edits before a batch runs.
        refresh_interval: Minimum seconds between two refresh signals.
    """

    def __init__(
        self,
        process: EditProcessor,
        on_refresh: Callable[[], None] | None = None,
        *,
        quiet_period: float = EDIT_QUIET_PERIOD,
        refresh_interval: float = REFRESH_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.quiet_period = quiet_period
        self.refresh_interval = refresh_interval
        self._process = process
        self._on_refresh = on_refresh
        self._clock = clock
        self._pending: dict[str, list[TextEdit]] = {}
        self._timer: asyncio.Task[None] | None = None
        self._refresh_handle: asyncio.TimerHandle | None = None
        self._last_refresh: float | None = None

    @property
    def pending(self) -> dict[str, list[TextEdit]]:
        return {doc: list(edits) for doc, edits in self._pending.items()}

    def notify_edit(self, document_id: str, edits: Sequence[TextEdit] = ()) -> None:
        """Record edits to a document and (re)start the quiet-period timer."""
        self._pending.setdefault(document_id, []).extend(edits)
        self._schedule()

    def _schedule(self) -> None:
        self._cancel_timer()
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self._run_batch()
            return
        self._timer = asyncio.create_task(self._fire())

    async def _fire(self) -> None:
        try:
            await asyncio.sleep(self.quiet_period)
        except asyncio.CancelledError:
            return  # superseded by a newer edit
        self._timer = None
        self._run_batch()

    def _run_batch(self) -> None:
        batch, self._pending = self._pending, {}
        retry: list[str] = []
        for document_id, edits in batch.items():
            try:
                self._process(document_id, edits)
            except StaleDocumentError as exc:
                logger.debug(f"{exc}; queued for another pass")
                retry.append(document_id)
            except Exception:
                logger.exception(f"Re-anchoring {document_id!r} failed; bookmarks left unchanged")
        if retry:
            self._requeue(retry)

    def _requeue(self, document_ids: list[str]) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"Skipped re-anchoring {', '.join(document_ids)}: document changed")
            return
        for document_id in document_ids:
            # Recorded edits no longer describe the text: force a full pass.
            self._pending[document_id] = []
        self._schedule()

    async def flush(self) -> None:
        """Process the pending batch now instead of waiting for the timer."""
        self._cancel_timer()
        if self._pending:
            self._run_batch()
        # A stale document may have been queued again.
        if self._timer is not None:
            self._cancel_timer()
            self._run_batch()

    def cancel(self) -> None:
        """Drop pending edits and any scheduled refresh."""
        self._cancel_timer()
        self._pending.clear()
        if self._refresh_handle is not None:
            self._refresh_handle.cancel()
            self._refresh_handle = None

    def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None and not timer.done():
            timer.cancel()

    # --- Refresh ---

    def request_refresh(self) -> None:
        """Emit a refresh, at most once per interval.

        Requests arriving too early collapse into a single trailing refresh.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._emit_refresh()
            return
        if self._refresh_handle is not None:
            return
        now = self._clock()
        if self._last_refresh is None or now - self._last_refresh >= self.refresh_interval:
            self._emit_refresh()
            return
        delay = self.refresh_interval - (now - self._last_refresh)
        self._refresh_handle = loop.call_later(delay, self._trailing_refresh)

    def _trailing_refresh(self) -> None:
        self._refresh_handle = None
        self._emit_refresh()

    def _emit_refresh(self) -> None:
        self._last_refresh = self._clock()
        if self._on_refresh is not None:
            self._on_refresh()
