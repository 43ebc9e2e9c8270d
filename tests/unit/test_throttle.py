"""Tests for edit coalescing and refresh rate limiting."""

import asyncio

from chainmark.core.throttle import ChangeThrottle
from chainmark.errors import StaleDocumentError
from chainmark.models.document import TextEdit
from tests.unit.fakes import wait_until


class Recorder:
    def __init__(self, stale_first: int = 0, failing: frozenset[str] = frozenset()) -> None:
        self.calls: list[tuple[str, list[TextEdit]]] = []
        self.stale_first = stale_first
        self.failing = failing

    def __call__(self, document_id: str, edits: list[TextEdit]) -> None:
        self.calls.append((document_id, list(edits)))
        if len(self.calls) <= self.stale_first:
            raise StaleDocumentError(document_id, 1, 2)
        if document_id in self.failing:
            msg = f"cannot read {document_id}"
            raise OSError(msg)


def test_burst_of_edits_is_processed_once() -> None:
    recorder = Recorder()

    async def scenario() -> None:
        throttle = ChangeThrottle(recorder, quiet_period=10)
        for n in range(5):
            throttle.notify_edit("doc", [TextEdit(n, n, "x")])
        assert recorder.calls == []
        await throttle.flush()

    asyncio.run(scenario())

    assert len(recorder.calls) == 1
    document_id, edits = recorder.calls[0]
    assert document_id == "doc"
    assert [e.start_line for e in edits] == [0, 1, 2, 3, 4]


def test_quiet_period_timer_runs_the_batch() -> None:
    recorder = Recorder()

    async def scenario() -> None:
        throttle = ChangeThrottle(recorder, quiet_period=0.01)
        throttle.notify_edit("doc", [TextEdit(0, 0, "x")])
        throttle.notify_edit("doc", [TextEdit(1, 1, "y")])
        await wait_until(lambda: recorder.calls)
        assert throttle.pending == {}

    asyncio.run(scenario())

    assert len(recorder.calls) == 1
    assert len(recorder.calls[0][1]) == 2


def test_documents_share_one_batch() -> None:
    recorder = Recorder()

    async def scenario() -> None:
        throttle = ChangeThrottle(recorder, quiet_period=10)
        throttle.notify_edit("a", [TextEdit(0, 0, "x")])
        throttle.notify_edit("b")
        await throttle.flush()

    asyncio.run(scenario())

    assert [doc for doc, _ in recorder.calls] == ["a", "b"]
    assert recorder.calls[1][1] == []


def test_stale_document_is_retried_with_full_pass() -> None:
    recorder = Recorder(stale_first=1)

    async def scenario() -> None:
        throttle = ChangeThrottle(recorder, quiet_period=10)
        throttle.notify_edit("doc", [TextEdit(0, 0, "x\n")])
        await throttle.flush()
        assert throttle.pending == {}

    asyncio.run(scenario())

    assert len(recorder.calls) == 2
    assert len(recorder.calls[0][1]) == 1
    assert recorder.calls[1] == ("doc", [])


def test_stale_document_retry_is_scheduled_by_the_timer() -> None:
    recorder = Recorder(stale_first=1)

    async def scenario() -> None:
        throttle = ChangeThrottle(recorder, quiet_period=0.01)
        throttle.notify_edit("doc", [TextEdit(0, 0, "x\n")])
        await wait_until(lambda: len(recorder.calls) == 2)

    asyncio.run(scenario())

    assert recorder.calls[1] == ("doc", [])


def test_failing_document_does_not_stop_the_batch() -> None:
    recorder = Recorder(failing=frozenset({"a"}))

    async def scenario() -> None:
        throttle = ChangeThrottle(recorder, quiet_period=10)
        throttle.notify_edit("a", [TextEdit(0, 0, "x")])
        throttle.notify_edit("b", [TextEdit(0, 0, "y")])
        await throttle.flush()
        assert throttle.pending == {}

    asyncio.run(scenario())

    assert [doc for doc, _ in recorder.calls] == ["a", "b"]


def test_without_event_loop_edits_run_immediately() -> None:
    recorder = Recorder()
    throttle = ChangeThrottle(recorder)

    throttle.notify_edit("doc", [TextEdit(0, 0, "x")])

    assert len(recorder.calls) == 1
    assert throttle.pending == {}


def test_without_event_loop_stale_document_is_skipped() -> None:
    recorder = Recorder(stale_first=5)
    throttle = ChangeThrottle(recorder)

    throttle.notify_edit("doc")

    assert len(recorder.calls) == 1
    assert throttle.pending == {}


def test_without_event_loop_failure_is_logged_not_raised() -> None:
    recorder = Recorder(failing=frozenset({"doc"}))
    throttle = ChangeThrottle(recorder)

    throttle.notify_edit("doc")

    assert len(recorder.calls) == 1
    assert throttle.pending == {}


def test_flush_runs_pending_batch_now() -> None:
    recorder = Recorder()

    async def scenario() -> None:
        throttle = ChangeThrottle(recorder, quiet_period=10)
        throttle.notify_edit("doc", [TextEdit(0, 0, "x")])
        await throttle.flush()
        assert len(recorder.calls) == 1
        await throttle.flush()

    asyncio.run(scenario())

    assert len(recorder.calls) == 1


def test_cancel_drops_pending_edits() -> None:
    recorder = Recorder()

    async def scenario() -> None:
        throttle = ChangeThrottle(recorder, quiet_period=10)
        throttle.notify_edit("doc", [TextEdit(0, 0, "x")])
        throttle.cancel()
        assert throttle.pending == {}
        await throttle.flush()

    asyncio.run(scenario())

    assert recorder.calls == []


def test_refreshes_are_rate_limited() -> None:
    refreshes: list[int] = []

    async def scenario() -> None:
        throttle = ChangeThrottle(
            Recorder(), lambda: refreshes.append(1), refresh_interval=0.05
        )
        for _ in range(3):
            throttle.request_refresh()
        assert len(refreshes) == 1
        await wait_until(lambda: len(refreshes) == 2)

    asyncio.run(scenario())

    assert len(refreshes) == 2


def test_refresh_interval_uses_injected_clock() -> None:
    now = [0.0]
    refreshes: list[int] = []

    async def scenario() -> None:
        throttle = ChangeThrottle(
            Recorder(), lambda: refreshes.append(1), refresh_interval=1.0, clock=lambda: now[0]
        )
        throttle.request_refresh()
        now[0] = 2.0
        throttle.request_refresh()

    asyncio.run(scenario())

    assert len(refreshes) == 2


def test_without_event_loop_every_refresh_is_emitted() -> None:
    refreshes: list[int] = []
    throttle = ChangeThrottle(Recorder(), lambda: refreshes.append(1))

    for _ in range(3):
        throttle.request_refresh()

    assert len(refreshes) == 3
