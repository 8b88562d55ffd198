from __future__ import annotations

import asyncio

from conftest import FakeProber
from linkpad.app.highlight import render
from linkpad.app.links import LinkState, LinkStatus, StatusTable
from linkpad.app.reconciler import NETWORK_ERROR, ProbeResult, Reconciler


class Buffer:
    def __init__(self, text: str = "") -> None:
        self.text = text

    def __call__(self) -> str:
        return self.text


def _reconciler(prober, buffer, **kwargs) -> Reconciler:
    kwargs.setdefault("debounce", 0.05)
    kwargs.setdefault("pacing", 0.0)
    return Reconciler(prober, buffer, **kwargs)


def test_reconcile_probes_unknown_urls_and_records_results():
    prober = FakeProber(
        {"https://bad.invalid": ProbeResult(LinkState.UNREACHABLE, error="Domain not found")}
    )
    buffer = Buffer("good https://good.com bad https://bad.invalid")

    async def scenario():
        rec = _reconciler(prober, buffer)
        tasks = rec.reconcile()
        assert len(tasks) == 2
        assert rec.table.state_of("https://good.com") == LinkState.CHECKING
        await rec.drain()
        return rec

    rec = asyncio.run(scenario())
    assert rec.table.state_of("https://good.com") == LinkState.REACHABLE
    bad = rec.table.get("https://bad.invalid")
    assert bad.state == LinkState.UNREACHABLE
    assert bad.error == "Domain not found"
    assert rec.table.get("https://good.com").span == (5, 21)


def test_reconcile_is_idempotent_for_known_urls():
    prober = FakeProber()
    buffer = Buffer("https://a.com https://a.com")

    async def scenario():
        rec = _reconciler(prober, buffer)
        rec.reconcile()
        await rec.drain()
        second = rec.reconcile()
        await rec.drain()
        return second

    second = asyncio.run(scenario())
    assert second == []
    assert prober.calls == ["https://a.com"]


def test_at_most_one_probe_in_flight_per_url():
    prober = FakeProber()
    buffer = Buffer("https://slow.com")

    async def scenario():
        prober.gate = asyncio.Event()
        rec = _reconciler(prober, buffer)
        first = rec.dispatch("https://slow.com")
        second = rec.dispatch("https://slow.com")
        assert first is not None
        assert second is None
        await asyncio.sleep(0)
        prober.gate.set()
        await rec.drain()
        return rec

    rec = asyncio.run(scenario())
    assert prober.calls == ["https://slow.com"]
    assert rec.table.state_of("https://slow.com") == LinkState.REACHABLE


def test_debounce_collapses_a_burst_of_edits():
    prober = FakeProber()
    buffer = Buffer()
    target = "see https://x.com"

    async def scenario():
        rec = _reconciler(prober, buffer, debounce=0.2)
        for i in range(1, len(target) + 1):
            buffer.text = target[:i]
            rec.text_changed()
            await asyncio.sleep(0.005)
        assert prober.calls == []
        assert rec.timer_pending
        await asyncio.sleep(0.35)
        await rec.drain()
        return rec

    rec = asyncio.run(scenario())
    # Only the text present when the timer fired is examined.
    assert prober.calls == ["https://x.com"]
    assert not rec.timer_pending


def test_timer_reads_latest_text_not_scheduled_text():
    prober = FakeProber()
    buffer = Buffer("https://first.com")

    async def scenario():
        rec = _reconciler(prober, buffer)
        rec.text_changed()
        buffer.text = "https://second.com"
        await asyncio.sleep(0.15)
        await rec.drain()

    asyncio.run(scenario())
    assert prober.calls == ["https://second.com"]


def test_close_cancels_pending_timer():
    prober = FakeProber()
    buffer = Buffer("https://a.com")

    async def scenario():
        rec = _reconciler(prober, buffer)
        rec.text_changed()
        rec.close()
        await asyncio.sleep(0.15)
        return rec

    rec = asyncio.run(scenario())
    assert prober.calls == []
    assert not rec.timer_pending


def test_prober_exception_becomes_network_error():
    prober = FakeProber({"https://boom.com": RuntimeError("socket exploded")})
    buffer = Buffer("https://boom.com")

    async def scenario():
        rec = _reconciler(prober, buffer)
        await rec.check_url("https://boom.com")
        return rec

    rec = asyncio.run(scenario())
    record = rec.table.get("https://boom.com")
    assert record.state == LinkState.UNREACHABLE
    assert record.error == NETWORK_ERROR


def test_unreachable_result_without_message_gets_default_error():
    prober = FakeProber({"https://quiet.com": ProbeResult(LinkState.UNREACHABLE)})
    buffer = Buffer("https://quiet.com")

    async def scenario():
        rec = _reconciler(prober, buffer)
        await rec.check_url("https://quiet.com")
        return rec

    rec = asyncio.run(scenario())
    assert rec.table.get("https://quiet.com").error == NETWORK_ERROR


def test_check_all_reprobes_sequentially_with_pacing():
    prober = FakeProber(delay=0.01)
    buffer = Buffer("https://a.com https://b.com https://a.com https://c.com")
    table = StatusTable(
        [
            LinkStatus("https://a.com", LinkState.REACHABLE),
            LinkStatus("https://b.com", LinkState.UNREACHABLE, "HTTP 500"),
        ]
    )
    flips = []

    def listener(record):
        if record is None:
            flips.append(rec.is_checking)

    rec = _reconciler(prober, buffer, table=table, pacing=0.02, listener=listener)
    started = asyncio.run(rec.check_all())

    assert started == 3
    assert prober.calls == ["https://a.com", "https://b.com", "https://c.com"]
    assert prober.max_active == 1
    assert flips == [True, False]
    assert all(record.state == LinkState.REACHABLE for record in table)


def test_check_all_while_running_is_a_no_op():
    prober = FakeProber(delay=0.05)
    buffer = Buffer("https://a.com https://b.com")

    async def scenario():
        rec = _reconciler(prober, buffer)
        first = asyncio.ensure_future(rec.check_all())
        await asyncio.sleep(0.01)
        assert rec.is_checking
        second = await rec.check_all()
        return await first, second

    first, second = asyncio.run(scenario())
    assert (first, second) == (2, 0)
    assert prober.calls == ["https://a.com", "https://b.com"]


def test_check_all_with_no_links_starts_nothing():
    async def scenario():
        rec = _reconciler(FakeProber(), Buffer("no links here"))
        return await rec.check_all(), rec.is_checking

    assert asyncio.run(scenario()) == (0, False)


def test_failing_listener_does_not_stop_probing():
    def listener(_record):
        raise RuntimeError("listener broke")

    prober = FakeProber()

    async def scenario():
        rec = _reconciler(prober, Buffer("https://a.com"), listener=listener)
        await rec.check_url("https://a.com")
        return rec

    rec = asyncio.run(scenario())
    assert rec.table.state_of("https://a.com") == LinkState.REACHABLE


def test_good_and_bad_link_scenario_renders_matching_regions():
    prober = FakeProber({"https://bad.example": ProbeResult(LinkState.UNREACHABLE, 404, "HTTP 404")})
    buffer = Buffer("see https://good.example and https://bad.example")

    async def scenario():
        rec = _reconciler(prober, buffer)
        rec.reconcile()
        await rec.drain()
        return rec

    rec = asyncio.run(scenario())
    assert len(rec.table) == 2
    assert rec.table.state_of("https://good.example") == LinkState.REACHABLE
    assert rec.table.get("https://bad.example").error == "HTTP 404"

    links = render(buffer.text, rec.table).links()
    assert [(link.url, link.css_class) for link in links] == [
        ("https://good.example", "link link-reachable"),
        ("https://bad.example", "link link-unreachable"),
    ]
