from __future__ import annotations

import asyncio

from conftest import FakeProber
from linkpad.app.links import LinkState
from linkpad.app.reconciler import ProbeResult
from linkpad.app.session import EditorSession


def _session(prober, store, identity=None, **kwargs):
    outbox = []
    kwargs.setdefault("debounce", 0.05)
    kwargs.setdefault("pacing", 0.0)
    session = EditorSession(prober, store, identity, listener=outbox.append, **kwargs)
    return session, outbox


def _renders(outbox):
    return [payload for payload in outbox if payload["type"] == "render"]


def test_edit_renders_immediately_then_after_probe(prober, store):
    async def scenario():
        session, outbox = _session(prober, store)
        session.edit("see https://a.com", seq=7, selection=(17, 17))
        first = _renders(outbox)[0]
        await asyncio.sleep(0.1)
        await session.reconciler.drain()
        session.close()
        return first, _renders(outbox)

    first, renders = asyncio.run(scenario())
    assert first["seq"] == 7
    assert first["replace"] is False
    assert first["links"] == [{"url": "https://a.com", "status": "unchecked"}]
    assert first["selection"]["end"] == {"node": 1, "offset": 13, "inside": True}
    assert [r["links"][0]["status"] for r in renders] == ["unchecked", "checking", "reachable"]
    assert all(r["seq"] == 7 for r in renders)


def test_scenario_good_and_bad_links(store):
    prober = FakeProber(
        {"https://bad.invalid": ProbeResult(LinkState.UNREACHABLE, error="Domain not found")}
    )

    async def scenario():
        session, outbox = _session(prober, store)
        session.edit("Good: https://good.com\nBad: https://bad.invalid")
        await asyncio.sleep(0.1)
        await session.reconciler.drain()
        return _renders(outbox)[-1]

    last = asyncio.run(scenario())
    statuses = {link["url"]: link for link in last["links"]}
    assert statuses["https://good.com"]["status"] == "reachable"
    assert statuses["https://bad.invalid"]["status"] == "unreachable"
    assert statuses["https://bad.invalid"]["error"] == "Domain not found"
    assert "link-unreachable" in last["html"]
    assert "<br>" in last["html"]


def test_check_all_reports_checking_state(prober, store):
    async def scenario():
        session, outbox = _session(prober, store)
        session.edit("https://a.com https://b.com")
        session.reconciler.close()
        started = await session.check_all()
        return started, [p["isChecking"] for p in outbox if p["type"] == "state"]

    started, flags = asyncio.run(scenario())
    assert started == 2
    assert flags == [True, False]
    assert prober.calls == ["https://a.com", "https://b.com"]


def test_save_without_sign_in_sets_banner(prober, store):
    async def scenario():
        session, outbox = _session(prober, store)
        session.edit("text")
        await session.save()
        return session.state_payload()

    state = asyncio.run(scenario())
    assert state["authenticated"] is False
    assert state["message"] == {"type": "error", "text": "Please sign in to save your note"}
    assert store.calls == []


def test_load_replaces_buffer_and_restarts_debounce(prober, store, identity):
    async def scenario():
        await store.create(identity, "saved https://saved.com")
        store.calls.clear()
        session, outbox = _session(prober, store, identity)
        session.edit("draft", seq=3)
        result = await session.load()
        assert session.reconciler.timer_pending
        await asyncio.sleep(0.1)
        await session.reconciler.drain()
        return session, result, outbox

    session, result, outbox = asyncio.run(scenario())
    assert result.ok
    assert session.content == "saved https://saved.com"
    assert session.state.has_loaded_note
    replaced = [r for r in _renders(outbox) if r["replace"]]
    assert len(replaced) == 1
    assert replaced[0]["seq"] == 4
    assert prober.calls == ["https://saved.com"]


def test_load_with_no_document_keeps_buffer(prober, store, identity):
    async def scenario():
        session, outbox = _session(prober, store, identity)
        session.edit("keep me")
        await session.load()
        session.close()
        return session, outbox

    session, outbox = asyncio.run(scenario())
    assert session.content == "keep me"
    assert not [r for r in _renders(outbox) if r["replace"]]
    assert session.state_payload()["message"]["text"] == "No saved note found. Save your note first."


def test_state_payload_reports_links_and_owner(prober, store, identity):
    async def scenario():
        session, _outbox = _session(prober, store, identity)
        session.edit("nothing here")
        without = session.state_payload()["hasLinks"]
        session.edit("https://a.com")
        payload = session.state_payload()
        session.close()
        return without, payload

    without, payload = asyncio.run(scenario())
    assert without is False
    assert payload["hasLinks"] is True
    assert payload["owner"] == "octocat"
    assert payload["isSaving"] is False


def test_spawned_failure_is_contained(prober, store):
    async def boom():
        raise RuntimeError("action failed")

    async def scenario():
        session, _outbox = _session(prober, store)
        task = session.spawn(boom())
        await asyncio.sleep(0.01)
        return task.done(), len(session._tasks)

    assert asyncio.run(scenario()) == (True, 0)


def test_aclose_stops_timer_and_waits_for_probes(store):
    prober = FakeProber(delay=0.02)

    async def scenario():
        session, _outbox = _session(prober, store)
        session.edit("https://a.com")
        session.reconciler.reconcile()
        session.edit("https://a.com https://b.com")
        await session.aclose()
        await asyncio.sleep(0.1)
        return session

    session = asyncio.run(scenario())
    assert not session.reconciler.timer_pending
    assert prober.calls == ["https://a.com"]
    assert session.table.state_of("https://a.com") == LinkState.REACHABLE


def test_close_during_check_all_starts_no_new_probes(store):
    prober = FakeProber(delay=0.01)
    urls = [f"https://site{i}.com" for i in range(10)]

    async def scenario():
        session, _outbox = _session(prober, store, pacing=0.02)
        session.edit(" ".join(urls))
        session.reconciler.close()
        task = session.spawn(session.check_all())
        await asyncio.sleep(0.05)
        session.close()
        at_close = len(prober.calls)
        await asyncio.sleep(0.3)
        return session, task, at_close

    session, task, at_close = asyncio.run(scenario())
    assert 0 < at_close < len(urls)
    assert len(prober.calls) == at_close
    assert task.cancelled()
    assert not session.reconciler.is_checking
    # The probe running at close time still resolved.
    assert session.table.state_of(prober.calls[-1]) == LinkState.REACHABLE
