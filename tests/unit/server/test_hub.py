"""Unit tests for server/hub.py and server/events.py"""

import asyncio
import json

from mdpreview.core.models import OutputFormat, RenderOutput
from mdpreview.server.events import PatchKind, banner_event, blocks_event, full_event
from mdpreview.server.hub import ViewerHub


def _output(version, blocks=("<p>a</p>",), fmt=OutputFormat.html):
    return RenderOutput(version, fmt, "light", tuple(blocks))


def _patch(version):
    return blocks_event(_output(version), [{"start": 0, "end": 1, "blocks": [f"<p>{version}</p>"]}])


def _drain(queue):
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


def test_event_wire_format_is_camel_case():
    line = full_event(_output(3)).to_sse()
    assert line.startswith("data: ") and line.endswith("\n\n")
    body = json.loads(line[len("data: "):])
    assert body["documentVersion"] == 3
    assert body["patchKind"] == "full"
    assert body["payload"] == {"blocks": ["<p>a</p>"], "theme": "light"}


def test_new_viewer_starts_with_full_document():
    async def _scenario():
        hub = ViewerHub()
        conn = hub.connect("s1", OutputFormat.html, _output(4))
        return conn, _drain(conn.queue)

    conn, events = asyncio.run(_scenario())
    assert [e.patch_kind for e in events] == [PatchKind.full]
    assert conn.last_acked_version == 4


def test_patches_delivered_in_version_order():
    async def _scenario():
        hub = ViewerHub()
        conn = hub.connect("s1", OutputFormat.html, _output(1))
        for v in (2, 3, 4):
            hub.publish("s1", _patch(v), _output(v))
        return _drain(conn.queue)

    events = asyncio.run(_scenario())
    assert [e.document_version for e in events] == [1, 2, 3, 4]


def test_version_gap_forces_full_resync():
    """A viewer that would skip a version gets the full document instead."""
    async def _scenario():
        hub = ViewerHub()
        conn = hub.connect("s1", OutputFormat.html, _output(1))
        _drain(conn.queue)
        hub.publish("s1", _patch(3), _output(3, ("<p>3</p>",)))
        return hub, _drain(conn.queue)

    hub, events = asyncio.run(_scenario())
    assert len(events) == 1
    assert events[0].patch_kind == PatchKind.full
    assert events[0].document_version == 3
    assert hub.stats["resyncs"] == 2


def test_stale_event_is_dropped():
    async def _scenario():
        hub = ViewerHub()
        conn = hub.connect("s1", OutputFormat.html, _output(5))
        _drain(conn.queue)
        hub.publish("s1", full_event(_output(4)), _output(4))
        return _drain(conn.queue)

    assert asyncio.run(_scenario()) == []


def test_slow_viewer_is_resynced_not_blocking():
    """A full queue is replaced by one full event; other viewers are unaffected."""
    async def _scenario():
        hub = ViewerHub(queue_size=2)
        slow = hub.connect("s1", OutputFormat.html, _output(1))
        fast = hub.connect("s1", OutputFormat.html, _output(1))
        for v in range(2, 6):
            hub.publish("s1", _patch(v), _output(v, (f"<p>{v}</p>",)))
            _drain(fast.queue)
        return slow, _drain(slow.queue)

    slow, events = asyncio.run(_scenario())
    assert events[0].patch_kind == PatchKind.full
    assert [e.document_version for e in events] == list(range(events[0].document_version, 6))
    assert slow.last_acked_version == 5


def test_all_viewers_receive_identical_patches():
    async def _scenario():
        hub = ViewerHub()
        a = hub.connect("s1", OutputFormat.html, _output(1))
        b = hub.connect("s1", OutputFormat.html, _output(1))
        latex = hub.connect("s1", OutputFormat.latex, _output(1, fmt=OutputFormat.latex))
        hub.publish("s1", _patch(2), _output(2))
        return _drain(a.queue), _drain(b.queue), _drain(latex.queue)

    a, b, latex = asyncio.run(_scenario())
    assert [e.to_sse() for e in a] == [e.to_sse() for e in b]
    assert [e.document_version for e in latex] == [1]


def test_banner_does_not_advance_version():
    async def _scenario():
        hub = ViewerHub()
        conn = hub.connect("s1", OutputFormat.html, _output(2))
        hub.publish("s1", banner_event(2, "parse failed"), _output(2))
        hub.publish("s1", _patch(3), _output(3))
        return conn, _drain(conn.queue)

    conn, events = asyncio.run(_scenario())
    assert [e.patch_kind for e in events] == [PatchKind.full, PatchKind.banner, PatchKind.blocks]
    assert conn.last_acked_version == 3


def test_stream_yields_sse_and_disconnects():
    async def _scenario():
        hub = ViewerHub()
        conn = hub.connect("s1", OutputFormat.html, _output(1))
        stream = hub.stream(conn, keepalive=0.01)
        first = await stream.__anext__()
        keepalive = await stream.__anext__()
        await stream.aclose()
        return hub, first, keepalive

    hub, first, keepalive = asyncio.run(_scenario())
    assert first.startswith("data: ")
    assert keepalive == ": keepalive\n\n"
    assert hub.viewers("s1") == []
