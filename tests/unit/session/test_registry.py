"""Unit tests for session/registry.py"""

import asyncio

import pytest

from mdpreview.config import Settings
from mdpreview.control.channel import Notification
from mdpreview.core.models import OutputFormat
from mdpreview.errors import SourceUnreadableError
from mdpreview.previewer import Previewer
from mdpreview.server.events import PatchKind
from mdpreview.server.hub import ViewerHub
from mdpreview.session.registry import Session, SessionRegistry, session_id_for


def _registry():
    return SessionRegistry(ViewerHub(), base_url="http://127.0.0.1:3008", watch=False)


def _drain(queue):
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


def test_open_session_compiles_first_version(md_file):
    async def _scenario():
        registry = _registry()
        session = await registry.open_session(str(md_file), "light")
        return registry, session

    registry, session = asyncio.run(_scenario())
    assert session.version == 1
    assert session.output(OutputFormat.html).blocks == ('<h1 id="title">Title</h1>', "<p>para</p>")
    assert registry.viewer_address(session.session_id) == f"http://127.0.0.1:3008/session/{session.session_id}"


def test_same_file_maps_to_one_session(md_file, monkeypatch):
    """Different spellings of one path resolve to the same canonical session."""
    monkeypatch.chdir(md_file.parent)

    async def _scenario():
        registry = _registry()
        a = await registry.open_session(str(md_file), "light")
        b = await registry.open_session("./doc.md", "light")
        await b.wait_idle()
        return registry, a, b

    registry, a, b = asyncio.run(_scenario())
    assert a is b
    assert len(registry.sessions()) == 1
    assert a.session_id == session_id_for(str(md_file.resolve()))


def test_unreadable_path_creates_no_session(tmp_path):
    async def _scenario():
        registry = _registry()
        with pytest.raises(SourceUnreadableError) as exc:
            await registry.open_session(str(tmp_path / "missing.md"), "light")
        return registry, exc.value

    registry, err = asyncio.run(_scenario())
    assert isinstance(err, OSError)
    assert registry.sessions() == []


def test_viewer_address_unknown_session():
    with pytest.raises(KeyError):
        _registry().viewer_address("nope")


def test_preview_then_preview_alt_shares_session(md_file):
    """previewAlt arriving 10ms after preview lands on the same session, with the alternate theme."""
    async def _scenario():
        previewer = Previewer(Settings(open_browser=False), watch=False)
        previewer.dispatcher.submit(Notification(method="preview", params=[str(md_file)]))
        await asyncio.sleep(0.01)
        previewer.dispatcher.submit(Notification(method="previewAlt", params=[str(md_file)]))
        await previewer.dispatcher.wait_idle()
        (session,) = previewer.registry.sessions()
        await session.wait_idle()
        return session

    session = asyncio.run(_scenario())
    assert session.theme == "dark"
    assert session.output(OutputFormat.html).theme == "dark"


def test_export_does_not_reset_preview_alt_theme(md_file, monkeypatch):
    """An export racing previewAlt on an unopened file keeps the alternate theme.

    The export's light-theme first compile is slowed so it finishes after the
    previewAlt session already exists.
    """
    initial_compile = Session.initial_compile

    async def slow_light_compile(self):
        if self.theme == "light":
            await asyncio.sleep(0.05)
        await initial_compile(self)

    monkeypatch.setattr(Session, "initial_compile", slow_light_compile)

    async def _scenario():
        previewer = Previewer(Settings(open_browser=False), watch=False)
        previewer.dispatcher.submit(Notification(method="previewAlt", params=[str(md_file)]))
        previewer.dispatcher.submit(Notification(method="export", params=[str(md_file), "source"]))
        await previewer.dispatcher.wait_idle()
        (session,) = previewer.registry.sessions()
        await session.wait_idle()
        for job_id in list(previewer.exports._jobs):
            await previewer.exports.wait(job_id)
        return session

    session = asyncio.run(_scenario())
    assert session.theme == "dark"
    assert session.output(OutputFormat.html).theme == "dark"
    assert md_file.with_suffix(".tex").exists()


def test_export_reuses_open_session_without_recompile(md_file):
    async def _scenario():
        registry = _registry()
        session = await registry.open_session(str(md_file), "dark")
        again = await registry.open_session(str(md_file), "light", adopt_theme=False)
        await again.wait_idle()
        return session, again

    session, again = asyncio.run(_scenario())
    assert again is session
    assert session.theme == "dark"
    assert session.version == 1


def test_recompile_publishes_block_patch(md_file):
    async def _scenario():
        registry = _registry()
        session = await registry.open_session(str(md_file), "light")
        conn = registry.hub.connect(session.session_id, OutputFormat.html, session.output(OutputFormat.html))
        md_file.write_text("# Title\n\nedited\n", encoding="utf-8")
        await session.recompile()
        return session, _drain(conn.queue)

    session, events = asyncio.run(_scenario())
    assert session.version == 2
    assert [e.patch_kind for e in events] == [PatchKind.full, PatchKind.blocks]
    assert events[1].document_version == 2
    assert events[1].payload["ops"] == [{"start": 1, "end": 2, "blocks": ["<p>edited</p>"]}]


def test_superseded_compiles_are_discarded(md_file):
    """Of several queued recompiles only the latest commits; versions advance by one."""
    async def _scenario():
        registry = _registry()
        session = await registry.open_session(str(md_file), "light")
        results = await asyncio.gather(*(session.recompile() for _ in range(3)))
        return session, results

    session, results = asyncio.run(_scenario())
    assert results[:2] == [None, None]
    assert results[2] is not None
    assert session.version == 2


def test_parse_error_keeps_last_good_output(md_file):
    """A broken edit publishes a banner and leaves the previous version in place."""
    async def _scenario():
        registry = _registry()
        session = await registry.open_session(str(md_file), "light")
        before = session.output(OutputFormat.html)
        conn = registry.hub.connect(session.session_id, OutputFormat.html, before)
        md_file.write_text("---\nkey: [unclosed\n---\n# Title\n", encoding="utf-8")
        result = await session.recompile()
        return session, before, result, _drain(conn.queue)

    session, before, result, events = asyncio.run(_scenario())
    assert result is None
    assert session.version == 1
    assert session.output(OutputFormat.html) is before
    assert "Invalid YAML frontmatter" in session.last_error
    banner = events[-1]
    assert banner.patch_kind == PatchKind.banner
    assert banner.document_version == 1


def test_file_removed_after_open_shows_banner(md_file):
    async def _scenario():
        registry = _registry()
        session = await registry.open_session(str(md_file), "light")
        md_file.unlink()
        await session.recompile()
        return session

    session = asyncio.run(_scenario())
    assert session.version == 1
    assert "cannot read" in session.last_error


def test_latex_output_rendered_on_demand(md_file):
    async def _scenario():
        registry = _registry()
        return await registry.open_session(str(md_file), "light")

    session = asyncio.run(_scenario())
    latex = session.output(OutputFormat.latex)
    assert latex.document_version == 1
    assert "\\section{Title}\\label{title}" in latex.text
