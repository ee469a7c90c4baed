"""Unit tests for export/pipeline.py"""

import asyncio
import re
from pathlib import Path

import httpx
import pytest

from mdpreview.config import Settings
from mdpreview.errors import ExportFailure, ExportToolchainError
from mdpreview.export import pipeline
from mdpreview.export.pipeline import ExportJob, ExportMode, JobState, Toolchain, export_document, run_tool
from mdpreview.previewer import Previewer


class _FakeProcess:
    def __init__(self, returncode=0, stdout=b"", stderr=b"", hang=False):
        self.returncode = returncode
        self._stdout = stdout
        self._stderr = stderr
        self._hang = hang
        self.killed = False

    async def communicate(self):
        if self._hang and not self.killed:
            await asyncio.sleep(3600)
        return self._stdout, self._stderr

    def kill(self):
        self.killed = True
        self.returncode = -9


def test_export_mode_aliases():
    assert ExportMode("sourceOnly") is ExportMode.source
    assert ExportMode("pdf") is ExportMode.final


def test_run_tool_timeout_kills_process(monkeypatch):
    proc = _FakeProcess(hang=True)

    async def fake_exec(*args, **kwargs):
        return proc

    monkeypatch.setattr(pipeline.asyncio, "create_subprocess_exec", fake_exec)
    with pytest.raises(ExportToolchainError) as exc:
        asyncio.run(run_tool("xelatex", "output.tex", timeout=0.05))
    assert exc.value.reason == ExportFailure.timeout
    assert proc.killed


def test_run_tool_non_zero_exit(monkeypatch):
    async def fake_exec(*args, **kwargs):
        return _FakeProcess(returncode=1, stderr=b"! Undefined control sequence.")

    monkeypatch.setattr(pipeline.asyncio, "create_subprocess_exec", fake_exec)
    with pytest.raises(ExportToolchainError) as exc:
        asyncio.run(run_tool("xelatex", "output.tex"))
    assert exc.value.reason == ExportFailure.non_zero_exit
    assert "Undefined control sequence" in exc.value.detail


def test_run_tool_missing_binary():
    with pytest.raises(ExportToolchainError) as exc:
        asyncio.run(run_tool("mdpreview-no-such-tool"))
    assert exc.value.reason == ExportFailure.missing_toolchain


def test_source_mode_writes_tex_next_to_source(md_file):
    written = asyncio.run(export_document(md_file, ExportMode.source))
    tex = md_file.with_suffix(".tex")
    assert written == [tex]
    text = tex.read_text(encoding="utf-8")
    assert "\\section{Title}\\label{title}" in text
    assert text.rstrip().endswith("\\end{document}")


def test_final_mode_runs_engine_in_workdir(md_file, monkeypatch):
    """The engine runs inside a scratch directory; its PDF is copied next to the source."""
    calls = []

    async def fake_exec(*args, cwd=None, **kwargs):
        calls.append((args, cwd))
        (Path(cwd) / "output.pdf").write_bytes(b"%PDF-1.5")
        return _FakeProcess()

    monkeypatch.setattr(pipeline.shutil, "which", lambda tool: f"/usr/bin/{tool}")
    monkeypatch.setattr(pipeline.asyncio, "create_subprocess_exec", fake_exec)
    written = asyncio.run(export_document(md_file, ExportMode.final, toolchain=Toolchain("xelatex")))
    assert written == [md_file.with_suffix(".tex"), md_file.with_suffix(".pdf")]
    assert md_file.with_suffix(".pdf").read_bytes() == b"%PDF-1.5"
    (args, cwd), = calls
    assert args[0] == "xelatex"
    assert args[-1] == "output.tex"
    assert Path(cwd) != md_file.parent


def _fake_toolchain(monkeypatch, tools=None):
    """Fake rsvg-convert and xelatex: each writes the file it would produce."""
    async def fake_exec(*args, cwd=None, **kwargs):
        if tools is not None:
            tools.append(args[0])
        if args[0] == "rsvg-convert":
            Path(args[args.index("-o") + 1]).write_bytes(b"%PDF-vector")
        else:
            (Path(cwd) / "output.pdf").write_bytes(b"%PDF")
        return _FakeProcess()

    monkeypatch.setattr(pipeline.shutil, "which", lambda tool: f"/usr/bin/{tool}")
    monkeypatch.setattr(pipeline.asyncio, "create_subprocess_exec", fake_exec)


def _graphics_paths(tex: str) -> list[str]:
    return re.findall(r"\\includegraphics\[[^\]]*\]\{\\detokenize\{([^}]*)\}\}", tex)


def test_final_mode_converts_vector_images(tmp_path, monkeypatch):
    src = tmp_path / "fig.md"
    src.write_text("![diagram](diagram.svg)\n", encoding="utf-8")
    (tmp_path / "diagram.svg").write_text("<svg/>", encoding="utf-8")
    tools = []
    _fake_toolchain(monkeypatch, tools)

    asyncio.run(export_document(src, ExportMode.final))
    assert tools == ["rsvg-convert", "xelatex"]
    (path,) = _graphics_paths(src.with_suffix(".tex").read_text(encoding="utf-8"))
    assert path.startswith("fig-assets/img-") and path.endswith(".pdf")


def test_written_tex_references_existing_images(tmp_path, monkeypatch):
    """Every image the exported .tex includes is still on disk after the export returns."""
    src = tmp_path / "report.md"
    src.write_text("![a](diagram.svg)\n\n![b](photo.png)\n", encoding="utf-8")
    (tmp_path / "diagram.svg").write_text("<svg/>", encoding="utf-8")
    (tmp_path / "photo.png").write_bytes(b"\x89PNG")
    _fake_toolchain(monkeypatch)

    asyncio.run(export_document(src, ExportMode.final))
    paths = _graphics_paths(src.with_suffix(".tex").read_text(encoding="utf-8"))
    assert len(paths) == 2
    for path in paths:
        assert (tmp_path / path).is_file()


def test_source_mode_stages_images_under_safe_names(tmp_path):
    """Reserved LaTeX characters in image file names never reach the .tex."""
    src = tmp_path / "notes.md"
    src.write_text("![x](50%_off#1.png)\n", encoding="utf-8")
    (tmp_path / "50%_off#1.png").write_bytes(b"\x89PNG")

    asyncio.run(export_document(src, ExportMode.source))
    tex = src.with_suffix(".tex").read_text(encoding="utf-8")
    (path,) = _graphics_paths(tex)
    assert "%" not in path and "#" not in path
    assert (tmp_path / path).read_bytes() == b"\x89PNG"


def test_final_mode_downloads_remote_images(tmp_path, monkeypatch):
    src = tmp_path / "web.md"
    src.write_text("![logo](https://example.com/logo)\n", encoding="utf-8")
    _fake_toolchain(monkeypatch)
    requested = []

    def handler(request):
        requested.append(str(request.url))
        return httpx.Response(200, content=b"\x89PNG", headers={"content-type": "image/png"})

    asyncio.run(export_document(src, ExportMode.final, transport=httpx.MockTransport(handler)))
    tex = src.with_suffix(".tex").read_text(encoding="utf-8")
    assert requested == ["https://example.com/logo"]
    assert "\\url" not in tex
    (path,) = _graphics_paths(tex)
    assert path.endswith(".png")
    assert (tmp_path / path).read_bytes() == b"\x89PNG"


def test_failed_download_is_a_job_failure(tmp_path, monkeypatch):
    src = tmp_path / "web.md"
    src.write_text("![logo](https://example.com/logo.png)\n", encoding="utf-8")
    _fake_toolchain(monkeypatch)
    transport = httpx.MockTransport(lambda request: httpx.Response(404))

    with pytest.raises(ExportToolchainError) as exc:
        asyncio.run(export_document(src, ExportMode.final, transport=transport))
    assert exc.value.reason == ExportFailure.download_failed
    assert "https://example.com/logo.png" in exc.value.detail
    assert not src.with_suffix(".pdf").exists()


def test_source_mode_leaves_remote_images_as_urls(tmp_path):
    src = tmp_path / "web.md"
    src.write_text("![logo](https://example.com/logo.png)\n", encoding="utf-8")
    asyncio.run(export_document(src, ExportMode.source))
    assert "\\url{https://example.com/logo.png}" in src.with_suffix(".tex").read_text(encoding="utf-8")


def test_unreadable_source_is_a_job_failure(tmp_path):
    with pytest.raises(ExportToolchainError) as exc:
        asyncio.run(export_document(tmp_path / "missing.md", ExportMode.source))
    assert exc.value.reason == ExportFailure.source_unreadable


def test_missing_toolchain_fails_job_but_not_preview(md_file):
    """A missing typesetting compiler fails the job; the live session keeps working."""
    async def _scenario():
        settings = Settings(open_browser=False, latex_engine="mdpreview-no-such-engine")
        previewer = Previewer(settings, watch=False)
        session = await previewer.open(str(md_file), "light")
        job_id = previewer.exports.submit_export(session.session_id, ExportMode.final)
        job = await previewer.exports.wait(job_id)
        md_file.write_text("# Title\n\nstill live\n", encoding="utf-8")
        await session.recompile()
        return previewer, session, job

    previewer, session, job = asyncio.run(_scenario())
    assert job.state == JobState.failed
    assert job.reason == ExportFailure.missing_toolchain
    assert session.version == 2
    assert previewer.registry.get(session.session_id) is session


def test_submit_export_unknown_session():
    async def _scenario():
        previewer = Previewer(Settings(open_browser=False), watch=False)
        previewer.exports.submit_export("missing", ExportMode.source)

    with pytest.raises(KeyError):
        asyncio.run(_scenario())


def test_status_releases_terminal_job(md_file):
    async def _scenario():
        previewer = Previewer(Settings(open_browser=False), watch=False)
        session = await previewer.open(str(md_file), "light")
        job_id = previewer.exports.submit_export(session.session_id, "source")
        await previewer.exports.wait(job_id)
        return previewer.exports, job_id

    exports, job_id = asyncio.run(_scenario())
    first = exports.status(job_id)
    assert first.state == JobState.succeeded
    assert first.as_dict()["outputs"] == [str(md_file.resolve().with_suffix(".tex"))]
    assert exports.status(job_id) is None


def test_job_never_leaves_terminal_state():
    job = ExportJob("job_1", "s", "/tmp/a.md", ExportMode.source)
    job.advance(JobState.compiling)
    job.advance(JobState.failed, ExportFailure.timeout)
    with pytest.raises(RuntimeError):
        job.advance(JobState.succeeded)


def test_final_export_keeps_artifact_until_fetched(md_file, monkeypatch):
    _fake_toolchain(monkeypatch)

    async def _scenario():
        previewer = Previewer(Settings(open_browser=False), watch=False)
        session = await previewer.open(str(md_file), "light")
        job_id = previewer.exports.submit_export(session.session_id, ExportMode.final)
        await previewer.exports.wait(job_id)
        return previewer.exports, job_id

    exports, job_id = asyncio.run(_scenario())
    assert exports.status(job_id).state == JobState.succeeded
    assert exports.artifact(job_id) == md_file.resolve().with_suffix(".pdf")
    assert exports.artifact(job_id) is None


def test_newer_final_export_replaces_older_artifact(md_file, monkeypatch):
    _fake_toolchain(monkeypatch)

    async def _scenario():
        previewer = Previewer(Settings(open_browser=False), watch=False)
        session = await previewer.open(str(md_file), "light")
        first = previewer.exports.submit_export(session.session_id, ExportMode.final)
        await previewer.exports.wait(first)
        second = previewer.exports.submit_export(session.session_id, ExportMode.final)
        await previewer.exports.wait(second)
        return previewer.exports, first, second

    exports, first, second = asyncio.run(_scenario())
    assert exports.artifact(first) is None
    assert exports.artifact(second) is not None
