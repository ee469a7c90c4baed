"""Export pipeline: LaTeX export-source and, optionally, a typeset PDF"""

import asyncio
import itertools
import logging
import mimetypes
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from urllib.parse import urlparse

import httpx

from mdpreview.core.compiler import build_document, collect_images, read_source, render_document
from mdpreview.core.models import Document, OutputFormat
from mdpreview.core.utils.hashing import sha256
from mdpreview.core.utils.slug import slugify
from mdpreview.errors import (
    CompileError, ExportFailure, ExportToolchainError, ParseError, SourceUnreadableError,
)


LOGGER = logging.getLogger(__name__)

DEFAULT_TOOL_TIMEOUT_SECONDS = 120.0
REMOTE_SCHEMES = ("http://", "https://")


class ExportMode(str, Enum):
    source = "source"       # export-source text only
    final  = "final"        # export-source plus the typeset binary document

    @classmethod
    def _missing_(cls, value):
        aliases = {"sourceonly": cls.source, "tex": cls.source, "finalartifact": cls.final, "pdf": cls.final}
        return aliases.get(str(value).lower())


class JobState(str, Enum):
    pending   = "Pending"
    compiling = "Compiling"
    succeeded = "Succeeded"
    failed    = "Failed"


@dataclass
class ExportJob:
    job_id: str
    session_id: str
    source_path: str
    mode: ExportMode
    state: JobState = JobState.pending
    reason: ExportFailure | None = None
    detail: str = ""
    outputs: list[str] = field(default_factory=list)

    @property
    def terminal(self) -> bool:
        return self.state in (JobState.succeeded, JobState.failed)

    def advance(self, state: JobState, reason: ExportFailure | None = None, detail: str = "") -> None:
        if self.terminal:
            raise RuntimeError(f"job {self.job_id} already finished as {self.state.value}")
        self.state, self.reason, self.detail = state, reason, detail

    def as_dict(self) -> dict:
        return {
            "jobId": self.job_id,
            "sessionId": self.session_id,
            "mode": self.mode.value,
            "state": self.state.value,
            "reason": self.reason.value if self.reason else None,
            "detail": self.detail,
            "outputs": self.outputs,
        }


@dataclass(frozen=True)
class Toolchain:
    latex_engine: str = "xelatex"
    svg_converter: str = "rsvg-convert"
    timeout: float = DEFAULT_TOOL_TIMEOUT_SECONDS


async def run_tool(*args: str, cwd: str | Path | None = None, timeout: float = DEFAULT_TOOL_TIMEOUT_SECONDS) -> str:
    """Run one external tool; return its stdout or raise ExportToolchainError. Never retries."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd) if cwd else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise ExportToolchainError(ExportFailure.missing_toolchain, args[0]) from e

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.communicate()
        raise ExportToolchainError(ExportFailure.timeout, f"{args[0]} timed out after {timeout:g}s")

    stdout_text = stdout_bytes.decode("utf-8", errors="replace")
    if proc.returncode != 0:
        stderr_text = stderr_bytes.decode("utf-8", errors="replace").strip()
        tail = (stderr_text or stdout_text.strip())[-500:]
        raise ExportToolchainError(ExportFailure.non_zero_exit, f"{args[0]} exited {proc.returncode}: {tail}")
    return stdout_text


def _require(tool: str) -> None:
    if shutil.which(tool) is None:
        raise ExportToolchainError(ExportFailure.missing_toolchain, tool)


def assets_dir_for(source: Path) -> Path:
    """Directory beside the source holding every image the exported LaTeX embeds."""
    return source.parent / f"{slugify(source.stem) or 'document'}-assets"


async def fetch_image(client: httpx.AsyncClient, url: str, dest_dir: Path) -> Path:
    """Download a remote image into dest_dir under a name derived from its URL."""
    try:
        response = await client.get(url)
        response.raise_for_status()
    except httpx.HTTPError as e:
        raise ExportToolchainError(ExportFailure.download_failed, f"{url}: {e}") from e
    suffix = Path(urlparse(url).path).suffix.lower()
    if not suffix:
        content_type = response.headers.get("content-type", "").split(";")[0].strip()
        suffix = mimetypes.guess_extension(content_type) or ""
    dest = dest_dir / f"img-{sha256(url)[:12]}{suffix}"
    dest.write_bytes(response.content)
    return dest


async def stage_images(
    document: Document,
    mode: ExportMode,
    toolchain: Toolchain,
    assets_dir: Path,
    transport: httpx.AsyncBaseTransport | None = None,
    ) -> dict[str, str]:
    """Collect the document's images into assets_dir under LaTeX-safe names.

    Local images are copied in both modes. In final mode remote images are
    downloaded and vector images converted to PDF. Returns the asset map for the
    LaTeX renderer: image key (resolved path, or URL) -> path relative to the
    source directory.
    """
    final = mode == ExportMode.final
    images = collect_images(document.tree)
    local = sorted({img.resolved for img in images if img.resolved and os.path.isfile(img.resolved)})
    remote = sorted({img.src for img in images if img.resolved is None and img.src.startswith(REMOTE_SCHEMES)})
    if not final:
        remote = []
    if not local and not remote:
        return {}

    assets_dir.mkdir(exist_ok=True)
    staged: dict[str, Path] = {}
    for path in local:
        dest = assets_dir / f"img-{sha256(path)[:12]}{Path(path).suffix.lower()}"
        await asyncio.to_thread(shutil.copyfile, path, dest)
        staged[path] = dest
    if remote:
        async with httpx.AsyncClient(timeout=toolchain.timeout, follow_redirects=True, transport=transport) as client:
            for url in remote:
                staged[url] = await fetch_image(client, url, assets_dir)

    if final and any(p.suffix == ".svg" for p in staged.values()):
        _require(toolchain.svg_converter)
        for key, path in list(staged.items()):
            if path.suffix == ".svg":
                pdf = path.with_suffix(".pdf")
                await run_tool(toolchain.svg_converter, str(path), "-o", str(pdf), "-f", "pdf", timeout=toolchain.timeout)
                staged[key] = pdf

    return {key: f"{assets_dir.name}/{path.name}" for key, path in staged.items()}


async def export_document(
    source_path: str | Path,
    mode: ExportMode,
    theme: str = "light",
    toolchain: Toolchain = Toolchain(),
    transport: httpx.AsyncBaseTransport | None = None,
    ) -> list[Path]:
    """Write <stem>.tex (and <stem>.pdf for final mode) next to the source. Returns written paths.

    Images land in <stem>-assets/ beside the source and the .tex refers to them
    by relative path, so it compiles from the source directory.
    """
    source = Path(source_path)
    try:
        text = await asyncio.to_thread(read_source, source)
    except SourceUnreadableError as e:
        raise ExportToolchainError(ExportFailure.source_unreadable, str(e)) from e
    try:
        document = await asyncio.to_thread(build_document, text, theme, str(source))
    except (ParseError, CompileError) as e:
        raise ExportToolchainError(ExportFailure.compile_error, str(e)) from e

    if mode == ExportMode.final:
        _require(toolchain.latex_engine)
    assets_dir = assets_dir_for(source)
    asset_map = await stage_images(document, mode, toolchain, assets_dir, transport)
    latex = render_document(document, OutputFormat.latex, asset_map=asset_map).text
    tex_path = source.with_suffix(".tex")
    tex_path.write_text(latex, encoding="utf-8")
    if mode == ExportMode.source:
        return [tex_path]

    with tempfile.TemporaryDirectory(prefix="mdpreview-") as workdir:
        if asset_map:
            await asyncio.to_thread(shutil.copytree, assets_dir, Path(workdir) / assets_dir.name)
        (Path(workdir) / "output.tex").write_text(latex, encoding="utf-8")
        await run_tool(
            toolchain.latex_engine, "-interaction=nonstopmode", "-halt-on-error", "output.tex",
            cwd=workdir, timeout=toolchain.timeout,
        )
        built = Path(workdir) / "output.pdf"
        if not built.exists():
            raise ExportToolchainError(ExportFailure.non_zero_exit, f"{toolchain.latex_engine} produced no PDF")
        pdf_path = source.with_suffix(".pdf")
        shutil.copyfile(built, pdf_path)

    LOGGER.info("exported %s -> %s", source, pdf_path)
    return [tex_path, pdf_path]


class ExportPipeline:
    """Runs export jobs in the background, independent of live preview sessions.

    Jobs are kept until their terminal state has been read once with status().
    The PDF of a succeeded final export stays available through artifact() until
    fetched, or until a newer final export of the same session succeeds.
    """

    def __init__(self, registry, toolchain: Toolchain = Toolchain()):
        self.registry = registry
        self.toolchain = toolchain
        self._jobs: dict[str, ExportJob] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._artifacts: dict[str, tuple[str, Path]] = {}
        self._ids = itertools.count(1)

    def submit_export(self, session_id: str, mode: ExportMode | str) -> str:
        """Queue an export of the session's source file and return its job id."""
        session = self.registry.get(session_id)
        if session is None:
            raise KeyError(session_id)
        job = ExportJob(
            job_id=f"job_{next(self._ids)}",
            session_id=session_id,
            source_path=session.source_path,
            mode=ExportMode(mode),
        )
        self._jobs[job.job_id] = job
        self._tasks[job.job_id] = asyncio.get_running_loop().create_task(self._run(job, session.theme))
        LOGGER.info("export %s queued for %s (%s)", job.job_id, job.source_path, job.mode.value)
        return job.job_id

    async def _run(self, job: ExportJob, theme: str) -> None:
        job.advance(JobState.compiling)
        try:
            written = await export_document(job.source_path, job.mode, theme, self.toolchain)
        except ExportToolchainError as e:
            job.advance(JobState.failed, e.reason, e.detail)
            LOGGER.error("export %s failed: %s", job.job_id, e)
        except Exception as e:
            job.advance(JobState.failed, ExportFailure.compile_error, str(e))
            LOGGER.exception("export %s failed unexpectedly", job.job_id)
        else:
            job.outputs = [str(p) for p in written]
            if job.mode == ExportMode.final:
                self._keep_artifact(job, written[-1])
            job.advance(JobState.succeeded)
            LOGGER.info("export %s succeeded: %s", job.job_id, ", ".join(job.outputs))
        finally:
            self._tasks.pop(job.job_id, None)

    async def wait(self, job_id: str) -> ExportJob:
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)
        return self._jobs[job_id]

    def status(self, job_id: str) -> ExportJob | None:
        """Current job state; a terminal job is released once reported."""
        job = self._jobs.get(job_id)
        if job is not None and job.terminal:
            del self._jobs[job_id]
        return job

    def _keep_artifact(self, job: ExportJob, pdf: Path) -> None:
        self._artifacts = {
            jid: entry for jid, entry in self._artifacts.items() if entry[0] != job.session_id
        }
        self._artifacts[job.job_id] = (job.session_id, pdf)

    def artifact(self, job_id: str) -> Path | None:
        """PDF written by a succeeded final export; released once returned."""
        entry = self._artifacts.pop(job_id, None)
        if entry is None or not entry[1].exists():
            return None
        return entry[1]
