"""CLI command implementations"""

import asyncio
from pathlib import Path
from typing import Annotated, Optional

import typer
import uvicorn

from mdpreview.config import Settings, load_config
from mdpreview.control.channel import stdin_channel
from mdpreview.core.compiler import compile_source, read_source
from mdpreview.core.models import OutputFormat
from mdpreview.errors import ExportToolchainError, PreviewError
from mdpreview.export.pipeline import ExportMode, Toolchain, export_document
from mdpreview.logs import setup_logging
from mdpreview.previewer import Previewer
from mdpreview.server.app import create_app


def _fail(msg: str, cause: Exception = None) -> None:
    """Print a user-friendly error to stderr and exit 1."""
    typer.echo(f"Error: {msg}", err=True)
    if cause:
        typer.echo(f"  {cause}", err=True)
    raise typer.Exit(1)


def _settings(overrides: dict = None) -> Settings:
    """Load config with standard CLI error handling."""
    try:
        return load_config(overrides=overrides)
    except ValueError as e:
        _fail(str(e))


async def _serve(settings: Settings, path: Optional[str], control: bool) -> None:
    previewer = Previewer(settings)
    server = uvicorn.Server(uvicorn.Config(
        create_app(previewer), host=settings.host, port=settings.port, log_config=None,
    ))

    async def listen() -> None:
        await previewer.listen(await stdin_channel())
        # the editor went away; nothing left to preview for
        server.should_exit = True

    if path:
        await previewer.preview(path, settings.theme)
    tasks = [server.serve()]
    if control:
        tasks.append(listen())
    await asyncio.gather(*tasks)


def serve_cmd(
    path: Annotated[Optional[str], typer.Argument(help="Markdown file to open immediately")] = None,
    host: Annotated[Optional[str], typer.Option("--host", help="Listening host")] = None,
    port: Annotated[Optional[int], typer.Option("--port", help="Listening port (> 1024)")] = None,
    browser: Annotated[Optional[str], typer.Option("--browser", help="Browser command")] = None,
    no_browser: Annotated[bool, typer.Option("--no-browser", help="Do not open a browser")] = False,
    control: Annotated[bool, typer.Option("--control/--no-control", help="Read editor notifications from stdin")] = True,
    ):
    """Run the preview server, listening for editor notifications on stdin."""
    settings = _settings(overrides={
        "host": host, "port": port, "browser": browser,
        "open_browser": False if no_browser else None,
    })
    log_file = setup_logging(Path(settings.log_dir).expanduser())
    typer.echo(f"Serving on {settings.base_url} (log: {log_file})", err=True)
    try:
        asyncio.run(_serve(settings, path, control))
    except PreviewError as e:
        _fail("Could not open file", e)
    except OSError as e:
        _fail(f"Could not start server on {settings.base_url}", e)


def render_cmd(
    path: Annotated[str, typer.Argument(help="Markdown file to compile")],
    fmt: Annotated[OutputFormat, typer.Option("--format", help="Output format")] = OutputFormat.html,
    theme: Annotated[Optional[str], typer.Option("--theme", help="Theme name")] = None,
    ):
    """Compile a file once and print the result."""
    settings = _settings(overrides={"theme": theme})
    try:
        text = read_source(path)
        output = compile_source(text, settings.theme, fmt, source_path=path)
    except PreviewError as e:
        _fail(f"Could not compile {path}", e)
    typer.echo(output.text)


def export_cmd(
    path: Annotated[str, typer.Argument(help="Markdown file to export")],
    mode: Annotated[ExportMode, typer.Option("--mode", help="source writes .tex, final also typesets .pdf")] = ExportMode.source,
    engine: Annotated[Optional[str], typer.Option("--latex-engine", help="Typesetting compiler")] = None,
    ):
    """Export a file to LaTeX source or a typeset PDF next to it."""
    settings = _settings(overrides={"latex_engine": engine})
    toolchain = Toolchain(settings.latex_engine, settings.svg_converter, settings.export_timeout)
    try:
        written = asyncio.run(export_document(path, mode, settings.theme, toolchain))
    except ExportToolchainError as e:
        _fail(f"Export failed ({e.reason.value})", e)
    except PreviewError as e:
        _fail(f"Could not export {path}", e)
    for out in written:
        typer.echo(f"  {path} -> {out}")
    typer.echo(f"Exported {len(written)} file(s)")
