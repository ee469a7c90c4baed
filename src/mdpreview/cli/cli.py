"""CLI entrypoint: Typer app definition and command registration"""

import typer

from mdpreview.cli.commands import export_cmd, render_cmd, serve_cmd


app = typer.Typer(name="mdpreview", no_args_is_help=True, help="Live markdown preview and LaTeX export")

app.command(name="serve")(serve_cmd)
app.command(name="render")(render_cmd)
app.command(name="export")(export_cmd)
