"""HTTP surface: preview pages, the server-sent event push channel, exports and control"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, HTTPException, Query, status
from fastapi.responses import (
    FileResponse, HTMLResponse, PlainTextResponse, RedirectResponse, StreamingResponse,
)

from mdpreview.control.channel import Notification
from mdpreview.core.models import OutputFormat
from mdpreview.export.pipeline import ExportMode
from mdpreview.previewer import Previewer
from mdpreview.server.page import render_page
from mdpreview.session.registry import Session


LOGGER = logging.getLogger(__name__)


def create_app(previewer: Previewer) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        LOGGER.info("shutting down %d session(s)", len(previewer.registry.sessions()))
        await previewer.shutdown()

    app = FastAPI(title="mdpreview", lifespan=lifespan)
    app.state.previewer = previewer

    def session_or_404(session_id: str) -> Session:
        session = previewer.registry.get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail=f"unknown session {session_id}")
        return session

    @app.get("/")
    async def index():
        if previewer.last_session_id is None:
            raise HTTPException(status_code=404, detail="no file to render")
        return RedirectResponse(f"/session/{previewer.last_session_id}")

    @app.get("/session/{session_id}", response_class=HTMLResponse)
    async def page(session_id: str):
        session = session_or_404(session_id)
        output = session.output(OutputFormat.html)
        title = session.document.title if session.document else ""
        return HTMLResponse(render_page(session_id, title, output, session.last_error))

    @app.get("/session/{session_id}/events")
    async def events(session_id: str, fmt: OutputFormat = Query(OutputFormat.html, alias="format")):
        session = session_or_404(session_id)
        conn = previewer.hub.connect(session_id, fmt, session.output(fmt))
        return StreamingResponse(
            previewer.hub.stream(conn),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.get("/session/{session_id}/source", response_class=PlainTextResponse)
    async def source(session_id: str):
        session = session_or_404(session_id)
        return PlainTextResponse(session.output(OutputFormat.latex).text)

    @app.get("/session/{session_id}/file")
    async def asset(session_id: str, path: str):
        session = session_or_404(session_id)
        if path not in session.asset_paths() or not Path(path).is_file():
            LOGGER.warning("session %s: not serving %s", session_id, path)
            raise HTTPException(status_code=404, detail="file not found")
        return FileResponse(path)

    @app.get("/session/{session_id}/pdf", status_code=status.HTTP_202_ACCEPTED)
    async def pdf(session_id: str):
        session_or_404(session_id)
        job_id = previewer.exports.submit_export(session_id, ExportMode.final)
        return {
            "jobId": job_id,
            "statusUrl": f"/jobs/{job_id}",
            "artifactUrl": f"/jobs/{job_id}/artifact",
        }

    @app.get("/jobs/{job_id}")
    async def job(job_id: str):
        found = previewer.exports.status(job_id)
        if found is None:
            raise HTTPException(status_code=404, detail=f"unknown job {job_id}")
        return found.as_dict()

    @app.get("/jobs/{job_id}/artifact")
    async def artifact(job_id: str):
        path = previewer.exports.artifact(job_id)
        if path is None:
            raise HTTPException(status_code=404, detail=f"no artifact for job {job_id}")
        return FileResponse(path, media_type="application/pdf", filename=path.name)

    @app.get("/static/preview.css")
    async def stylesheet():
        return FileResponse(previewer.settings.stylesheet_path(), media_type="text/css")

    @app.get("/static/preview.js")
    async def script():
        return FileResponse(previewer.settings.script_path(), media_type="text/javascript")

    @app.post("/control", status_code=status.HTTP_202_ACCEPTED)
    async def control(note: Notification):
        previewer.dispatcher.submit(note)
        return {"accepted": note.method}

    return app
