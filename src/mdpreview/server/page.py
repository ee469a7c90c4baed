"""Preview page shell around the rendered article"""

from html import escape

from mdpreview.core.models import RenderOutput


KATEX = "https://cdn.jsdelivr.net/npm/katex@0.16.3/dist"

BOOTSTRAP_JS = """
(function () {
  var article = document.getElementById("content");
  var banner = document.getElementById("banner");
  var version = Number(article.dataset.version);
  var source = null;

  function notify() { document.dispatchEvent(new CustomEvent("mdpreview:updated", {detail: {version: version}})); }
  function showBanner(message) { banner.textContent = message; banner.hidden = false; }
  function hideBanner() { banner.hidden = true; }

  function replaceAll(payload) {
    article.innerHTML = payload.blocks.join("\\n");
    document.body.dataset.theme = payload.theme;
  }

  function applyOps(ops) {
    ops.forEach(function (op) {
      var kids = Array.prototype.slice.call(article.children);
      var anchor = kids[op.end] || null;
      for (var i = op.start; i < op.end; i++) { article.removeChild(kids[i]); }
      var tpl = document.createElement("template");
      tpl.innerHTML = op.blocks.join("");
      article.insertBefore(tpl.content, anchor);
    });
  }

  function connect() {
    source = new EventSource(article.dataset.events);
    source.onmessage = function (msg) {
      var ev = JSON.parse(msg.data);
      if (ev.patchKind === "banner") { showBanner(ev.payload.message); return; }
      if (ev.patchKind === "full") {
        replaceAll(ev.payload);
      } else if (ev.documentVersion === version + 1) {
        applyOps(ev.payload.ops);
      } else if (ev.documentVersion > version + 1) {
        source.close();
        connect();
        return;
      } else {
        return;
      }
      version = ev.documentVersion;
      hideBanner();
      notify();
    };
  }

  function exportPdf(event) {
    event.preventDefault();
    showBanner("Exporting PDF...");
    fetch(this.href).then(function (res) { return res.json(); }).then(function (job) {
      function poll() {
        fetch(job.statusUrl).then(function (res) { return res.json(); }).then(function (state) {
          if (state.state === "Succeeded") { hideBanner(); window.location = job.artifactUrl; }
          else if (state.state === "Failed") { showBanner("PDF export failed: " + state.reason + " " + (state.detail || "")); }
          else { setTimeout(poll, 500); }
        });
      }
      poll();
    });
  }

  document.getElementById("export-pdf").addEventListener("click", exportPdf);
  connect();
})();
"""

PAGE = """<!DOCTYPE html>
<html>
  <head>
    <title>{title}</title>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <link rel="stylesheet" type="text/css" href="/static/preview.css">
    <link rel="stylesheet" href="{katex}/katex.min.css" crossorigin="anonymous">
    <script defer src="{katex}/katex.min.js" crossorigin="anonymous"></script>
    <script defer src="{katex}/contrib/auto-render.min.js" crossorigin="anonymous"></script>
    <script defer src="/static/preview.js"></script>
  </head>
  <body class="mdpreview" data-theme="{theme}">
    <div class="menu-bar">
      <div class="right-menu">
        <a id="export-pdf" href="/session/{session_id}/pdf">Export PDF</a>
        <a href="/session/{session_id}/source">View LaTeX Source</a>
      </div>
    </div>
    <div id="banner" class="error-banner"{banner_hidden}>{banner}</div>
    <article id="content" class="markdown-body" data-version="{version}" data-events="/session/{session_id}/events">
{body}
    </article>
    <script>{bootstrap}</script>
  </body>
</html>
"""


def render_page(session_id: str, title: str, output: RenderOutput, error: str | None = None) -> str:
    """Full HTML page for a session; the bootstrap script opens the push channel."""
    return PAGE.format(
        title=escape(title or "Previewer"),
        katex=KATEX,
        theme=escape(output.theme),
        session_id=session_id,
        version=output.document_version,
        banner=escape(error or ""),
        banner_hidden="" if error else " hidden",
        body="\n".join(output.blocks),
        bootstrap=BOOTSTRAP_JS,
    )
