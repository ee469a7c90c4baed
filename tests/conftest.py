"""Root test configuration: shared source-file fixtures"""

import pytest


SIMPLE_MD = "# Title\n\npara\n"


@pytest.fixture(name="md_file")
def md_file_fixture(tmp_path):
    """A small markdown document on disk."""
    f = tmp_path / "doc.md"
    f.write_text(SIMPLE_MD, encoding="utf-8")
    return f


@pytest.fixture(autouse=True)
def no_browser(monkeypatch):
    """Never launch a real browser from tests."""
    monkeypatch.setenv("MDPREVIEW_OPEN_BROWSER", "false")
    monkeypatch.setattr("webbrowser.open", lambda *a, **kw: True)
