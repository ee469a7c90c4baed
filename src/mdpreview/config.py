"""Application configuration: settings schema and config.yaml loader"""

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator


CONFIG_FILE = "config.yaml"
DEFAULT_PORT = 3008
STATIC_DIR = Path(__file__).parent / "static"

LOGGER = logging.getLogger(__name__)


class Settings(BaseModel):
    app_name:      str   = "mdpreview"
    browser:       str   = Field(default="",          description="Command used to open the viewer; empty = system default")
    host:          str   = Field(default="127.0.0.1", description="Listening host")
    port:          int   = Field(default=DEFAULT_PORT, description="Listening port; <= 1024 falls back to the default")
    css_file:      str   = Field(default="",          description="Override stylesheet; empty = built-in")
    js_file:       str   = Field(default="",          description="Override client script; empty = built-in")
    theme:         str   = Field(default="light",     description="Theme used by preview notifications")
    alt_theme:     str   = Field(default="dark",      description="Theme used by previewAlt notifications")
    debounce_ms:   int   = Field(default=150, ge=0,   description="File change debounce window in milliseconds")
    export_timeout: float = Field(default=120.0, gt=0, description="Timeout in seconds per external tool invocation")
    latex_engine:  str   = Field(default="xelatex",   description="Typesetting compiler command")
    svg_converter: str   = Field(default="rsvg-convert", description="Vector image to PDF converter command")
    log_dir:       str   = Field(default="~/.cache/mdpreview/logs", description="Directory for daily log files")
    viewer_queue_size: int = Field(default=64, ge=1, description="Max undelivered events per viewer before resync")
    open_browser:  bool  = Field(default=True,        description="Open the browser on preview notifications")

    @field_validator("port")
    @classmethod
    def _port_in_user_range(cls, v: int) -> int:
        return v if 1024 < v < 65536 else DEFAULT_PORT

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def stylesheet_path(self) -> Path:
        """Configured stylesheet if it exists, else the built-in one."""
        return _asset_or_builtin(self.css_file, "preview.css")

    def script_path(self) -> Path:
        """Configured client script if it exists, else the built-in one."""
        return _asset_or_builtin(self.js_file, "preview.js")


def _asset_or_builtin(configured: str, builtin: str) -> Path:
    if configured:
        path = Path(configured).expanduser()
        if path.is_file():
            return path
        LOGGER.warning("%s is not found, fallback to default", path)
    return STATIC_DIR / builtin


def load_config(overrides: dict[str, Any] = None) -> Settings:
    """Load Settings from config.yaml, then MDPREVIEW_<FIELD> env vars, then non-None CLI overrides."""
    data: dict[str, Any] = {}
    if Path(CONFIG_FILE).exists():
        try:
            data = yaml.safe_load(Path(CONFIG_FILE).read_text()) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid {CONFIG_FILE}: {e}") from e

    for name in Settings.model_fields:
        if val := os.getenv(f"MDPREVIEW_{name.upper()}"):
            data[name] = val

    if overrides:
        data.update({k: v for k, v in overrides.items() if v is not None})
    return Settings(**data)
