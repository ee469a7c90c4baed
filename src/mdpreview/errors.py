"""Error taxonomy shared by sessions, the preview server and export jobs"""

from enum import Enum


class PreviewError(Exception):
    """Base class for errors contained within a single session or job."""


class SourceUnreadableError(PreviewError, OSError):
    """The source document could not be read; no session is created."""

    def __init__(self, path, cause: Exception = None):
        self.path = str(path)
        detail = f": {cause}" if cause else ""
        super().__init__(f"cannot read {self.path}{detail}")


class ParseError(PreviewError):
    """The structural parser rejected the source content."""


class CompileError(PreviewError):
    """A compiler invariant was violated; fatal to one compile attempt only."""


class SyncError(PreviewError):
    """A viewer fell behind or disconnected and must resync fully."""


class ExportFailure(str, Enum):
    missing_toolchain = "MissingToolchain"
    non_zero_exit     = "NonZeroExit"
    timeout           = "Timeout"
    source_unreadable = "SourceUnreadable"
    compile_error     = "CompileError"
    download_failed   = "DownloadFailed"


class ExportToolchainError(PreviewError):
    """An external typesetting or conversion step failed."""

    def __init__(self, reason: ExportFailure, detail: str = ""):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)
