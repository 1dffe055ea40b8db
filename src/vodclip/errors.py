"""Error taxonomy for the clip pipeline.

Every error carries the HTTP status the server answers with while response
headers are still uncommitted.
"""

from __future__ import annotations

from typing import Optional


class ClipError(Exception):
    """Base exception for clip pipeline errors."""

    status_code = 500


class ValidationError(ClipError):
    """Raised for malformed/missing parameters or a window over the length cap."""

    status_code = 400


class ConfigurationError(ClipError):
    """Raised when the server is missing required settings."""

    status_code = 500


class UpstreamFetchError(ClipError):
    """Raised when the manifest could not be obtained from the origin."""

    status_code = 502


class UpstreamUnreachable(UpstreamFetchError):
    """Raised when the origin could not be reached at all."""

    pass


class UpstreamError(UpstreamFetchError):
    """Raised when the origin answered with a non-success status."""

    def __init__(self, status: int, url: str = "") -> None:
        self.status = int(status)
        self.url = url
        super().__init__(f"upstream returned HTTP {self.status}" + (f" for {url}" if url else ""))


class ToolSpawnError(ClipError):
    """Raised when the external tool binary could not be launched."""

    pass


class ToolRuntimeError(ClipError):
    """Raised when the tool exits before producing a usable output."""

    def __init__(self, message: str, *, returncode: Optional[int] = None, diagnostics: str = "") -> None:
        self.returncode = returncode
        self.diagnostics = diagnostics
        super().__init__(message)


class ClientCanceled(ClipError):
    """Raised when the caller went away before delivery completed."""

    # nginx convention; the caller never sees it.
    status_code = 499
