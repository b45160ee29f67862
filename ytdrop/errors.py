"""Error taxonomy shared by the HTTP routes and the job event stream."""
from __future__ import annotations

from typing import Optional


class BrokerError(Exception):
    """Base class; ``code`` goes on the wire, ``status_code`` is the HTTP status."""

    code = "error"
    status_code = 500

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.__class__.__doc__ or self.code)

    @property
    def message(self) -> str:
        return str(self)


class InvalidUrl(BrokerError):
    """URL could not be parsed as an absolute URL."""

    code = "invalid_url"
    status_code = 400


class DisallowedHost(BrokerError):
    """Only YouTube links are allowed."""

    code = "disallowed_host"
    status_code = 400


class TooManyJobs(BrokerError):
    """Too many concurrent downloads, please wait."""

    code = "busy"
    status_code = 429


class StagingDirectoryUnavailable(BrokerError):
    """Download directory could not be created."""

    code = "staging_unavailable"
    status_code = 500


class ExternalToolError(BrokerError):
    """yt-dlp failed."""

    code = "tool_error"
    status_code = 502

    def __init__(self, message: Optional[str] = None, returncode: Optional[int] = None):
        super().__init__(message)
        self.returncode = returncode


class JobTimeout(BrokerError):
    """Download took too long and was stopped."""

    code = "timeout"
    status_code = 504


class MissingCompletionSignal(BrokerError):
    """yt-dlp finished but reported no output file."""

    code = "missing_output"
    status_code = 502


class TokenNotFound(BrokerError):
    """Link is invalid or has expired."""

    code = "not_found"
    status_code = 404


class TokenGone(BrokerError):
    """File was already downloaded."""

    code = "gone"
    status_code = 410
