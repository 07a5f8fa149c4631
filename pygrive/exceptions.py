"""Exceptions raised by pygrive."""

from typing import Optional


class GriveError(Exception):
    """Base exception for all pygrive errors."""


class GriveConfigError(GriveError):
    """Configuration is missing or invalid."""


class LocalIOError(GriveError):
    """Local filesystem entry could not be read or written."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class DriveAPIError(GriveError):
    """Base exception for Google Drive API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DriveAuthenticationError(DriveAPIError):
    """Access token is missing, invalid or expired."""


class DrivePermissionError(DriveAPIError):
    """Access to the requested resource was denied."""


class DriveNotFoundError(DriveAPIError):
    """Requested remote resource does not exist."""


class DriveInvalidResponseError(DriveAPIError):
    """Server returned a response that could not be understood."""


class DriveTransientError(DriveAPIError):
    """Temporary failure that may succeed when retried."""


class DriveRateLimitError(DriveTransientError):
    """Rate limit exceeded."""


class DriveServerError(DriveTransientError):
    """Server overloaded or unavailable (5xx)."""


class DriveNetworkError(DriveTransientError):
    """Network-level failure while talking to the server."""


class RemoteQueryError(GriveError):
    """The remote tree could not be listed.

    Always fatal: planning against an incomplete remote view could
    trash local files that still exist remotely.
    """
