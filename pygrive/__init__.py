"""pygrive - keep a local directory in sync with Google Drive."""

from .api import DriveClient
from .exceptions import (
    DriveAPIError,
    DriveAuthenticationError,
    DriveInvalidResponseError,
    DriveNetworkError,
    DriveNotFoundError,
    DrivePermissionError,
    DriveRateLimitError,
    DriveServerError,
    DriveTransientError,
    GriveConfigError,
    GriveError,
    LocalIOError,
    RemoteQueryError,
)

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "DriveClient",
    "DriveAPIError",
    "DriveAuthenticationError",
    "DriveInvalidResponseError",
    "DriveNetworkError",
    "DriveNotFoundError",
    "DrivePermissionError",
    "DriveRateLimitError",
    "DriveServerError",
    "DriveTransientError",
    "GriveConfigError",
    "GriveError",
    "LocalIOError",
    "RemoteQueryError",
]
