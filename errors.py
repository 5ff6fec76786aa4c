"""Error types raised by the repository and file operations.

Every error carries the HTTP status the API answers with, so the Flask layer
can render any of them with one handler.
"""


class MarksyncError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthRequired(MarksyncError):
    """Raised when a remote operation is attempted without an access token."""

    status_code = 400


class InvalidArgument(MarksyncError):
    status_code = 400


class AlreadyExists(MarksyncError):
    status_code = 400


class NotFound(MarksyncError):
    status_code = 404


class RebaseConflict(MarksyncError):
    """Raised when pulling with rebase stops on conflicting changes.

    The rebase has already been aborted when this is raised; the local commit
    is kept but not pushed.
    """

    status_code = 409


class VcsFailure(MarksyncError):
    """Raised when a git command fails. The message is git's own output."""


class IOFailure(MarksyncError):
    pass
