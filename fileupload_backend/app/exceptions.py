"""Errors raised by the upload lifecycle."""
from typing import Optional


class FileUploadError(Exception):
    """Base class for upload lifecycle errors."""


class ContractViolation(FileUploadError):
    """A carrier reports an upload field it does not declare."""


class MaterializationFailure(FileUploadError):
    """Staged bytes could not be moved to their assigned location.

    Raised from inside a flush, so the enclosing transaction is rolled back.
    """

    def __init__(self, message: str, source: Optional[str] = None, target: Optional[str] = None):
        super().__init__(message)
        self.source = source
        self.target = target


class DeletionFailure(FileUploadError):
    """A superseded file could not be removed after commit.

    Never raised by the committer; instances are logged and returned so the
    caller can report them.
    """

    def __init__(self, path: str, reason: str):
        super().__init__(f"could not delete {path}: {reason}")
        self.path = path
        self.reason = reason
