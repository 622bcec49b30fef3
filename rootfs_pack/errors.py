"""Packaging error types.

Every failure of a packaging or staging operation is raised as a
PackagingError subclass carrying a stable ``error_code`` that the CLI
prints and the run history stores.
"""

STAGING_DIR_NOT_FOUND = "STAGING_DIR_NOT_FOUND"
SIZE_EXCEEDED = "SIZE_EXCEEDED"
FORMAT_FAILURE = "FORMAT_FAILURE"
PERMISSION_DENIED = "PERMISSION_DENIED"
STAGING_FAILED = "STAGING_FAILED"


class PackagingError(Exception):
    """Base exception for packaging errors."""

    def __init__(self, message: str, error_code: str) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class StagingDirNotFoundError(PackagingError):
    """Staging directory is missing, not a directory, or empty."""

    def __init__(self, path: str, reason: str = "not found") -> None:
        super().__init__(
            f"Staging directory {reason}: {path}",
            error_code=STAGING_DIR_NOT_FOUND,
        )
        self.path = path


class SizeExceededError(PackagingError):
    """Projected or actual image size is over the configured maximum."""

    def __init__(self, size_bytes: int, max_size_bytes: int, what: str = "image") -> None:
        super().__init__(
            f"Projected {what} size {size_bytes} bytes exceeds "
            f"maximum of {max_size_bytes} bytes",
            error_code=SIZE_EXCEEDED,
        )
        self.size_bytes = size_bytes
        self.max_size_bytes = max_size_bytes


class FormatFailureError(PackagingError):
    """The filesystem format tool failed, timed out, or could not run."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        output: str | None = None,
    ) -> None:
        super().__init__(message, error_code=FORMAT_FAILURE)
        self.exit_code = exit_code
        self.output = output


class PermissionDeniedError(PackagingError):
    """Insufficient privilege to read the tree or create device nodes."""

    def __init__(self, path: str, action: str = "access") -> None:
        super().__init__(
            f"Permission denied trying to {action} {path}. "
            "Try running with elevated privileges.",
            error_code=PERMISSION_DENIED,
        )
        self.path = path
        self.action = action


class StagingError(PackagingError):
    """Assembling the staging directory failed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, error_code=STAGING_FAILED)


__all__ = [
    "FORMAT_FAILURE",
    "PERMISSION_DENIED",
    "SIZE_EXCEEDED",
    "STAGING_DIR_NOT_FOUND",
    "STAGING_FAILED",
    "FormatFailureError",
    "PackagingError",
    "PermissionDeniedError",
    "SizeExceededError",
    "StagingDirNotFoundError",
    "StagingError",
]
