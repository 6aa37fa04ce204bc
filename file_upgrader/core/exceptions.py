# file_upgrader/core/exceptions.py


class UpgraderError(Exception):
    """Base exception for the file upgrader."""
    pass


class ConversionSubmitError(UpgraderError):
    """Raised when the conversion service rejects or fails a work item submission."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class DocumentBackendError(UpgraderError):
    """Raised for failed document backend calls."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class DocumentConflictError(DocumentBackendError):
    """Raised when the destination already holds an object with the same name."""
    pass


class AuthenticationError(UpgraderError):
    """Raised when a credential snapshot is missing, expired or rejected."""
    pass


class InvalidTransitionError(UpgraderError):
    """Raised when a file task status transition is not allowed."""

    def __init__(self, display_name: str, from_status: str, to_status: str):
        self.display_name = display_name
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid state transition for {display_name}: "
            f"Cannot move from '{from_status}' to '{to_status}'."
        )


class BatchNotFoundError(UpgraderError):
    def __init__(self, batch_id: int):
        self.batch_id = batch_id
        super().__init__(f"Batch {batch_id} not found")


class BatchValidationError(UpgraderError):
    """Raised for malformed batch submissions (missing identifiers, nothing to convert)."""
    pass


class InvalidBatchStateError(UpgraderError):
    """Raised when a batch operation is not allowed in the batch's current state."""
    pass
