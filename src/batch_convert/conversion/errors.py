"""Error taxonomy shared by the conversion pipeline and the HTTP boundary."""


class ConversionError(Exception):
    """Base class for every error raised by the conversion pipeline."""

    code = "conversion_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ConfigurationError(ConversionError):
    """The process is missing configuration needed for any conversion (fatal)."""

    code = "configuration_error"


class ValidationError(ConversionError):
    """The request is malformed; raised before any external call is made."""

    code = "validation_error"


class BatchFailedError(ValidationError):
    """No file in the batch produced an output, so there is nothing to archive."""

    code = "batch_failed"

    def __init__(self, message: str, failures: list[tuple[str, "ConversionError"]] | None = None) -> None:
        super().__init__(message)
        self.failures = failures or []


class StorageError(ConversionError):
    code = "storage_error"


class ArchiveError(ConversionError):
    code = "archive_error"


class RemoteServiceError(ConversionError):
    """A single file's remote conversion failed. Recorded per file, never batch-fatal."""

    code = "remote_error"


class AuthError(RemoteServiceError):
    code = "auth_error"


class SubmissionError(RemoteServiceError):
    code = "submission_error"


class ProcessingError(RemoteServiceError):
    code = "processing_error"


class JobTimeoutError(RemoteServiceError):
    code = "timeout"


class DownloadError(RemoteServiceError):
    code = "download_error"
