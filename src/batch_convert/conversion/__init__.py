"""
Domain layer for batch conversion.
Provides gateways (remote converter, scratch storage, archiver) and a service
that orchestrates one batch of conversion jobs, so front-ends (HTTP or others)
can use the same core logic.
"""

from .errors import (
    ArchiveError,
    AuthError,
    BatchFailedError,
    ConfigurationError,
    ConversionError,
    DownloadError,
    JobTimeoutError,
    ProcessingError,
    RemoteServiceError,
    StorageError,
    SubmissionError,
    ValidationError,
)
from .interfaces import ArchiveGateway, ConverterGateway, StorageGateway
from .models import BatchHandle, BatchResult, ConversionRequest, JobState, SourceFile, TargetFormat
from .service import BatchArchive, BatchConversionService, Upload
