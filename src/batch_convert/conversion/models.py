from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Sequence

from .errors import ConversionError, ValidationError


class TargetFormat(str, Enum):
    PDF = "pdf"
    JPG = "jpg"
    PNG = "png"
    WEBP = "webp"
    DOCX = "docx"

    @classmethod
    def parse(cls, value: str | None) -> "TargetFormat":
        """Case-insensitive lookup; a blank value falls back to pdf."""
        raw = (value or "").strip().lower().lstrip(".")
        if not raw:
            return cls.PDF
        try:
            return cls(raw)
        except ValueError:
            allowed = ", ".join(f.value for f in cls)
            raise ValidationError(f"unsupported target format '{raw}' (allowed: {allowed})") from None


class JobState:
    CREATED = "created"
    UPLOADING = "uploading"
    POLLING = "polling"
    FINISHED = "finished"
    ERRORED = "errored"
    TIMED_OUT = "timed_out"


def _clean_name(filename: str) -> str:
    # Browsers on Windows may send full client paths.
    return PurePosixPath(filename.replace("\\", "/")).name


@dataclass(frozen=True)
class SourceFile:
    filename: str
    path: Path

    @property
    def base_name(self) -> str:
        return PurePosixPath(_clean_name(self.filename)).stem or "file"

    @property
    def source_format(self) -> str | None:
        suffix = PurePosixPath(_clean_name(self.filename)).suffix
        return suffix.lstrip(".").lower() or None


def check_batch_size(count: int, max_files: int) -> None:
    if count == 0:
        raise ValidationError("No files uploaded")
    if count > max_files:
        raise ValidationError(f"Limit reached! Max {max_files} files allowed, got {count}.")


@dataclass(frozen=True)
class ConversionRequest:
    files: Sequence[SourceFile]
    target: TargetFormat

    def validate(self, max_files: int) -> None:
        check_batch_size(len(self.files), max_files)


@dataclass
class ConversionJob:
    """One remote job, advanced only by what the remote service reports."""

    job_id: str
    state: str = JobState.CREATED
    remote_status: str | None = None
    export_url: str | None = None


@dataclass(frozen=True)
class BatchHandle:
    batch_id: str
    uploads_dir: Path
    output_dir: Path


@dataclass
class BatchResult:
    succeeded: list[tuple[SourceFile, str, bytes]] = field(default_factory=list)
    failed: list[tuple[SourceFile, ConversionError]] = field(default_factory=list)

    @property
    def output_names(self) -> list[str]:
        return [name for _, name, _ in self.succeeded]


def assign_output_names(files: Sequence[SourceFile], target: TargetFormat) -> list[str]:
    """Name each output `<base>.<target>`; repeats become `<base>-1.<target>`, `<base>-2.<target>`, ..."""
    taken: set[str] = set()
    names: list[str] = []
    for source in files:
        candidate = f"{source.base_name}.{target.value}"
        n = 0
        while candidate in taken:
            n += 1
            candidate = f"{source.base_name}-{n}.{target.value}"
        taken.add(candidate)
        names.append(candidate)
    return names
