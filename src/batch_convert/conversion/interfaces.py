from pathlib import Path
from typing import BinaryIO, Iterator, Protocol, Sequence

from .models import BatchHandle


class ConverterGateway(Protocol):
    def ensure_configured(self) -> None:
        """Raise ConfigurationError if no conversion can possibly succeed."""

    def convert(
        self,
        data: bytes,
        filename: str,
        target_format: str,
        *,
        source_format: str | None = None,
    ) -> bytes:
        """Convert one file remotely and return the converted bytes.
        This is a blocking call; callers should offload to threads if needed.
        """


class StorageGateway(Protocol):
    def allocate_batch_folder(self) -> BatchHandle:
        ...

    def persist_upload(self, handle: BatchHandle, index: int, filename: str, data: bytes) -> Path:
        ...

    def persist(self, handle: BatchHandle, name: str, data: bytes) -> Path:
        ...

    def read_all(self, handle: BatchHandle) -> list[tuple[str, Path]]:
        ...

    def release(self, handle: BatchHandle) -> None:
        ...


class ArchiveGateway(Protocol):
    def assemble(self, entries: Sequence[tuple[str, Path | bytes]]) -> BinaryIO:
        ...

    def iter_chunks(self, archive: BinaryIO) -> Iterator[bytes]:
        ...
