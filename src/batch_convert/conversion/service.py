import asyncio
from dataclasses import dataclass
from typing import BinaryIO, Iterator, Sequence

from loguru import logger

from .errors import BatchFailedError, ConversionError, RemoteServiceError, StorageError
from .interfaces import ArchiveGateway, ConverterGateway, StorageGateway
from .models import (
    BatchHandle,
    BatchResult,
    ConversionRequest,
    SourceFile,
    TargetFormat,
    assign_output_names,
    check_batch_size,
)


@dataclass(frozen=True)
class Upload:
    filename: str
    data: bytes


@dataclass
class BatchArchive:
    """A finished batch: the assembled zip plus what went into it."""

    handle: BatchHandle
    archive: BinaryIO
    result: BatchResult

    @property
    def batch_id(self) -> str:
        return self.handle.batch_id

    @property
    def download_name(self) -> str:
        return f"CONVERTED-{self.batch_id}.zip"


class BatchConversionService:
    """Core domain service orchestrating one conversion batch per request.

    This service is framework-agnostic. The HTTP layer hands it parsed uploads
    and gets back an assembled archive; remote conversion, scratch storage and
    zipping go through gateways. Every file is converted independently on a
    bounded pool of asyncio workers, with the blocking client calls offloaded
    to threads.
    """

    def __init__(
        self,
        storage: StorageGateway,
        converter: ConverterGateway,
        archiver: ArchiveGateway,
        *,
        max_files: int = 20,
        workers: int = 4,
    ) -> None:
        self._storage = storage
        self._converter = converter
        self._archiver = archiver
        self._max_files = max_files
        self._workers = max(1, workers)

    def validate_request(self, count: int, target: str | None) -> TargetFormat:
        """Checks that need no I/O: credential present, known format, batch size."""
        self._converter.ensure_configured()
        target_format = TargetFormat.parse(target)
        check_batch_size(count, self._max_files)
        return target_format

    async def convert_batch(self, uploads: Sequence[Upload], target: str | None) -> BatchArchive:
        """Run the whole pipeline. The batch is released before any error leaves this method."""
        target_format = self.validate_request(len(uploads), target)

        handle = await asyncio.to_thread(self._storage.allocate_batch_folder)
        logger.info("Batch {}: {} file(s) -> {}", handle.batch_id, len(uploads), target_format.value)
        try:
            files: list[SourceFile] = []
            for index, upload in enumerate(uploads):
                path = await asyncio.to_thread(
                    self._storage.persist_upload, handle, index, upload.filename, upload.data
                )
                files.append(SourceFile(filename=upload.filename, path=path))

            request = ConversionRequest(files=files, target=target_format)
            request.validate(self._max_files)
            result = await self.run(request, handle)

            if not result.succeeded:
                if all(isinstance(err, StorageError) for _, err in result.failed):
                    # Nothing was wrong with the input; the server could not stage it.
                    raise StorageError(_failure_summary(result))
                raise BatchFailedError(
                    _failure_summary(result),
                    failures=[(src.filename, err) for src, err in result.failed],
                )

            entries = await asyncio.to_thread(self._storage.read_all, handle)
            archive = await asyncio.to_thread(self._archiver.assemble, entries)
        except BaseException:
            # Synchronous so it still runs when the request task is cancelled.
            self._storage.release(handle)
            raise

        logger.info(
            "Batch {}: archived {} file(s), {} failed",
            handle.batch_id,
            len(result.succeeded),
            len(result.failed),
        )
        return BatchArchive(handle=handle, archive=archive, result=result)

    async def run(self, request: ConversionRequest, handle: BatchHandle) -> BatchResult:
        names = assign_output_names(request.files, request.target)
        queue: asyncio.Queue[tuple[int, SourceFile, str]] = asyncio.Queue()
        for index, (source, name) in enumerate(zip(request.files, names)):
            queue.put_nowait((index, source, name))

        outcomes: dict[int, tuple[SourceFile, str, bytes | None, ConversionError | None]] = {}

        async def worker() -> None:
            while True:
                try:
                    index, source, name = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    data, error = await self._convert_one(handle, source, name, request.target)
                    outcomes[index] = (source, name, data, error)
                finally:
                    queue.task_done()

        tasks = [asyncio.create_task(worker()) for _ in range(min(self._workers, len(request.files)))]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for t in tasks:
                t.cancel()
            raise

        result = BatchResult()
        for index in sorted(outcomes):
            source, name, data, error = outcomes[index]
            if error is not None:
                result.failed.append((source, error))
            else:
                result.succeeded.append((source, name, data or b""))
        return result

    async def _convert_one(
        self,
        handle: BatchHandle,
        source: SourceFile,
        name: str,
        target: TargetFormat,
    ) -> tuple[bytes | None, ConversionError | None]:
        try:
            data = await asyncio.to_thread(source.path.read_bytes)
        except OSError as e:
            return None, StorageError(f"could not read upload {source.filename}: {e.strerror}")

        try:
            converted = await asyncio.to_thread(
                self._converter.convert,
                data,
                source.filename,
                target.value,
                source_format=source.source_format,
            )
        except RemoteServiceError as e:
            logger.warning("Batch {}: {} failed ({}): {}", handle.batch_id, source.filename, e.code, e.message)
            return None, e
        except Exception as e:
            # A defect in one conversion must not take down the rest of the batch.
            logger.exception("Batch {}: unexpected failure converting {}", handle.batch_id, source.filename)
            return None, RemoteServiceError(f"unexpected failure converting {source.filename}: {type(e).__name__}")

        try:
            await asyncio.to_thread(self._storage.persist, handle, name, converted)
        except StorageError as e:
            logger.error("Batch {}: could not stage {}: {}", handle.batch_id, name, e.message)
            return None, e

        logger.debug("Batch {}: {} -> {}", handle.batch_id, source.filename, name)
        return converted, None

    def stream(self, batch: BatchArchive) -> Iterator[bytes]:
        """Yield the archive in chunks and release the batch however streaming ends."""
        try:
            yield from self._archiver.iter_chunks(batch.archive)
        except ConversionError as e:
            logger.error("Batch {}: archive stream aborted: {}", batch.batch_id, e.message)
            raise
        finally:
            self._storage.release(batch.handle)

    def release(self, batch: BatchArchive) -> None:
        self._storage.release(batch.handle)


def _failure_summary(result: BatchResult) -> str:
    details = "; ".join(f"{src.filename}: {err.message}" for src, err in result.failed)
    return f"All {len(result.failed)} file(s) failed to convert. {details}"
