"""Tests for the batch orchestration service."""

import asyncio
import io
import threading
import time
import zipfile

import pytest

from batch_convert.conversion import (
    ArchiveError,
    BatchConversionService,
    BatchFailedError,
    ConfigurationError,
    JobTimeoutError,
    ProcessingError,
    RemoteServiceError,
    StorageError,
    Upload,
    ValidationError,
)
from batch_convert.conversion.adapters import LocalScratchStorage, ZipArchiver

from conftest import FakeConverter, batch_folders


def uploads(*names: str) -> list[Upload]:
    return [Upload(filename=n, data=n.encode()) for n in names]


def archive_names(service: BatchConversionService, batch) -> list[str]:
    body = b"".join(service.stream(batch))
    with zipfile.ZipFile(io.BytesIO(body)) as zf:
        return sorted(zf.namelist())


@pytest.mark.asyncio
async def test_all_files_succeed(service, converter, settings):
    batch = await service.convert_batch(uploads("a.png", "b.png", "c.png"), "pdf")

    assert batch.download_name == f"CONVERTED-{batch.batch_id}.zip"
    assert batch.result.output_names == ["a.pdf", "b.pdf", "c.pdf"]
    assert batch.result.failed == []
    assert sorted(c[0] for c in converter.calls) == ["a.png", "b.png", "c.png"]
    assert all(c[1] == "pdf" and c[2] == "png" for c in converter.calls)
    assert batch.handle.output_dir.exists()

    assert archive_names(service, batch) == ["a.pdf", "b.pdf", "c.pdf"]
    assert batch_folders(settings) == []


@pytest.mark.asyncio
async def test_archive_holds_converted_bytes(service):
    batch = await service.convert_batch(uploads("a.png"), "webp")

    body = b"".join(service.stream(batch))
    with zipfile.ZipFile(io.BytesIO(body)) as zf:
        assert zf.read("a.webp") == b"converted:a.png:webp"


@pytest.mark.asyncio
async def test_failed_file_is_left_out(storage, settings):
    converter = FakeConverter(failures={"b.png": ProcessingError("conversion failed for job j2")})
    service = BatchConversionService(storage, converter, ZipArchiver(), workers=2)

    batch = await service.convert_batch(uploads("a.png", "b.png"), "pdf")

    assert batch.result.output_names == ["a.pdf"]
    [(source, error)] = batch.result.failed
    assert source.filename == "b.png"
    assert isinstance(error, ProcessingError)
    assert archive_names(service, batch) == ["a.pdf"]


@pytest.mark.asyncio
async def test_all_failed_raises_and_cleans_up(storage, settings):
    converter = FakeConverter(
        failures={
            "a.png": ProcessingError("conversion failed for job j1"),
            "b.png": JobTimeoutError("job j2 did not finish after 60 status checks"),
        }
    )
    service = BatchConversionService(storage, converter, ZipArchiver())

    with pytest.raises(BatchFailedError) as excinfo:
        await service.convert_batch(uploads("a.png", "b.png"), "pdf")

    assert "a.png" in excinfo.value.message and "b.png" in excinfo.value.message
    assert [name for name, _ in excinfo.value.failures] == ["a.png", "b.png"]
    assert batch_folders(settings) == []


@pytest.mark.asyncio
async def test_oversized_batch_makes_no_calls(service, converter, settings):
    names = [f"f{i}.png" for i in range(settings.max_files + 1)]

    with pytest.raises(ValidationError):
        await service.convert_batch(uploads(*names), "pdf")

    assert converter.calls == []
    assert batch_folders(settings) == []


@pytest.mark.asyncio
async def test_empty_batch_makes_no_calls(service, converter, settings):
    with pytest.raises(ValidationError, match="No files uploaded"):
        await service.convert_batch([], "pdf")

    assert converter.calls == []
    assert batch_folders(settings) == []


@pytest.mark.asyncio
async def test_missing_credential_touches_nothing(storage, settings):
    converter = FakeConverter(configured=False)
    service = BatchConversionService(storage, converter, ZipArchiver())

    with pytest.raises(ConfigurationError):
        await service.convert_batch(uploads("a.png"), "pdf")

    assert converter.calls == []
    assert not settings.output_dir.exists() or list(settings.output_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_duplicate_base_names_are_kept_apart(service):
    batch = await service.convert_batch(uploads("a.png", "a.jpg"), "pdf")

    assert archive_names(service, batch) == ["a-1.pdf", "a.pdf"]


@pytest.mark.asyncio
async def test_timeout_does_not_block_other_files(storage, settings):
    fast_done = threading.Event()

    class SlowConverter(FakeConverter):
        def convert(self, data, filename, target_format, *, source_format=None):
            if filename == "slow.png":
                # Only passes if fast.png is converted while this one is still in flight.
                if not fast_done.wait(timeout=5):
                    raise AssertionError("files were converted one after another")
                raise JobTimeoutError("job slow did not finish after 60 status checks")
            out = super().convert(data, filename, target_format, source_format=source_format)
            fast_done.set()
            return out

    service = BatchConversionService(storage, SlowConverter(), ZipArchiver(), workers=2)

    batch = await service.convert_batch(uploads("slow.png", "fast.png"), "pdf")

    assert batch.result.output_names == ["fast.pdf"]
    [(source, error)] = batch.result.failed
    assert source.filename == "slow.png"
    assert isinstance(error, JobTimeoutError)
    service.release(batch)


@pytest.mark.asyncio
async def test_staging_failure_only_fails_that_file(settings):
    class FlakyStorage(LocalScratchStorage):
        def persist(self, handle, name, data):
            if name == "b.pdf":
                raise StorageError("could not write b.pdf: No space left on device")
            return super().persist(handle, name, data)

    service = BatchConversionService(FlakyStorage(settings), FakeConverter(), ZipArchiver())

    batch = await service.convert_batch(uploads("a.png", "b.png"), "pdf")

    assert batch.result.output_names == ["a.pdf"]
    assert isinstance(batch.result.failed[0][1], StorageError)
    assert archive_names(service, batch) == ["a.pdf"]


@pytest.mark.asyncio
async def test_cancellation_still_releases(storage, settings):
    started = threading.Event()
    unblock = threading.Event()

    class BlockingConverter(FakeConverter):
        def convert(self, data, filename, target_format, *, source_format=None):
            started.set()
            unblock.wait(timeout=5)
            return b"late"

    service = BatchConversionService(storage, BlockingConverter(), ZipArchiver())
    task = asyncio.create_task(service.convert_batch(uploads("a.png"), "pdf"))
    try:
        while not started.is_set():
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert batch_folders(settings) == []
    finally:
        unblock.set()


@pytest.mark.asyncio
async def test_assembly_failure_releases(storage, settings):
    class BrokenArchiver(ZipArchiver):
        def assemble(self, entries):
            raise ArchiveError("could not build archive: disk full")

    service = BatchConversionService(storage, FakeConverter(), BrokenArchiver())

    with pytest.raises(ArchiveError):
        await service.convert_batch(uploads("a.png"), "pdf")

    assert batch_folders(settings) == []


@pytest.mark.asyncio
async def test_stream_failure_aborts_and_releases(storage, settings):
    class MidStreamFailure(ZipArchiver):
        def iter_chunks(self, archive):
            archive.close()
            yield b"PK\x03\x04"
            raise ArchiveError("archive stream failed after it started")

    service = BatchConversionService(storage, FakeConverter(), MidStreamFailure())
    batch = await service.convert_batch(uploads("a.png"), "pdf")

    chunks = service.stream(batch)
    assert next(chunks) == b"PK\x03\x04"
    with pytest.raises(ArchiveError):
        next(chunks)

    assert batch_folders(settings) == []


@pytest.mark.asyncio
async def test_release_after_stream_is_harmless(service, settings):
    batch = await service.convert_batch(uploads("a.png"), "pdf")

    b"".join(service.stream(batch))
    service.release(batch)

    assert batch_folders(settings) == []


@pytest.mark.asyncio
async def test_unexpected_converter_error_only_fails_that_file(storage, settings):
    converter = FakeConverter(failures={"bad.png": AttributeError("'NoneType' object has no attribute 'get'")})
    service = BatchConversionService(storage, converter, ZipArchiver(), workers=2)

    batch = await service.convert_batch(uploads("good.png", "bad.png"), "pdf")

    assert batch.result.output_names == ["good.pdf"]
    [(source, error)] = batch.result.failed
    assert source.filename == "bad.png"
    assert isinstance(error, RemoteServiceError)
    assert "AttributeError" in error.message
    assert archive_names(service, batch) == ["good.pdf"]


@pytest.mark.asyncio
async def test_worker_pool_bounds_concurrent_conversions(storage, settings):
    class PeakConverter(FakeConverter):
        def __init__(self):
            super().__init__()
            self.active = 0
            self.peak = 0
            self._gauge = threading.Lock()

        def convert(self, data, filename, target_format, *, source_format=None):
            with self._gauge:
                self.active += 1
                self.peak = max(self.peak, self.active)
            try:
                time.sleep(0.05)
                return super().convert(data, filename, target_format, source_format=source_format)
            finally:
                with self._gauge:
                    self.active -= 1

    converter = PeakConverter()
    service = BatchConversionService(storage, converter, ZipArchiver(), workers=2)

    batch = await service.convert_batch(uploads(*(f"f{i}.png" for i in range(5))), "pdf")

    assert len(batch.result.succeeded) == 5
    assert converter.peak <= 2
    service.release(batch)


@pytest.mark.asyncio
async def test_staging_failure_of_every_file_is_storage_error(settings):
    class FullDisk(LocalScratchStorage):
        def persist(self, handle, name, data):
            raise StorageError(f"could not write {name}: No space left on device")

    service = BatchConversionService(FullDisk(settings), FakeConverter(), ZipArchiver())

    with pytest.raises(StorageError) as excinfo:
        await service.convert_batch(uploads("only.png"), "pdf")

    assert "only.pdf" in excinfo.value.message
    assert batch_folders(settings) == []


@pytest.mark.asyncio
async def test_mixed_total_failure_is_batch_failed(settings):
    class FlakyStorage(LocalScratchStorage):
        def persist(self, handle, name, data):
            raise StorageError(f"could not write {name}: No space left on device")

    converter = FakeConverter(failures={"b.png": ProcessingError("conversion failed for job j2")})
    service = BatchConversionService(FlakyStorage(settings), converter, ZipArchiver())

    with pytest.raises(BatchFailedError):
        await service.convert_batch(uploads("a.png", "b.png"), "pdf")

    assert batch_folders(settings) == []
