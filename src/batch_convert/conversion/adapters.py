import secrets
import shutil
import tempfile
import time
import zipfile
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Callable, Iterator, Sequence

import requests
from loguru import logger

from ..config import Settings
from .errors import (
    ArchiveError,
    AuthError,
    ConfigurationError,
    DownloadError,
    JobTimeoutError,
    ProcessingError,
    StorageError,
    SubmissionError,
)
from .interfaces import ArchiveGateway, ConverterGateway, StorageGateway
from .models import BatchHandle, ConversionJob, JobState


def _mapping(value: object) -> dict:
    return value if isinstance(value, dict) else {}


def _mappings(value: object) -> list[dict]:
    # Entries of the wrong shape are skipped rather than trusted.
    return [v for v in value if isinstance(v, dict)] if isinstance(value, list) else []


class CloudConvertClient(ConverterGateway):
    """Blocking client for the CloudConvert v2 job API.

    One `convert` call drives a single remote job through
    created -> uploading -> polling -> finished/errored/timed_out and keeps no
    state once it returns. The API key comes from the Settings passed in and is
    only ever placed in the Authorization header.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings
        self._session = session
        self._sleep = sleep

    def ensure_configured(self) -> None:
        if not self._settings.has_credentials:
            raise ConfigurationError("CLOUDCONVERT_API_KEY not set")

    def convert(
        self,
        data: bytes,
        filename: str,
        target_format: str,
        *,
        source_format: str | None = None,
    ) -> bytes:
        if not self._settings.has_credentials:
            raise AuthError("conversion service credential is not configured")
        headers = {"Authorization": f"Bearer {self._settings.api_key}"}

        session = self._session or requests.Session()
        try:
            job, upload_form = self._create_job(session, headers, target_format, source_format)
            job.state = JobState.UPLOADING
            self._upload(session, job, upload_form, data, filename)
            job.state = JobState.POLLING
            self._poll(session, headers, job)
            return self._download(session, job)
        finally:
            if self._session is None:
                session.close()

    def _create_job(
        self,
        session: requests.Session,
        headers: dict[str, str],
        target_format: str,
        source_format: str | None,
    ) -> tuple[ConversionJob, dict[str, object]]:
        convert_task: dict[str, object] = {
            "operation": "convert",
            "input": ["upload"],
            "output_format": target_format.lstrip("."),
        }
        if source_format:
            convert_task["input_format"] = source_format
        body = {
            "tasks": {
                "upload": {"operation": "import/upload"},
                "convert": convert_task,
                "export": {"operation": "export/url", "input": ["convert"]},
            }
        }
        try:
            resp = session.post(
                f"{self._settings.api_base}/jobs",
                json=body,
                headers=headers,
                timeout=self._settings.request_timeout,
            )
        except requests.RequestException as e:
            raise SubmissionError(f"could not reach conversion service: {type(e).__name__}") from e
        if resp.status_code in (401, 403):
            raise AuthError(f"conversion service rejected the credential ({resp.status_code})")
        if not resp.ok:
            raise SubmissionError(f"job creation failed ({resp.status_code})")

        try:
            data = resp.json()["data"]
            job_id = str(data["id"])
        except (ValueError, KeyError, TypeError) as e:
            raise SubmissionError("job creation returned an unexpected payload") from e

        upload_task = next(
            (t for t in _mappings(data.get("tasks")) if t.get("operation") == "import/upload"), {}
        )
        form = _mapping(_mapping(upload_task.get("result")).get("form"))
        if not form.get("url"):
            raise SubmissionError(f"job {job_id} has no upload form")

        job = ConversionJob(job_id=job_id)
        logger.debug("Created remote job {} ({} -> {})", job_id, source_format or "?", target_format)
        return job, form

    def _upload(
        self,
        session: requests.Session,
        job: ConversionJob,
        form: dict[str, object],
        data: bytes,
        filename: str,
    ) -> None:
        # The form fields are signed by the service; send them back untouched.
        parameters = {k: str(v) for k, v in _mapping(form.get("parameters")).items()}
        try:
            resp = session.post(
                str(form["url"]),
                data=parameters,
                files={"file": (filename, data)},
                timeout=self._settings.request_timeout,
            )
        except requests.RequestException as e:
            raise SubmissionError(f"upload for job {job.job_id} failed: {type(e).__name__}") from e
        if not resp.ok:
            raise SubmissionError(f"upload for job {job.job_id} failed ({resp.status_code})")

    def _poll(self, session: requests.Session, headers: dict[str, str], job: ConversionJob) -> None:
        url = f"{self._settings.api_base}/jobs/{job.job_id}"
        attempts = self._settings.poll_max_attempts
        for attempt in range(1, attempts + 1):
            self._sleep(self._settings.poll_interval)
            try:
                resp = session.get(url, headers=headers, timeout=self._settings.request_timeout)
            except requests.RequestException as e:
                logger.warning("Status check {}/{} for job {} failed: {}", attempt, attempts, job.job_id, type(e).__name__)
                continue
            if resp.status_code in (401, 403):
                raise AuthError(f"conversion service rejected the credential ({resp.status_code})")
            if resp.status_code >= 500:
                logger.warning("Status check {}/{} for job {} returned {}", attempt, attempts, job.job_id, resp.status_code)
                continue
            if not resp.ok:
                raise ProcessingError(f"status check for job {job.job_id} failed ({resp.status_code})")

            try:
                data = resp.json()["data"]
            except (ValueError, KeyError, TypeError) as e:
                raise ProcessingError(f"job {job.job_id} returned an unexpected status payload") from e
            if not isinstance(data, dict):
                raise ProcessingError(f"job {job.job_id} returned an unexpected status payload")

            job.remote_status = data.get("status")
            if job.remote_status == "finished":
                job.state = JobState.FINISHED
                job.export_url = self._export_url(data)
                return
            if job.remote_status == "error":
                job.state = JobState.ERRORED
                raise ProcessingError(self._failure_message(job.job_id, data))

        job.state = JobState.TIMED_OUT
        raise JobTimeoutError(f"job {job.job_id} did not finish after {attempts} status checks")

    def _download(self, session: requests.Session, job: ConversionJob) -> bytes:
        if not job.export_url:
            raise DownloadError(f"job {job.job_id} finished without an export file")
        try:
            resp = session.get(job.export_url, timeout=self._settings.request_timeout)
        except requests.RequestException as e:
            raise DownloadError(f"download for job {job.job_id} failed: {type(e).__name__}") from e
        if not resp.ok:
            raise DownloadError(f"download for job {job.job_id} failed ({resp.status_code})")
        return resp.content

    @staticmethod
    def _export_url(data: dict[str, object]) -> str | None:
        for task in _mappings(data.get("tasks")):
            if task.get("operation") != "export/url":
                continue
            files = _mappings(_mapping(task.get("result")).get("files"))
            if files and files[0].get("url"):
                return str(files[0]["url"])
        return None

    @staticmethod
    def _failure_message(job_id: str, data: dict[str, object]) -> str:
        for task in _mappings(data.get("tasks")):
            if task.get("status") == "error":
                detail = task.get("message") or task.get("code") or "unknown error"
                return f"conversion failed for job {job_id}: {detail}"
        return f"conversion failed for job {job_id}"


class LocalScratchStorage(StorageGateway):
    """Per-batch folders under the uploads and output scratch directories."""

    def __init__(self, settings: Settings) -> None:
        self._uploads = Path(settings.uploads_dir).resolve()
        self._output = Path(settings.output_dir).resolve()

    def ensure_roots(self) -> None:
        for d in (self._uploads, self._output):
            d.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def new_batch_id() -> str:
        return f"{int(time.time() * 1000)}-{secrets.token_hex(4)}"

    def allocate_batch_folder(self) -> BatchHandle:
        for _ in range(3):
            batch_id = self.new_batch_id()
            handle = BatchHandle(
                batch_id=batch_id,
                uploads_dir=self._uploads / batch_id,
                output_dir=self._output / batch_id,
            )
            try:
                handle.uploads_dir.mkdir(parents=True, exist_ok=False)
            except FileExistsError:
                continue
            except OSError as e:
                raise StorageError(f"could not create batch folder: {e.strerror}") from e
            try:
                handle.output_dir.mkdir(parents=True, exist_ok=False)
            except OSError as e:
                self.release(handle)
                raise StorageError(f"could not create batch folder: {e.strerror}") from e
            return handle
        raise StorageError("could not allocate a unique batch folder")

    def persist_upload(self, handle: BatchHandle, index: int, filename: str, data: bytes) -> Path:
        safe = PurePosixPath(filename.replace("\\", "/")).name or "upload"
        return self._write(handle.uploads_dir / f"{index:02d}-{safe}", data)

    def persist(self, handle: BatchHandle, name: str, data: bytes) -> Path:
        if PurePosixPath(name).name != name or name in {"", ".", ".."}:
            raise StorageError(f"refusing to write outside the batch folder: {name!r}")
        return self._write(handle.output_dir / name, data)

    def read_all(self, handle: BatchHandle) -> list[tuple[str, Path]]:
        try:
            return sorted((p.name, p) for p in handle.output_dir.iterdir() if p.is_file())
        except OSError as e:
            raise StorageError(f"could not read batch {handle.batch_id}: {e.strerror}") from e

    def release(self, handle: BatchHandle) -> None:
        for d in (handle.uploads_dir, handle.output_dir):
            if not d.exists():
                continue
            try:
                shutil.rmtree(d)
            except OSError as e:
                logger.error("Failed to remove {} for batch {}: {}", d, handle.batch_id, e)

    @staticmethod
    def _write(path: Path, data: bytes) -> Path:
        try:
            path.write_bytes(data)
        except OSError as e:
            raise StorageError(f"could not write {path.name}: {e.strerror}") from e
        except ValueError as e:
            raise StorageError(f"could not write {path.name!r}: {e}") from e
        return path


class ZipArchiver(ArchiveGateway):
    def __init__(
        self,
        *,
        compresslevel: int = 9,
        chunk_size: int = 64 * 1024,
        spool_max_size: int = 16 * 1024 * 1024,
    ) -> None:
        self._compresslevel = compresslevel
        self._chunk_size = chunk_size
        self._spool_max_size = spool_max_size

    def assemble(self, entries: Sequence[tuple[str, Path | bytes]]) -> BinaryIO:
        """Write every entry exactly once into a zip and return it rewound."""
        archive = tempfile.SpooledTemporaryFile(max_size=self._spool_max_size)
        seen: set[str] = set()
        try:
            with zipfile.ZipFile(
                archive, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=self._compresslevel
            ) as zf:
                for name, payload in entries:
                    if name in seen:
                        raise ArchiveError(f"duplicate archive entry '{name}'")
                    seen.add(name)
                    if isinstance(payload, bytes):
                        zf.writestr(name, payload)
                    else:
                        zf.write(payload, arcname=name)
        except ArchiveError:
            archive.close()
            raise
        except (OSError, ValueError, zipfile.LargeZipFile) as e:
            archive.close()
            raise ArchiveError(f"could not build archive: {e}") from e
        archive.seek(0)
        return archive  # type: ignore[return-value]

    def iter_chunks(self, archive: BinaryIO) -> Iterator[bytes]:
        try:
            while True:
                try:
                    chunk = archive.read(self._chunk_size)
                except (OSError, ValueError) as e:
                    raise ArchiveError("archive stream failed after it started") from e
                if not chunk:
                    return
                yield chunk
        finally:
            archive.close()
