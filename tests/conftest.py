"""Shared fixtures for the batch conversion tests."""

import threading
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from batch_convert.config import Settings
from batch_convert.conversion import BatchConversionService, ConfigurationError
from batch_convert.conversion.adapters import LocalScratchStorage, ZipArchiver


class FakeConverter:
    """In-process stand-in for the remote client.

    `failures` maps an upload filename to the exception its conversion raises.
    """

    def __init__(self, failures: dict[str, Exception] | None = None, configured: bool = True) -> None:
        self.failures = failures or {}
        self.configured = configured
        self.calls: list[tuple[str, str, str | None]] = []
        self._lock = threading.Lock()

    def ensure_configured(self) -> None:
        if not self.configured:
            raise ConfigurationError("CLOUDCONVERT_API_KEY not set")

    def convert(self, data, filename, target_format, *, source_format=None):
        with self._lock:
            self.calls.append((filename, target_format, source_format))
        if filename in self.failures:
            raise self.failures[filename]
        return b"converted:" + data + b":" + target_format.encode()


def make_response(status_code: int = 200, json_body=None, content: bytes = b"") -> MagicMock:
    resp = MagicMock()
    resp.status_code = status_code
    resp.ok = status_code < 400
    resp.json.return_value = json_body
    resp.content = content
    return resp


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        api_key="sk-test-secret",
        api_base="https://api.example.test/v2",
        poll_interval=0.0,
        poll_max_attempts=5,
        uploads_dir=tmp_path / "uploads",
        output_dir=tmp_path / "output",
    )


@pytest.fixture
def storage(settings: Settings) -> LocalScratchStorage:
    return LocalScratchStorage(settings)


@pytest.fixture
def converter() -> FakeConverter:
    return FakeConverter()


@pytest.fixture
def service(storage, converter, settings) -> BatchConversionService:
    return BatchConversionService(
        storage=storage,
        converter=converter,
        archiver=ZipArchiver(),
        max_files=settings.max_files,
        workers=2,
    )


def batch_folders(settings: Settings) -> list[Path]:
    """Every per-batch folder currently on disk, under either scratch root."""
    found: list[Path] = []
    for root in (settings.uploads_dir, settings.output_dir):
        if root.exists():
            found.extend(p for p in root.iterdir() if p.is_dir())
    return found
