import os
from dataclasses import dataclass, field
from pathlib import Path


def _flag(value: str) -> bool:
    return value.lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, built once at start-up and passed down explicitly."""

    # Never part of repr so it cannot leak into tracebacks or log lines.
    api_key: str | None = field(default=None, repr=False)
    api_base: str = "https://api.cloudconvert.com/v2"
    poll_interval: float = 2.0
    poll_max_attempts: int = 60
    request_timeout: float = 60.0
    max_files: int = 20
    convert_workers: int = 4
    uploads_dir: Path = Path("./uploads")
    output_dir: Path = Path("./output")
    log_level: str = "INFO"
    log_dir: Path | None = None
    host: str = "0.0.0.0"
    port: int = 5000
    reload: bool = False

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key)

    @classmethod
    def from_env(cls) -> "Settings":
        log_dir = os.getenv("LOG_DIR", "").strip()
        return cls(
            api_key=os.getenv("CLOUDCONVERT_API_KEY") or None,
            api_base=os.getenv("CLOUDCONVERT_API_BASE", "https://api.cloudconvert.com/v2").rstrip("/"),
            poll_interval=float(os.getenv("POLL_INTERVAL_SEC", "2")),
            poll_max_attempts=int(os.getenv("POLL_MAX_ATTEMPTS", "60")),
            request_timeout=float(os.getenv("REQUEST_TIMEOUT_SEC", "60")),
            max_files=int(os.getenv("MAX_FILES", "20")),
            convert_workers=max(1, int(os.getenv("CONVERT_WORKERS", "4"))),
            uploads_dir=Path(os.getenv("UPLOADS_DIR", "./uploads")).resolve(),
            output_dir=Path(os.getenv("OUTPUT_DIR", "./output")).resolve(),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_dir=Path(log_dir).resolve() if log_dir else None,
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "5000")),
            reload=_flag(os.getenv("RELOAD", "false")),
        )

