import os
import shlex
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel


def _env_truthy(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes"}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    try:
        return int(raw) if raw.strip() else default
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    try:
        return float(raw) if raw.strip() else default
    except ValueError:
        return default


class Settings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 3000

    engine_path: str = "stego"
    # Extra leading arguments, e.g. an interpreter script wrapping the engine.
    engine_args: List[str] = []

    staging_dir: Path = Path("staging")
    output_dir: Path = Path("output")

    max_upload_bytes: int = 50 * 1024 * 1024
    job_timeout_sec: float = 120.0
    max_concurrent_jobs: int = 4
    max_error_chars: int = 500
    max_jobs: int = 1000
    output_ttl_hours: float = 0.0
    verify_carrier: bool = False

    redis_url: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            host=os.environ.get("STEGO_HOST", "0.0.0.0"),
            port=_env_int("STEGO_PORT", 3000),
            engine_path=os.environ.get("STEGO_ENGINE_PATH", "stego"),
            engine_args=shlex.split(os.environ.get("STEGO_ENGINE_ARGS", "")),
            staging_dir=Path(os.environ.get("STEGO_STAGING_DIR", "staging")),
            output_dir=Path(os.environ.get("STEGO_OUTPUT_DIR", "output")),
            max_upload_bytes=max(1, _env_int("STEGO_MAX_UPLOAD_MB", 50)) * 1024 * 1024,
            job_timeout_sec=max(0.0, _env_float("STEGO_JOB_TIMEOUT_SEC", 120.0)),
            max_concurrent_jobs=max(1, _env_int("STEGO_MAX_CONCURRENT_JOBS", 4)),
            max_error_chars=max(1, _env_int("STEGO_MAX_ERROR_CHARS", 500)),
            max_jobs=max(1, _env_int("STEGO_MAX_JOBS", 1000)),
            output_ttl_hours=max(0.0, _env_float("STEGO_OUTPUT_TTL_HOURS", 0.0)),
            verify_carrier=_env_truthy("STEGO_VERIFY_CARRIER", False),
            redis_url=os.environ.get("STEGO_REDIS_URL") or None,
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )
