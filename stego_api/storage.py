import logging
import re
import threading
import time
import uuid
from pathlib import Path
from typing import Iterable, List, Union

from .errors import FilesystemError, NotFound

logger = logging.getLogger(__name__)

OUTPUT_NAMES = {
    "encode": ("stego", ".png"),
    "decode": ("extracted", ".bin"),
}
MAX_NAME_LEN = 100
# NAME_MAX on common filesystems
MAX_OUTPUT_NAME_LEN = 255

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")

_STAMP_LOCK = threading.Lock()
_LAST_STAMP = 0


def next_stamp() -> int:
    """Millisecond timestamp, strictly increasing across the process."""
    global _LAST_STAMP
    with _STAMP_LOCK:
        _LAST_STAMP = max(int(time.time() * 1000), _LAST_STAMP + 1)
        return _LAST_STAMP


def sanitize_filename(name: str) -> str:
    base = re.split(r"[\\/]", name or "")[-1]
    base = _UNSAFE_CHARS.sub("_", base).lstrip(".")
    return base[-MAX_NAME_LEN:] or "upload"


class ArtifactStore:
    def __init__(self, staging_dir: Path, output_dir: Path):
        self.staging_dir = Path(staging_dir).resolve()
        self.output_dir = Path(output_dir).resolve()

    def ensure_directories(self) -> None:
        for d in (self.staging_dir, self.output_dir):
            try:
                d.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise FilesystemError(f"cannot create directory {d}: {exc}") from exc
            if not d.is_dir():
                raise FilesystemError(f"{d} is not a directory")

    def new_staging_path(self, original_name: str) -> Path:
        safe = sanitize_filename(original_name)
        return self.staging_dir / f"{next_stamp()}-{uuid.uuid4().hex[:8]}-{safe}"

    def new_output_path(self, operation: str) -> Path:
        prefix, ext = OUTPUT_NAMES[operation]
        while True:
            p = self.output_dir / f"{prefix}-{next_stamp()}{ext}"
            # a previous process may have left a file with the same stamp
            if not p.exists():
                return p

    def resolve_output(self, filename: str) -> Path:
        if (
            not filename
            or filename in {".", ".."}
            or "/" in filename
            or "\\" in filename
            or "\x00" in filename
            or len(filename) > MAX_OUTPUT_NAME_LEN
        ):
            raise NotFound("File not found")

        try:
            candidate = (self.output_dir / filename).resolve()
            found = candidate.parent == self.output_dir and candidate.is_file()
        except OSError as exc:
            logger.debug("Resolving %r failed: %s", filename, exc)
            found = False
        if not found:
            raise NotFound("File not found")
        return candidate

    def discard(self, paths: Iterable[Union[str, Path]]) -> List[Path]:
        """Delete paths, returning the ones that could not be removed."""
        failed = []
        for p in paths:
            p = Path(p)
            try:
                p.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Cleanup of %s failed: %s", p, exc)
                failed.append(p)
        return failed

    def purge_outputs(self, max_age_sec: float) -> int:
        cutoff = time.time() - max_age_sec
        removed = 0
        for p in self.output_dir.iterdir():
            try:
                if p.is_file() and p.stat().st_mtime < cutoff:
                    p.unlink()
                    removed += 1
            except OSError as exc:
                logger.warning("Purge of %s failed: %s", p, exc)
        if removed:
            logger.info("Purged %d output artifacts older than %.0fs", removed, max_age_sec)
        return removed
