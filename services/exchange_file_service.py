"""
Exchange file service: chunked uploads in the exchange directory.

The ERP uploads each document in one or more `file` requests; chunks are
appended in arrival order. There is no end-of-file marker, a file is
complete when the ERP asks for it to be imported.
"""

from pathlib import Path, PurePosixPath
import time
from typing import Optional
import structlog

from config.settings import Settings, get_settings
from exceptions import (
    EmptyPayloadError,
    ExchangeFileNotFoundError,
    InvalidFilenameError,
    MissingFilenameError,
)

logger = structlog.get_logger(__name__)

MIN_FILE_LIMIT = 1024 * 1024
MAX_FILE_LIMIT = 100 * 1024 * 1024

_SIZE_UNITS = {
    "k": 1024,
    "m": 1024 * 1024,
    "g": 1024 * 1024 * 1024,
}


def parse_size(size: str) -> int:
    """
    Parse a size with an optional K/M/G suffix into bytes.

    "64M" → 67108864, "512k" → 524288, "1000" → 1000
    """
    size = (size or "").strip()
    if not size:
        return 0

    multiplier = _SIZE_UNITS.get(size[-1].lower(), 1)
    digits = size[:-1] if multiplier != 1 else size

    try:
        return int(digits) * multiplier
    except ValueError:
        return 0


def compute_file_limit(upload_max: str, post_max: str, memory_limit: str) -> int:
    """
    Largest chunk the ERP may send.

    min(upload limit, body limit, memory / 4), clamped to [1 MiB, 100 MiB].
    """
    limit = min(
        parse_size(upload_max),
        parse_size(post_max),
        parse_size(memory_limit) // 4,
    )
    return max(MIN_FILE_LIMIT, min(limit, MAX_FILE_LIMIT))


def validate_relative_path(filename: Optional[str]) -> PurePosixPath:
    """
    Normalize an uploaded filename into a safe relative path.

    Subdirectories are allowed ("import_files/ab/photo.jpg"); absolute
    paths and parent references are not.

    Raises:
        MissingFilenameError: Empty filename
        InvalidFilenameError: Absolute path, drive letter, '..' or NUL
    """
    if filename is None or not filename.strip():
        raise MissingFilenameError()

    normalized = filename.strip().replace("\\", "/")

    if "\x00" in normalized:
        raise InvalidFilenameError(filename)

    candidate = PurePosixPath(normalized)
    if candidate.is_absolute() or (candidate.parts and ":" in candidate.parts[0]):
        raise InvalidFilenameError(filename)
    if any(part == ".." for part in candidate.parts):
        raise InvalidFilenameError(filename)

    parts = [part for part in candidate.parts if part not in (".", "")]
    if not parts:
        raise InvalidFilenameError(filename)

    return PurePosixPath(*parts)


class ExchangeFileService:
    """Reads and writes files under the exchange directory."""

    def __init__(
        self,
        base_dir: Optional[Path] = None,
        settings: Optional[Settings] = None,
        log=None
    ):
        self.settings = settings or get_settings()
        self.base_dir = Path(base_dir or self.settings.exchange_dir)
        self.logger = log or logger

    def resolve(self, filename: Optional[str]) -> Path:
        """
        Absolute path of an exchange file.

        Raises:
            MissingFilenameError, InvalidFilenameError
        """
        relative = validate_relative_path(filename)
        base = self.base_dir.resolve()
        target = (base / relative).resolve()

        # Symlinks inside the directory must not lead out of it
        if target != base and base not in target.parents:
            raise InvalidFilenameError(filename)

        return target

    # ===================
    # WRITE
    # ===================

    def append_chunk(self, filename: Optional[str], content: bytes, truncate: bool = False) -> int:
        """
        Append one chunk to a file, creating parent directories.

        Args:
            filename: Relative path as sent by the ERP
            content: Chunk bytes
            truncate: Start the file over instead of appending

        Returns:
            File size after the write

        Raises:
            MissingFilenameError, InvalidFilenameError, EmptyPayloadError
        """
        target = self.resolve(filename)

        if not content:
            raise EmptyPayloadError(filename)

        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "wb" if truncate else "ab") as f:
            f.write(content)

        size = target.stat().st_size

        self.logger.info(
            "chunk_received",
            filename=filename,
            chunk_size=len(content),
            file_size=size,
            truncated=truncate
        )
        return size

    def remove(self, filename: str) -> None:
        target = self.resolve(filename)
        if target.is_file():
            target.unlink()
            self.logger.debug("exchange_file_removed", filename=filename)

    def cleanup_stale(self, max_age_seconds: int, now: Optional[float] = None) -> int:
        """
        Remove files older than max_age_seconds, recursively.

        Returns:
            Number of files removed
        """
        if not self.base_dir.is_dir():
            return 0

        now = now if now is not None else time.time()
        removed = 0

        for path in self.base_dir.rglob("*"):
            if not path.is_file():
                continue
            if now - path.stat().st_mtime > max_age_seconds:
                path.unlink()
                removed += 1

        if removed:
            self.logger.info("stale_exchange_files_removed", count=removed)
        return removed

    # ===================
    # READ
    # ===================

    def exists(self, filename: str) -> bool:
        return self.resolve(filename).is_file()

    def read(self, filename: str) -> bytes:
        """
        Raises:
            ExchangeFileNotFoundError: File was never uploaded
        """
        target = self.resolve(filename)
        if not target.is_file():
            raise ExchangeFileNotFoundError(filename)
        return target.read_bytes()

    def file_limit(self) -> int:
        return compute_file_limit(
            self.settings.upload_max_filesize,
            self.settings.post_max_size,
            self.settings.memory_limit,
        )
