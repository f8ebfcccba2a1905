"""Scratch-directory storage for conversion requests.

Uploads are written to: {upload_dir}/{epoch_ms}-{random}{ext}
Derived files sit next to them (see StoredUpload.webp_path/optimized_path).

Names are generated to be unique, so concurrent requests share the directory
without any locking. Every file a request creates is registered with that
request's TempFileScope, which deletes them all when the request ends.

Starlette has already spooled the multipart body to its own temporary file
by the time receive() runs, so the size cap bounds the copy into the scratch
directory, not what is read off the wire. The chunk writes are plain blocking
file writes on the event loop thread.
"""
import logging
import random
import time
from pathlib import Path
from typing import List, Optional, Union

from fastapi import BackgroundTasks, UploadFile

from app.errors import CleanupFailure, MissingFile, PayloadTooLarge, TransformFailure

from .schemas import MAX_FILE_SIZE_BYTES, StoredUpload

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
_MAX_NAME_ATTEMPTS = 5


class TempFileScope:
    """Tracks the temporary files of one request and deletes them on exit.

    Leaving the scope normally hands cleanup to *background_tasks* (so the
    files go away after the response has been sent); leaving it with an
    exception, or without background tasks, cleans up immediately. Each
    deletion is independent and best-effort.

    Usage:
        with TempFileScope(background_tasks) as scope:
            path = scope.register(upload_dir / name)
            ...
    """

    def __init__(self, background_tasks: Optional[BackgroundTasks] = None) -> None:
        self._background_tasks = background_tasks
        self._paths: List[Path] = []

    def __enter__(self) -> "TempFileScope":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None and self._background_tasks is not None:
            self._background_tasks.add_task(self.cleanup)
        else:
            self.cleanup()
        return False

    @property
    def paths(self) -> List[Path]:
        return list(self._paths)

    def register(self, path: Union[str, Path]) -> Path:
        """Register *path* for deletion. Call before the file is written."""
        path = Path(path)
        if path not in self._paths:
            self._paths.append(path)
        return path

    def release(self, path: Union[str, Path]) -> Optional[CleanupFailure]:
        """Delete one registered file now instead of at scope exit."""
        path = Path(path)
        if path in self._paths:
            self._paths.remove(path)
        return _remove(path)

    def cleanup(self) -> List[CleanupFailure]:
        """Delete every registered file. Safe to call more than once."""
        paths, self._paths = self._paths, []
        failures = [f for f in (_remove(p) for p in paths) if f is not None]
        if paths:
            logger.debug(
                "Cleaned up %d temporary file(s), %d failure(s)",
                len(paths) - len(failures),
                len(failures),
            )
        return failures


def _remove(path: Path) -> Optional[CleanupFailure]:
    try:
        path.unlink()
    except FileNotFoundError:
        return None
    except OSError as e:
        failure = CleanupFailure(path=path, reason=str(e))
        logger.warning("Cleanup failed: %s", failure)
        return failure
    return None


class UploadStore:
    """Receives multipart uploads into the scratch directory."""

    _instance: Optional["UploadStore"] = None

    def __init__(
        self,
        upload_dir: Union[str, Path] = "uploads",
        max_file_size_bytes: int = MAX_FILE_SIZE_BYTES,
    ) -> None:
        self.upload_dir = Path(upload_dir).resolve()
        self.max_file_size_bytes = max_file_size_bytes
        self.ensure_upload_dir()

    @classmethod
    def get_instance(
        cls,
        upload_dir: Optional[Union[str, Path]] = None,
        max_file_size_bytes: Optional[int] = None,
    ) -> "UploadStore":
        """Get or create the singleton instance, defaulting to app config."""
        if cls._instance is None:
            if upload_dir is None or max_file_size_bytes is None:
                from app.config import get_config
                uploads = get_config().uploads
                upload_dir = upload_dir or uploads.upload_dir
                max_file_size_bytes = max_file_size_bytes or uploads.max_file_size_bytes
            cls._instance = cls(upload_dir, max_file_size_bytes)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance (for testing)."""
        cls._instance = None

    def ensure_upload_dir(self) -> None:
        self.upload_dir.mkdir(parents=True, exist_ok=True)

    def generate_filename(self, original_filename: str) -> str:
        """Timestamp plus random suffix, keeping the client's extension."""
        ext = Path(original_filename or "").suffix
        unique_suffix = f"{int(time.time() * 1000)}-{random.randint(0, 10**9)}"
        return f"{unique_suffix}{ext}"

    def _open_unique(self, original_filename: str, scope: TempFileScope):
        for _ in range(_MAX_NAME_ATTEMPTS):
            name = self.generate_filename(original_filename)
            path = self.upload_dir / name
            try:
                fh = open(path, "xb")
            except FileExistsError:
                logger.debug("Upload name collision on %s, retrying", name)
                continue
            except OSError as e:
                logger.error("Could not create upload file %s: %s", path, e)
                raise TransformFailure(str(e)) from e
            scope.register(path)
            return name, path, fh
        raise TransformFailure(f"Could not allocate a unique upload name in {self.upload_dir}")

    async def receive(self, file: Optional[UploadFile], scope: TempFileScope) -> StoredUpload:
        """Stream *file* to disk under a unique name.

        Raises:
            MissingFile: If no file was sent.
            PayloadTooLarge: If the file exceeds max_file_size_bytes. The
                partial file is already registered with *scope*.
            TransformFailure: If the file cannot be created or written.
        """
        if file is None or not file.filename:
            raise MissingFile()

        self.ensure_upload_dir()
        original_filename = file.filename or ""
        name, path, fh = self._open_unique(original_filename, scope)

        size_bytes = 0
        try:
            with fh:
                while True:
                    chunk = await file.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    size_bytes += len(chunk)
                    if size_bytes > self.max_file_size_bytes:
                        raise PayloadTooLarge(self.max_file_size_bytes)
                    fh.write(chunk)
        except OSError as e:
            logger.error("Could not write upload %s: %s", path, e)
            raise TransformFailure(str(e)) from e

        logger.info(
            "Stored upload %r (%s) as %s (%d bytes)",
            original_filename,
            file.content_type or "unknown type",
            path,
            size_bytes,
        )
        return StoredUpload(
            stored_filename=name,
            path=path,
            original_filename=original_filename,
            content_type=file.content_type,
            size_bytes=size_bytes,
        )

