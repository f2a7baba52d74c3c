"""Document storage for steering, plan and tasks artifacts.

Every write is a compare-and-write: the caller passes the version it read
(``None`` when it expects the document not to exist) and gets ``Conflict`` if
somebody else wrote in between. Versions are content hashes, so an
out-of-band edit of a file on disk is detected the same way.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional, Tuple, Union

from .errors import Conflict, DocumentNotFound
from .models import Document, DocumentKind, content_version

logger = logging.getLogger("spec_mcp.store")

DEFAULT_STORAGE_DIR = ".spec"

_RELATIVE_PATHS = {
    DocumentKind.STEERING_PRODUCT: Path("steering") / "product.md",
    DocumentKind.STEERING_TECH: Path("steering") / "tech.md",
    DocumentKind.STEERING_STRUCTURE: Path("steering") / "structure.md",
    DocumentKind.PLAN: Path("specs") / "plan.md",
    DocumentKind.TASKS: Path("specs") / "tasks.md",
}


class DocumentStore(ABC):
    """Versioned key-value access to documents by project identifier."""

    @abstractmethod
    def read(self, project_id: str, kind: DocumentKind) -> Document:
        """Return the document and its version.

        Raises:
            DocumentNotFound: nothing stored under ``(project_id, kind)``.
        """

    @abstractmethod
    def write(
        self,
        project_id: str,
        kind: DocumentKind,
        content: str,
        expected_version: Optional[str],
    ) -> str:
        """Store ``content`` if the current version is ``expected_version``.

        Returns:
            The new version.

        Raises:
            Conflict: the stored version differs from ``expected_version``.
        """

    def exists(self, project_id: str, kind: DocumentKind) -> bool:
        try:
            self.read(project_id, kind)
        except DocumentNotFound:
            return False
        return True

    def read_optional(self, project_id: str, kind: DocumentKind) -> Document:
        """Like :meth:`read`, but a missing document comes back with ``exists=False``."""
        try:
            return self.read(project_id, kind)
        except DocumentNotFound:
            return Document(project_id, kind, content="", version=None, exists=False)

    def location(self, project_id: str, kind: DocumentKind) -> str:
        """Path-like label used when quoting lines of a document."""
        return f"{project_id}/{_RELATIVE_PATHS[DocumentKind(kind)].as_posix()}"


class MemoryDocumentStore(DocumentStore):
    """Thread-safe in-process store."""

    def __init__(self):
        self._documents: Dict[Tuple[str, DocumentKind], str] = {}
        self._lock = threading.Lock()

    def read(self, project_id: str, kind: DocumentKind) -> Document:
        kind = DocumentKind(kind)
        with self._lock:
            content = self._documents.get((project_id, kind))
        if content is None:
            raise DocumentNotFound(project_id, kind.value)
        return Document(project_id, kind, content, content_version(content))

    def write(
        self,
        project_id: str,
        kind: DocumentKind,
        content: str,
        expected_version: Optional[str],
    ) -> str:
        kind = DocumentKind(kind)
        with self._lock:
            current = self._documents.get((project_id, kind))
            actual = content_version(current) if current is not None else None
            if actual != expected_version:
                raise Conflict(project_id, kind.value, expected_version, actual)
            self._documents[(project_id, kind)] = content
        logger.debug(f"Stored {kind.value} for '{project_id}' in memory")
        return content_version(content)


class FileDocumentStore(DocumentStore):
    """Markdown files below ``<root>/<project>/<storage_dir>``.

    Args:
        root: Directory that project identifiers are resolved against.
        storage_dir: Name of the per-project artifact directory.
        lock_timeout: Seconds to wait for the per-document write lock before
            reporting ``Conflict``.
    """

    def __init__(
        self,
        root: Union[Path, str],
        storage_dir: str = DEFAULT_STORAGE_DIR,
        lock_timeout: float = 5.0,
    ):
        self.root = Path(root).resolve()
        self.storage_dir = storage_dir
        self.lock_timeout = lock_timeout

    def project_dir(self, project_id: str) -> Path:
        """Resolve a project identifier to its directory.

        Raises:
            ValueError: the identifier points outside the store root.
        """
        if not project_id or not project_id.strip():
            raise ValueError("project_id is required")
        path = (self.root / project_id.strip()).resolve()
        if path != self.root and self.root not in path.parents:
            raise ValueError(f"Project '{project_id}' resolves outside of {self.root}")
        return path

    def path(self, project_id: str, kind: DocumentKind) -> Path:
        return self.project_dir(project_id) / self.storage_dir / _RELATIVE_PATHS[DocumentKind(kind)]

    def location(self, project_id: str, kind: DocumentKind) -> str:
        path = self.path(project_id, kind)
        try:
            return path.relative_to(self.root).as_posix()
        except ValueError:
            return str(path)

    def read(self, project_id: str, kind: DocumentKind) -> Document:
        kind = DocumentKind(kind)
        path = self.path(project_id, kind)
        try:
            content = _read_text(path)
        except FileNotFoundError:
            raise DocumentNotFound(project_id, kind.value) from None
        return Document(project_id, kind, content, content_version(content))

    def write(
        self,
        project_id: str,
        kind: DocumentKind,
        content: str,
        expected_version: Optional[str],
    ) -> str:
        kind = DocumentKind(kind)
        path = self.path(project_id, kind)
        path.parent.mkdir(parents=True, exist_ok=True)

        with self._locked(path, project_id, kind):
            try:
                actual: Optional[str] = content_version(_read_text(path))
            except FileNotFoundError:
                actual = None
            if actual != expected_version:
                raise Conflict(project_id, kind.value, expected_version, actual)
            self._atomic_write(path, content)

        logger.info(f"Wrote {kind.value} for '{project_id}' to {path}")
        return content_version(content)

    @staticmethod
    def _atomic_write(path: Path, content: str) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    @contextmanager
    def _locked(self, path: Path, project_id: str, kind: DocumentKind) -> Iterator[None]:
        """Hold an exclusive lock on ``<file>.lock`` for the compare-and-write."""
        lock_path = path.with_name(path.name + ".lock")
        deadline = time.monotonic() + self.lock_timeout
        with open(lock_path, "a+") as handle:
            while not _try_lock(handle):
                if time.monotonic() >= deadline:
                    raise Conflict(
                        project_id,
                        kind.value,
                        None,
                        None,
                        message=f"Timed out after {self.lock_timeout}s waiting for the {kind.value} write lock "
                        f"of project '{project_id}'.",
                    )
                time.sleep(0.01)
            try:
                yield
            finally:
                _unlock(handle)


def _read_text(path: Path) -> str:
    with open(path, "r", encoding="utf-8", newline="") as handle:
        return handle.read()


def _try_lock(handle) -> bool:
    try:
        import fcntl
    except ImportError:
        import msvcrt

        handle.seek(0)
        try:
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        except OSError:
            return False
        return True

    try:
        fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        return False
    return True


def _unlock(handle) -> None:
    try:
        import fcntl
    except ImportError:
        import msvcrt

        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
        return
    fcntl.flock(handle, fcntl.LOCK_UN)
