"""Whole-file persistence primitives.

Every document Notevault keeps on disk is replaced as a unit: the new bytes
go to a temporary file in the target directory, are flushed to stable
storage and then renamed over the old file. Readers therefore see either the
previous version or the new one, never a torn write.

``DocumentStore`` is the small key-value capability the registries depend
on. ``JsonDirectoryStore`` binds it to one JSON file per key;
``InMemoryDocumentStore`` lives in ``tests/fakes.py``.
"""
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Protocol, Union

from notevault.exceptions import ErrorCode, MalformedDocumentError, StorageError

logger = logging.getLogger(__name__)

JSON_SUFFIX = ".json"


def atomic_write_bytes(path: Union[str, Path], data: bytes) -> None:
    """Atomically replace ``path`` with ``data``.

    Raises:
        StorageError: If the file cannot be written.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
    )
    try:
        with os.fdopen(fd, "wb") as tmp:
            tmp.write(data)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_name, path)
    except OSError as e:
        raise StorageError(
            f"Failed to write {path.name}",
            operation="write",
            path=str(path),
            code=ErrorCode.STORAGE_WRITE_FAILED,
            original_error=e,
        ) from e
    finally:
        if os.path.exists(tmp_name):
            try:
                os.unlink(tmp_name)
            except OSError as e:
                logger.warning(f"Could not remove temp file {tmp_name}: {e}")


def atomic_write_text(path: Union[str, Path], text: str) -> None:
    """Atomically replace ``path`` with UTF-8 ``text``."""
    atomic_write_bytes(path, text.encode("utf-8"))


def atomic_write_json(path: Union[str, Path], document: Any) -> None:
    """Atomically replace ``path`` with ``document`` serialized as JSON."""
    atomic_write_text(path, json.dumps(document, indent=2, ensure_ascii=False))


def read_json(path: Union[str, Path]) -> Optional[Any]:
    """Read a JSON document.

    Returns:
        The parsed document, or None if the file does not exist.

    Raises:
        MalformedDocumentError: If the file exists but is not valid JSON.
        StorageError: If the file exists but cannot be read.
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = f.read()
    except FileNotFoundError:
        return None
    except OSError as e:
        raise StorageError(
            f"Failed to read {path.name}",
            operation="read",
            path=str(path),
            original_error=e,
        ) from e
    try:
        return json.loads(raw)
    except ValueError as e:
        raise MalformedDocumentError(path.name, original_error=e) from e


def remove_file(path: Union[str, Path]) -> bool:
    """Remove a file, tolerating its absence.

    Returns:
        True if a file was removed, False if there was nothing to remove.
    """
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        raise StorageError(
            "Failed to delete file",
            operation="delete",
            path=str(path),
            code=ErrorCode.STORAGE_DELETE_FAILED,
            original_error=e,
        ) from e


class DocumentStore(Protocol):
    """Key-value persistence for small JSON documents."""

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the document for ``key`` or None."""
        ...

    def put(self, key: str, document: Dict[str, Any]) -> None:
        """Persist ``document`` under ``key``, replacing any previous one."""
        ...

    def delete(self, key: str) -> bool:
        """Remove ``key``; returns False when it was already absent."""
        ...

    def keys(self) -> Iterator[str]:
        """Iterate over stored keys."""
        ...


class JsonDirectoryStore:
    """DocumentStore backed by ``<root>/<key>.json`` files."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self._lock = threading.Lock()

    def _path(self, key: str) -> Path:
        return self.root / f"{key}{JSON_SUFFIX}"

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        document = read_json(self._path(key))
        if document is not None and not isinstance(document, dict):
            raise MalformedDocumentError(f"{key}{JSON_SUFFIX}")
        return document

    def put(self, key: str, document: Dict[str, Any]) -> None:
        with self._lock:
            atomic_write_json(self._path(key), document)

    def delete(self, key: str) -> bool:
        with self._lock:
            return remove_file(self._path(key))

    def keys(self) -> Iterator[str]:
        if not self.root.is_dir():
            return iter(())
        return (
            p.name[: -len(JSON_SUFFIX)]
            for p in sorted(self.root.glob(f"*{JSON_SUFFIX}"))
            if not p.name.startswith(".")
        )
