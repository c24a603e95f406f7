# file_store.py
"""
Retrieval of eBook source files by reference.

A product's ``digital_file`` is either an http(s) URL (object storage / CDN)
or a path relative to ``STORAGE_DIR/ebooks``. Either way the answer is the
file's bytes or ``SourceFileMissing``.
"""

from __future__ import annotations

import logging
from pathlib import Path

import requests

from access_errors import SourceFileMissing

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT_SECONDS = 30
USER_AGENT = "eBook-Server/1.0"


def safe_resolve_under(root: Path, ref: str) -> Path:
    """Resolve ``ref`` below ``root``; refuse anything that escapes it.

    References are always relative to ``root``: the shop stores them as
    ``/uploads/books/x.pdf``, so a leading separator is not a filesystem root.
    """
    root = Path(root).resolve()
    fp = (root / ref.lstrip("/\\")).resolve()
    if not fp.is_relative_to(root):
        raise SourceFileMissing(f"path {fp} escapes storage root {root}")
    return fp


def is_remote(ref: str) -> bool:
    return ref.startswith(("http://", "https://"))


class LocalFileStore:
    def __init__(self, root: Path):
        self.root = Path(root)

    def fetch(self, ref: str) -> bytes:
        path = safe_resolve_under(self.root, ref)
        if not path.is_file():
            raise SourceFileMissing(f"file missing on disk: {path}")
        return path.read_bytes()


class HttpFileStore:
    def __init__(self, session: requests.Session | None = None, timeout: float = DOWNLOAD_TIMEOUT_SECONDS):
        self.session = session or requests.Session()
        self.timeout = timeout

    def fetch(self, ref: str) -> bytes:
        try:
            resp = self.session.get(ref, timeout=self.timeout, headers={"User-Agent": USER_AGENT})
            resp.raise_for_status()
        except requests.RequestException as e:
            raise SourceFileMissing(f"download failed for {ref}: {e}") from e
        return resp.content


class FileStore:
    """Dispatches a reference to the remote or local backend."""

    def __init__(self, local: LocalFileStore, remote: HttpFileStore | None = None):
        self.local = local
        self.remote = remote or HttpFileStore()

    @classmethod
    def for_storage_dir(cls, storage_dir) -> "FileStore":
        return cls(LocalFileStore(Path(storage_dir) / "ebooks"))

    def _backend(self, ref: str):
        return self.remote if is_remote(ref) else self.local

    def fetch(self, ref: str) -> bytes:
        if not ref:
            raise SourceFileMissing("empty file reference")
        return self._backend(ref).fetch(ref)
