# consentledger/blobstore.py
"""
Content-addressed blob storage for encrypted record payloads.

Only ciphertext is ever handed to a blob store. The content id is derived from
the stored bytes, so the same blob always lands under the same id.
"""

import os
import re
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

from consentledger.core.errors import NetworkError, NotFound, ValidationError
from consentledger.core.hashing import content_id
from consentledger.core.types import ContentId
from consentledger.log import get_logger

log = get_logger("blobstore")

_CID_RE = re.compile(r"^b-[0-9a-f]{64}$")


def is_content_id(value: str) -> bool:
    return bool(_CID_RE.match(value or ""))


class BlobStore(ABC):
    @abstractmethod
    def put(self, data: bytes) -> ContentId:
        """Store bytes and return their content id."""

    @abstractmethod
    def get(self, cid: ContentId) -> bytes:
        """Return the bytes for `cid`, raising NotFound if absent."""

    @abstractmethod
    def exists(self, cid: ContentId) -> bool:
        pass


class InMemoryBlobStore(BlobStore):
    def __init__(self):
        self._blobs: Dict[ContentId, bytes] = {}
        self._lock = threading.Lock()

    def put(self, data: bytes) -> ContentId:
        cid = content_id(bytes(data))
        with self._lock:
            self._blobs[cid] = bytes(data)
        return cid

    def get(self, cid: ContentId) -> bytes:
        with self._lock:
            data = self._blobs.get(cid)
        if data is None:
            raise NotFound(f"Blob not found: {cid}")
        return data

    def exists(self, cid: ContentId) -> bool:
        with self._lock:
            return cid in self._blobs


class FileBlobStore(BlobStore):
    """One file per blob under `root`, named by content id."""

    def __init__(self, root: Optional[str] = None):
        root = root or os.getenv("CONSENT_BLOB_DIR") or str(Path.cwd() / "consent-blobs")
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, cid: ContentId) -> Path:
        if not is_content_id(cid):
            raise ValidationError(f"Malformed content id: {cid!r}")
        return self.root / cid

    def put(self, data: bytes) -> ContentId:
        cid = content_id(bytes(data))
        path = self._path(cid)
        if not path.exists():
            tmp = path.with_suffix(".tmp")
            tmp.write_bytes(bytes(data))
            os.replace(tmp, path)
            log.debug("blob stored: %s (%d bytes)", cid, len(data))
        return cid

    def get(self, cid: ContentId) -> bytes:
        try:
            path = self._path(cid)
        except ValidationError:
            raise NotFound(f"Blob not found: {cid}")
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise NotFound(f"Blob not found: {cid}")
        except OSError as e:
            raise NetworkError(f"Blob {cid} could not be read: {e}") from e

    def exists(self, cid: ContentId) -> bool:
        return is_content_id(cid) and (self.root / cid).exists()


def create_blobstore(uri: str) -> BlobStore:
    """Factory for blob stores: `memory:`, `file://path`, or a plain directory path."""
    if uri in ("memory:", ":memory:"):
        return InMemoryBlobStore()
    if uri.startswith("file://"):
        return FileBlobStore(uri[len("file://"):])
    return FileBlobStore(uri)
