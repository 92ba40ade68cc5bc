# tests/test_blobstore.py
from pathlib import Path

import pytest

from consentledger.blobstore import (
    BlobStore,
    FileBlobStore,
    InMemoryBlobStore,
    create_blobstore,
    is_content_id,
)
from consentledger.core.errors import NetworkError, NotFound


@pytest.fixture(params=["memory", "file"])
def blobs(request, tmp_path: Path) -> BlobStore:
    if request.param == "memory":
        return InMemoryBlobStore()
    return FileBlobStore(str(tmp_path / "blobs"))


def test_put_get(blobs: BlobStore):
    cid = blobs.put(b"ciphertext")
    assert is_content_id(cid)
    assert blobs.get(cid) == b"ciphertext"
    assert blobs.exists(cid)


def test_identical_bytes_identical_id(blobs: BlobStore):
    assert blobs.put(b"same") == blobs.put(b"same")
    assert blobs.put(b"same") != blobs.put(b"different")


def test_missing_blob_not_found(blobs: BlobStore):
    with pytest.raises(NotFound):
        blobs.get("b-" + "0" * 64)
    with pytest.raises(NotFound):
        blobs.get("../etc/passwd")
    assert not blobs.exists("b-" + "0" * 64)


def test_file_store_survives_reopen(tmp_path: Path):
    root = tmp_path / "blobs"
    cid = FileBlobStore(str(root)).put(b"persisted")
    assert FileBlobStore(str(root)).get(cid) == b"persisted"
    assert (root / cid).exists()


def test_create_blobstore(tmp_path: Path):
    assert isinstance(create_blobstore("memory:"), InMemoryBlobStore)
    store = create_blobstore(f"file://{tmp_path / 'b'}")
    assert isinstance(store, FileBlobStore)
    assert store.root == tmp_path / "b"
    assert isinstance(create_blobstore(str(tmp_path / "c")), FileBlobStore)


def test_unreadable_blob_is_network_error(tmp_path: Path):
    store = FileBlobStore(str(tmp_path / "blobs"))
    cid = "b-" + "0" * 64
    (store.root / cid).mkdir()
    with pytest.raises(NetworkError):
        store.get(cid)
