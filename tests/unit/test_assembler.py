from __future__ import annotations
import hashlib
import pytest

from adapters.storage.base import IntegrityError, StorageIOError
from ingest.assembler import Assembler
from ingest.manifest import ManifestStore
from ingest.receiver import chunk_path


def _setup(tmp_path, chunks):
    manifests = ManifestStore(tmp_path / "manifests")
    asm = Assembler(tmp_path / "chunks", tmp_path / "tmp", manifests, block_size=2)
    for i, data in chunks.items():
        if data is not None:
            chunk_path(asm.chunk_dir, "up1", i).write_bytes(data)
            manifests.record_chunk("up1", i, 3)
    return asm, manifests


@pytest.mark.asyncio
async def test_assemble_in_index_order(tmp_path):
    asm, manifests = _setup(tmp_path, {1: b"BBB", 0: b"A", 2: b"C"})
    out = await asm.assemble("up1", 3, ".jpg")
    assert out.path.read_bytes() == b"ABBBC"
    assert out.sha256 == hashlib.sha256(b"ABBBC").hexdigest()
    assert out.size == 5
    assert out.path.suffix == ".jpg"
    # chunks et manifest consommés
    assert list(asm.chunk_dir.iterdir()) == []
    assert manifests.get("up1") is None


@pytest.mark.asyncio
async def test_missing_and_empty_chunks_reported(tmp_path):
    asm, manifests = _setup(tmp_path, {0: b"A", 2: b""})
    with pytest.raises(IntegrityError) as exc:
        await asm.assemble("up1", 3)
    assert exc.value.indices == [1, 2]
    assert exc.value.to_dict()["indices"] == [1, 2]
    # rien n'est détruit : le client peut renvoyer 1 et 2
    assert chunk_path(asm.chunk_dir, "up1", 0).exists()
    assert manifests.status("up1") == [0, 2]
    assert list(asm.tmp_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_merge_failure_keeps_chunks(tmp_path):
    asm, manifests = _setup(tmp_path, {0: b"A", 1: b"B", 2: b"C"})

    def broken_merge(upload_id, total, out_path):
        out_path.write_bytes(b"partial")
        raise OSError("disk full")

    asm._merge = broken_merge
    with pytest.raises(StorageIOError) as exc:
        await asm.assemble("up1", 3)
    assert exc.value.to_dict()["retryable"] is True
    assert list(asm.tmp_dir.iterdir()) == []
    assert len(list(asm.chunk_dir.iterdir())) == 3
    assert manifests.status("up1") == [0, 1, 2]
