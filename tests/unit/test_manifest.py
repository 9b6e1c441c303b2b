from __future__ import annotations
import pytest

from adapters.storage.base import InvalidRequest
from ingest.manifest import ManifestStore, validate_upload_id


def test_record_chunk_is_idempotent_and_sorted(tmp_path):
    store = ManifestStore(tmp_path)
    store.record_chunk("up1", 2, 3, filename="a.jpg", owner_token="k")
    store.record_chunk("up1", 0, 3)
    m = store.record_chunk("up1", 2, 3)
    assert m.received == [0, 2]
    assert not m.complete
    assert m.filename == "a.jpg"
    assert store.status("up1") == [0, 2]


def test_first_total_wins(tmp_path):
    store = ManifestStore(tmp_path)
    store.record_chunk("up1", 0, 2)
    m = store.record_chunk("up1", 1, 9)
    assert m.total_chunks == 2
    assert m.complete
    with pytest.raises(InvalidRequest):
        store.record_chunk("up1", 5, 9)


def test_status_unknown_is_empty(tmp_path):
    assert ManifestStore(tmp_path).status("nope") == []


def test_corrupt_manifest_reads_as_absent(tmp_path):
    store = ManifestStore(tmp_path)
    (tmp_path / "bad.json").write_text("{not json", encoding="utf-8")
    assert store.get("bad") is None
    assert store.status("bad") == []
    # une nouvelle écriture remplace l'enregistrement illisible
    m = store.record_chunk("bad", 0, 1)
    assert m.complete


def test_writes_leave_no_temp_files(tmp_path):
    store = ManifestStore(tmp_path)
    for i in range(3):
        store.record_chunk("up1", i, 3)
    assert sorted(p.name for p in tmp_path.iterdir()) == ["up1.json"]
    assert store.delete("up1")
    assert not store.delete("up1")


@pytest.mark.parametrize("bad", ["", "  ", "../etc", "a/b", ".hidden", "x" * 200])
def test_validate_upload_id_rejects(bad):
    with pytest.raises(InvalidRequest):
        validate_upload_id(bad)


def test_validate_upload_id_strips():
    assert validate_upload_id(" 1700000000-abc.mp4 ") == "1700000000-abc.mp4"
