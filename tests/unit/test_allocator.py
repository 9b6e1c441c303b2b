from __future__ import annotations
import os
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from adapters.storage.base import AllocationExhausted, StorageIOError
from ingest.allocator import SerialAllocator


def _src(tmp_path, name, data=b"x"):
    p = tmp_path / name
    p.write_bytes(data)
    return p


def test_first_reservation_and_finalize(tmp_path):
    alloc = SerialAllocator(tmp_path / "up")
    r = alloc.reserve("Alice Smith", False, ".jpg")
    assert r.serial == 0
    assert r.saved_name == "Alice_Smith_IMG-0000.jpg"
    assert r.lock_dir.is_dir()
    final = alloc.finalize(r, _src(tmp_path, "s"))
    assert final.read_bytes() == b"x"
    assert not r.lock_dir.exists()
    assert alloc.reserve("Alice Smith", False, ".jpg").serial == 1


def test_serial_independent_of_extension(tmp_path):
    alloc = SerialAllocator(tmp_path)
    (tmp_path / "Bob_IMG-0000.png").write_bytes(b"1")
    (tmp_path / "Bob_VID-0000.mp4").write_bytes(b"1")
    assert alloc.reserve("Bob", False, ".jpg").saved_name == "Bob_IMG-0001.jpg"
    # préfixes séparés
    assert alloc.reserve("Bob", True, ".mov").saved_name == "Bob_VID-0001.mov"


def test_control_files_do_not_mark_used(tmp_path):
    alloc = SerialAllocator(tmp_path)
    (tmp_path / "Bob_IMG-0000.serial").write_bytes(b"")
    assert alloc.is_used("Bob_IMG-0000") is False
    assert alloc.reserve("Bob", False).serial == 0


def test_held_lock_is_skipped(tmp_path):
    alloc = SerialAllocator(tmp_path)
    (tmp_path / "Bob_IMG-0000.lock").mkdir()
    assert alloc.reserve("Bob", False).serial == 1


def test_stale_lock_is_reclaimed(tmp_path):
    alloc = SerialAllocator(tmp_path, lock_ttl=600)
    stale = tmp_path / "Bob_IMG-0000.lock"
    stale.mkdir()
    old = time.time() - 3600
    os.utime(stale, (old, old))
    r = alloc.reserve("Bob", False)
    assert r.serial == 0
    assert r.lock_dir.is_dir()


def test_exhausted(tmp_path):
    alloc = SerialAllocator(tmp_path, max_candidates=2)
    (tmp_path / "Bob_IMG-0000.jpg").write_bytes(b"1")
    (tmp_path / "Bob_IMG-0001").write_bytes(b"1")
    with pytest.raises(AllocationExhausted):
        alloc.reserve("Bob", False, ".jpg")


def test_concurrent_allocators_get_distinct_serials(tmp_path):
    base = tmp_path / "up"
    srcs = [_src(tmp_path, f"s{i}", str(i).encode()) for i in range(24)]

    def work(src):
        # une instance par "processus" : seul le disque est partagé
        alloc = SerialAllocator(base)
        r = alloc.reserve("Carol", False, ".jpg")
        alloc.finalize(r, src)
        return r.serial

    with ThreadPoolExecutor(max_workers=8) as pool:
        serials = list(pool.map(work, srcs))
    assert sorted(serials) == list(range(24))
    assert not [p for p in base.iterdir() if p.suffix == ".lock"]


def test_finalize_copies_when_rename_fails(tmp_path, monkeypatch):
    alloc = SerialAllocator(tmp_path / "up")
    r = alloc.reserve("Bob", False, ".bin")
    src = _src(tmp_path, "s", b"payload")

    def no_rename(a, b):
        raise OSError(18, "Invalid cross-device link")

    monkeypatch.setattr("ingest.allocator.os.replace", no_rename)
    final = alloc.finalize(r, src)
    assert final.read_bytes() == b"payload"
    assert not src.exists()
    assert not r.lock_dir.exists()


def test_finalize_failure_releases_lock(tmp_path):
    alloc = SerialAllocator(tmp_path / "up")
    r = alloc.reserve("Bob", False, ".bin")
    with pytest.raises(StorageIOError):
        alloc.finalize(r, tmp_path / "missing")
    assert not r.lock_dir.exists()
    assert not r.final_path.exists()


def test_used_serials_agrees_with_is_used(tmp_path):
    alloc = SerialAllocator(tmp_path)
    names = [
        "Bob_IMG-0000.jpg", "Bob_IMG-0001", "Bob_IMG-0002.lock", "Bob_IMG-0003.SERIAL",
        "Bob_IMG-00004.jpg", "Bob_IMG-0005x.jpg", "Bob_VID-0006.mp4", "Bobby_IMG-0007.jpg",
        "Bob_IMG-0008.tar.gz",
    ]
    used = alloc.used_serials("Bob", "IMG", names)
    assert used == {0, 1, 8}
    for n in range(10):
        assert (n in used) == alloc.is_used(alloc.serial_base("Bob", "IMG", n), names)


def test_reserve_lists_directory_once_before_locking(tmp_path, monkeypatch):
    alloc = SerialAllocator(tmp_path)
    for i in range(300):
        (tmp_path / f"J.Doe_IMG-{i:04d}.jpg").write_bytes(b"")
    (tmp_path / "J.Doe_IMG-0300.lock").mkdir()
    (tmp_path / "J.Doe_IMG-00301.jpg").write_bytes(b"")
    (tmp_path / "Other_IMG-0301.jpg").write_bytes(b"")

    calls = []
    real_listdir = alloc._listdir

    def counting_listdir():
        calls.append(1)
        return real_listdir()

    monkeypatch.setattr(alloc, "_listdir", counting_listdir)
    r = alloc.reserve("J.Doe", False, ".jpg")
    assert r.saved_name == "J.Doe_IMG-0301.jpg"
    # un listing pour l'instantané, un pour la re-vérification du numéro verrouillé
    assert len(calls) == 2
