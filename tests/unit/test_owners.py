from __future__ import annotations
import os
import time

from adapters.auth.owners import OwnerDirectory


def _bump(path, delta):
    ts = time.time() + delta
    os.utime(path, (ts, ts))


def test_load_trims_and_skips_empty_keys(owners):
    assert owners.lookup("key-alice") == "Alice Smith"
    assert owners.lookup("key-bob") == "Bob"
    assert owners.lookup("") is None
    assert len(owners) == 2


def test_missing_file_means_no_owner(tmp_path):
    d = OwnerDirectory(tmp_path / "none.csv")
    assert d.load() == 0
    assert d.lookup("key-alice") is None
    assert d.reload_if_changed() is False


def test_reload_on_change(tmp_path):
    path = tmp_path / "users.csv"
    path.write_text("AuthKey,FullName\nk1,One\n", encoding="utf-8")
    d = OwnerDirectory(path)
    d.load()
    assert d.reload_if_changed() is False

    path.write_text("AuthKey,FullName\nk2,Two\n", encoding="utf-8")
    _bump(path, 5)
    assert d.reload_if_changed() is True
    assert d.lookup("k1") is None
    assert d.lookup("k2") == "Two"


def test_bad_reload_keeps_previous_map(tmp_path):
    path = tmp_path / "users.csv"
    path.write_text("AuthKey,FullName\nk1,One\n", encoding="utf-8")
    d = OwnerDirectory(path)
    d.load()

    path.write_text("Token,Name\nk2,Two\n", encoding="utf-8")
    _bump(path, 5)
    assert d.reload_if_changed() is False
    assert d.lookup("k1") == "One"

