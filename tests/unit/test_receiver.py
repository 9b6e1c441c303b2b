from __future__ import annotations
import pytest

from adapters.storage.base import InvalidRequest, Unauthorized
from ingest.receiver import chunk_path


def files_in(directory):
    return sorted(p.name for p in directory.iterdir()) if directory.exists() else []


@pytest.mark.asyncio
async def test_out_of_order_chunks(service, settings, make_chunk):
    chunk_dir = settings.storage.chunk_dir
    acks = []
    for i, payload in [(1, b"B"), (0, b"A"), (2, b"C")]:
        acks.append(await service.submit_chunk(make_chunk(i, payload)))
    assert [a.received for a in acks] == [1, 2, 3]
    assert [a.complete for a in acks] == [False, False, True]
    assert chunk_path(chunk_dir, "up1", 1).read_bytes() == b"B"
    assert service.status("up1").received == [0, 1, 2]


@pytest.mark.asyncio
async def test_fields_after_payload(service, settings, make_chunk):
    ack = await service.submit_chunk(make_chunk(0, b"A", chunk_first=True))
    assert ack.ok and ack.index == 0
    assert files_in(settings.storage.chunk_dir) == ["up1_chunk_0"]


@pytest.mark.asyncio
async def test_repeat_index_overwrites(service, settings, make_chunk):
    await service.submit_chunk(make_chunk(0, b"old"))
    ack = await service.submit_chunk(make_chunk(0, b"new"))
    assert ack.received == 1
    assert chunk_path(settings.storage.chunk_dir, "up1", 0).read_bytes() == b"new"


@pytest.mark.asyncio
@pytest.mark.parametrize("chunk_first", [False, True])
async def test_bad_token_writes_nothing(service, settings, make_chunk, chunk_first):
    with pytest.raises(Unauthorized):
        await service.submit_chunk(make_chunk(0, b"A", token="nope", chunk_first=chunk_first))
    assert files_in(settings.storage.chunk_dir) == []
    assert service.status("up1").received == []


@pytest.mark.asyncio
@pytest.mark.parametrize("index,total", [("x", 3), (-1, 3), (3, 3), (0, 0), (0, "many")])
async def test_malformed_fields_rejected(service, settings, make_chunk, index, total):
    with pytest.raises(InvalidRequest):
        await service.submit_chunk(make_chunk(index, b"A", total=total))
    assert files_in(settings.storage.chunk_dir) == []


@pytest.mark.asyncio
async def test_index_checked_against_recorded_total(service, make_chunk):
    await service.submit_chunk(make_chunk(0, b"A", total=2))
    with pytest.raises(InvalidRequest):
        await service.submit_chunk(make_chunk(2, b"C", total=5))


@pytest.mark.asyncio
async def test_empty_or_missing_chunk(service, settings, make_chunk):
    with pytest.raises(InvalidRequest):
        await service.submit_chunk(make_chunk(0, b""))
    parts = [p for p in make_chunk(0, b"A") if p[0] != "chunk"]
    with pytest.raises(InvalidRequest):
        await service.submit_chunk(parts)
    assert files_in(settings.storage.chunk_dir) == []
