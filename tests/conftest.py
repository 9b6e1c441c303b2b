from __future__ import annotations
import io
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Any

import pytest
from fastapi import UploadFile
from starlette.datastructures import Headers

from adapters.auth.owners import OwnerDirectory
from app.core.config import AuthCfg, IngestCfg, JanitorCfg, Settings, StorageCfg
from ingest.service import IngestService

USERS_CSV = "AuthKey,FullName\nkey-alice, Alice Smith \nkey-bob,Bob\n,Nobody\n"


def make_upload(content: bytes, filename: str = "blob", content_type: Optional[str] = None) -> UploadFile:
    headers = Headers({"content-type": content_type}) if content_type else None
    return UploadFile(file=io.BytesIO(content), filename=filename, headers=headers)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    (tmp_path / "users.csv").write_text(USERS_CSV, encoding="utf-8")
    return Settings(
        storage=StorageCfg(
            upload_dir=tmp_path / "uploads",
            tmp_dir=tmp_path / "tmp",
            chunk_dir=tmp_path / "chunks",
            manifest_dir=tmp_path / "manifests",
            log_file=tmp_path / "upload_log.json",
        ),
        auth=AuthCfg(users_file=tmp_path / "users.csv"),
        ingest=IngestCfg(read_block_size=4),
        janitor=JanitorCfg(enabled=False),
    )


@pytest.fixture
def owners(settings: Settings) -> OwnerDirectory:
    d = OwnerDirectory(settings.auth.users_file)
    d.load()
    return d


@pytest.fixture
def service(settings: Settings, owners: OwnerDirectory) -> IngestService:
    return IngestService.from_settings(settings, owners)


@pytest.fixture
def make_file() -> Callable[..., UploadFile]:
    return make_upload


@pytest.fixture
def make_chunk() -> Callable[..., List[Tuple[str, Any]]]:
    """Fabrique les parts multipart d'un chunk, champs avant ou après les octets."""

    def _make(
        index: Any,
        payload: bytes,
        *,
        upload_id: str = "up1",
        total: Any = 3,
        token: str = "key-alice",
        filename: str = "abc.jpg",
        is_video: str = "false",
        chunk_first: bool = False,
    ) -> List[Tuple[str, Any]]:
        fields = [
            ("authKey", token),
            ("uploadId", upload_id),
            ("index", str(index)),
            ("totalChunks", str(total)),
            ("filename", filename),
            ("isVideo", is_video),
        ]
        chunk = [("chunk", make_upload(payload))]
        return chunk + fields if chunk_first else fields + chunk

    return _make

