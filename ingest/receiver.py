# ingest/receiver.py
# Réception d'un chunk : les champs peuvent arriver avant OU après les octets dans le multipart.
from __future__ import annotations
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple

from adapters.auth.owners import OwnerLookup
from adapters.storage.base import InvalidRequest, StorageIOError, Unauthorized
from adapters.storage.local import ensure_dirs, private_name, stream_to_file
from app.core.logging import bind_upload, get_logger
from ingest.manifest import ManifestStore, validate_upload_id
from ingest.models import ChunkAck

log = get_logger(__name__)

CHUNK_FIELD = "chunk"
INFLIGHT_PREFIX = "inflight"
CHUNK_SEPARATOR = "_chunk_"


def chunk_path(chunk_dir: Path, upload_id: str, index: int) -> Path:
    return Path(chunk_dir) / f"{upload_id}{CHUNK_SEPARATOR}{index}"


def parse_int(value: Optional[str], field: str) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        raise InvalidRequest(f"Invalid {field}", field=field)


def parse_bool(value: Optional[str]) -> bool:
    return str(value or "").strip().lower() in {"true", "1"}


@dataclass(frozen=True)
class ChunkMeta:
    owner_token: str
    owner_name: str
    upload_id: str
    index: int
    total_chunks: int
    filename: Optional[str]
    is_video: bool


class ChunkReceiver:
    """Écrit un chunk par (uploadId, index) accepté puis met à jour le manifest."""

    def __init__(
        self,
        chunk_dir: Path,
        manifests: ManifestStore,
        owners: OwnerLookup,
        *,
        block_size: int = 1024 * 1024,
    ) -> None:
        self.chunk_dir = Path(chunk_dir)
        self.manifests = manifests
        self.owners = owners
        self.block_size = block_size
        ensure_dirs(self.chunk_dir)

    # ----------------- validation -----------------
    def _check_token(self, token: Optional[str]) -> Tuple[str, str]:
        token = (token or "").strip()
        name = self.owners.lookup(token) if token else None
        if not name:
            raise Unauthorized("Invalid authKey")
        return token, name

    def _precheck(self, fields: Dict[str, str]) -> None:
        """Valide ce qui est déjà connu quand les octets commencent à arriver (rejet avant écriture)."""
        if "authKey" in fields:
            self._check_token(fields["authKey"])
        if "uploadId" in fields:
            validate_upload_id(fields["uploadId"])
        if "index" in fields and parse_int(fields["index"], "index") < 0:
            raise InvalidRequest("Invalid index", field="index")
        if "totalChunks" in fields and parse_int(fields["totalChunks"], "totalChunks") <= 0:
            raise InvalidRequest("Invalid totalChunks", field="totalChunks")

    def resolve(self, fields: Dict[str, str]) -> ChunkMeta:
        token, name = self._check_token(fields.get("authKey"))
        for required in ("uploadId", "index", "totalChunks"):
            if not (fields.get(required) or "").strip():
                raise InvalidRequest("Missing fields for chunk", field=required)
        upload_id = validate_upload_id(fields["uploadId"])
        index = parse_int(fields["index"], "index")
        total = parse_int(fields["totalChunks"], "totalChunks")
        if total <= 0:
            raise InvalidRequest("Invalid totalChunks", field="totalChunks")

        # le premier totalChunks enregistré fait foi
        manifest = self.manifests.get(upload_id)
        effective_total = manifest.total_chunks if manifest else total
        if not 0 <= index < effective_total:
            raise InvalidRequest(
                f"index {index} out of range for totalChunks={effective_total}", field="index"
            )
        return ChunkMeta(
            owner_token=token,
            owner_name=name,
            upload_id=upload_id,
            index=index,
            total_chunks=total,
            filename=fields.get("filename"),
            is_video=parse_bool(fields.get("isVideo")),
        )

    # ----------------- réception -----------------
    async def receive(self, parts: Iterable[Tuple[str, Any]]) -> ChunkAck:
        """
        Consomme les parts dans leur ordre d'arrivée.
        Les octets vont toujours dans un fichier privé `.inflight.*`, renommé sur le chemin
        définitif une fois les métadonnées connues : aucun lecteur ne voit de chunk à moitié écrit.
        """
        fields: Dict[str, str] = {}
        staged: Optional[Path] = None
        size = 0
        try:
            for name, value in parts:
                if isinstance(value, str):
                    fields[name] = value
                    continue
                if name != CHUNK_FIELD:
                    continue
                if staged is not None:
                    raise InvalidRequest("Only one chunk per request", field=CHUNK_FIELD)
                self._precheck(fields)
                staged = self.chunk_dir / private_name(INFLIGHT_PREFIX)
                log.debug("chunk: staging to %s (fields so far: %s)", staged.name, sorted(fields))
                size, _ = await stream_to_file(value.read, staged, block_size=self.block_size)
                await value.close()

            meta = self.resolve(fields)
            bind_upload(meta.upload_id)
            if staged is None:
                raise InvalidRequest("Missing file chunk", field=CHUNK_FIELD)
            if size == 0:
                raise InvalidRequest("Empty chunk", field=CHUNK_FIELD)

            final = chunk_path(self.chunk_dir, meta.upload_id, meta.index)
            os.replace(staged, final)  # réécrire le même index écrase simplement les octets
            staged = None

            manifest = self.manifests.record_chunk(
                meta.upload_id,
                meta.index,
                meta.total_chunks,
                filename=meta.filename,
                owner_token=meta.owner_token,
                is_video=meta.is_video,
            )
        except OSError as e:
            log.error("chunk write failed: %s", e)
            raise StorageIOError("Chunk upload failed") from e
        finally:
            if staged is not None:
                staged.unlink(missing_ok=True)

        log.info("chunk ok index=%s size=%s (%s/%s)", meta.index, size,
                 len(manifest.received), manifest.total_chunks)
        return ChunkAck(
            upload_id=meta.upload_id,
            index=meta.index,
            received=len(manifest.received),
            complete=manifest.complete,
        )
