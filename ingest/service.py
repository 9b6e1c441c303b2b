# ingest/service.py
# Orchestration : chunk -> manifest -> assemblage -> dédup -> allocation -> finalisation -> journal.
from __future__ import annotations
from collections import OrderedDict
from pathlib import Path
from typing import Any, Iterable, List, Optional, Tuple

from starlette.concurrency import run_in_threadpool

from adapters.auth.owners import OwnerLookup
from adapters.storage.base import InvalidRequest, StorageIOError, Unauthorized, UploadNotFound
from adapters.storage.local import ensure_dirs, normalize_ext, private_name, stream_to_file
from app.core.config import Settings
from app.core.logging import bind_upload, get_logger
from ingest.allocator import SerialAllocator
from ingest.assembler import Assembler
from ingest.dedupe import HashDeduper
from ingest.ledger import HashIndex, UploadLog
from ingest.locks import KeyedLocks
from ingest.manifest import ManifestStore, validate_upload_id
from ingest.models import (
    ChunkAck,
    DirectUploadResult,
    FinalizeRequest,
    FinalizeResult,
    StagedFile,
    UploadStatus,
)
from ingest.receiver import ChunkReceiver

log = get_logger(__name__)

DIRECT_PREFIX = "direct"
FINALIZED_MEMORY = 1024   # derniers résultats gardés pour répondre aux rejeux


class IngestService:
    """Point d'entrée du cœur d'ingestion ; tous les états partagés sont possédés ici et injectés."""

    def __init__(
        self,
        *,
        owners: OwnerLookup,
        manifests: ManifestStore,
        receiver: ChunkReceiver,
        assembler: Assembler,
        deduper: HashDeduper,
        allocator: SerialAllocator,
        tmp_dir: Path,
        video_extensions: Iterable[str] = (),
        auto_finalize: bool = False,
        block_size: int = 1024 * 1024,
    ) -> None:
        self.owners = owners
        self.manifests = manifests
        self.receiver = receiver
        self.assembler = assembler
        self.deduper = deduper
        self.allocator = allocator
        self.tmp_dir = Path(tmp_dir)
        self.video_extensions = {e.lower() for e in video_extensions}
        self.auto_finalize = auto_finalize
        self.block_size = block_size
        self._finalizing = KeyedLocks()
        self._finalized: "OrderedDict[str, Tuple[str, FinalizeResult]]" = OrderedDict()
        ensure_dirs(self.tmp_dir)

    @classmethod
    def from_settings(cls, settings: Settings, owners: OwnerLookup) -> "IngestService":
        """
        Assemble tous les composants depuis la config.
        Le journal est lu une seule fois ici et l'index des hash en est reconstruit.
        """
        st, ing = settings.storage, settings.ingest
        upload_log = UploadLog(st.log_file)
        count = upload_log.load()
        index = HashIndex.from_log(upload_log)
        log.info("upload log loaded: %d entries, %d unique hashes", count, len(index))

        manifests = ManifestStore(st.manifest_dir)
        return cls(
            owners=owners,
            manifests=manifests,
            receiver=ChunkReceiver(st.chunk_dir, manifests, owners, block_size=ing.read_block_size),
            assembler=Assembler(st.chunk_dir, st.tmp_dir, manifests, block_size=ing.read_block_size),
            deduper=HashDeduper(index, upload_log),
            allocator=SerialAllocator(
                st.upload_dir,
                lock_ttl=ing.lock_ttl_seconds,
                max_candidates=ing.max_candidates,
                width=ing.serial_width,
            ),
            tmp_dir=st.tmp_dir,
            video_extensions=ing.video_extensions,
            auto_finalize=ing.auto_finalize,
            block_size=ing.read_block_size,
        )

    # ----------------- auth -----------------
    def owner_for(self, token: Optional[str]) -> str:
        name = self.owners.lookup((token or "").strip()) if token else None
        if not name:
            raise Unauthorized("Invalid authKey")
        return name

    def check_token(self, token: Optional[str]) -> Optional[str]:
        token = (token or "").strip()
        return self.owners.lookup(token) if token else None

    # ----------------- chunks -----------------
    async def submit_chunk(self, parts: Iterable[Tuple[str, Any]]) -> ChunkAck:
        ack = await self.receiver.receive(parts)
        if ack.complete and self.auto_finalize:
            manifest = self.manifests.get(ack.upload_id)
            if manifest is not None and manifest.owner_token:
                result = await self.finalize(FinalizeRequest(
                    upload_id=manifest.upload_id,
                    total_chunks=manifest.total_chunks,
                    filename=manifest.filename or "file",
                    owner_token=manifest.owner_token,
                    is_video=manifest.is_video,
                ))
                ack.result = result.to_response()
        return ack

    def status(self, upload_id: str) -> UploadStatus:
        return UploadStatus(received=self.manifests.status(validate_upload_id(upload_id)))

    async def finalize(self, req: FinalizeRequest) -> FinalizeResult:
        """
        Sérialisé par uploadId : un rejeu (retry client après timeout, auto_finalize concurrent)
        attend la finalisation en cours puis reçoit le même résultat.
        """
        owner = self.owner_for(req.owner_token)
        upload_id = validate_upload_id(req.upload_id)
        bind_upload(upload_id)
        async with self._finalizing.hold(upload_id):
            done = self._finalized.get(upload_id)
            # un manifest présent signifie un nouvel envoi sous le même uploadId
            if done is not None and done[0] == req.owner_token and self.manifests.get(upload_id) is None:
                log.info("finalize replay, returning previous result")
                return done[1]
            result = await self._finalize_locked(req, upload_id, owner)
            self._remember(upload_id, req.owner_token, result)
            return result

    def _remember(self, upload_id: str, owner_token: str, result: FinalizeResult) -> None:
        self._finalized[upload_id] = (owner_token, result)
        self._finalized.move_to_end(upload_id)
        while len(self._finalized) > FINALIZED_MEMORY:
            self._finalized.popitem(last=False)

    async def _finalize_locked(self, req: FinalizeRequest, upload_id: str, owner: str) -> FinalizeResult:
        manifest = self.manifests.get(upload_id)
        total = req.total_chunks
        if manifest is not None and manifest.total_chunks != total:
            raise InvalidRequest(
                f"totalChunks mismatch (manifest has {manifest.total_chunks})", field="totalChunks"
            )
        if total <= 0:
            raise InvalidRequest("Invalid totalChunks", field="totalChunks")
        if manifest is None and len(self.assembler.check(upload_id, total)) == total:
            raise UploadNotFound("Unknown uploadId", uploadId=upload_id)
        is_video = req.is_video or bool(manifest and manifest.is_video)
        ext = normalize_ext(req.filename)

        assembled = await self.assembler.assemble(upload_id, total, ext)
        staged = StagedFile(
            path=assembled.path,
            sha256=assembled.sha256,
            size=assembled.size,
            original_name=req.filename,
            ext=ext,
            is_video=is_video,
        )
        try:
            return await self._store(staged, owner_token=req.owner_token, owner=owner)
        except BaseException:
            # les chunks sont déjà consommés : la sortie fusionnée orpheline ne sert plus à rien
            assembled.path.unlink(missing_ok=True)
            raise

    # ----------------- direct -----------------
    def _is_video(self, filename: str, content_type: Optional[str]) -> bool:
        if (content_type or "").lower().startswith("video/"):
            return True
        return normalize_ext(filename) in self.video_extensions

    async def direct_upload(self, parts: Iterable[Tuple[str, Any]]) -> DirectUploadResult:
        """
        Fichiers entiers (petits) : chaque part est posée en zone temporaire avec hash au passage.
        Le token est vérifié une fois le corps consommé ; en cas de refus tout ce qui a été posé est retiré.
        """
        token: Optional[str] = None
        staged: List[StagedFile] = []
        try:
            for name, value in parts:
                if isinstance(value, str):
                    if name == "authKey":
                        token = value.strip()
                    continue
                original = value.filename or "file"
                ext = normalize_ext(original)
                path = self.tmp_dir / private_name(DIRECT_PREFIX, ext)
                size, sha256 = await stream_to_file(value.read, path, block_size=self.block_size)
                await value.close()
                staged.append(StagedFile(
                    path=path,
                    sha256=sha256,
                    size=size,
                    original_name=original,
                    ext=ext,
                    is_video=self._is_video(original, getattr(value, "content_type", None)),
                ))
            owner = self.owner_for(token)
        except OSError as e:
            self._discard(staged)
            raise StorageIOError("Upload failed") from e
        except BaseException:
            self._discard(staged)
            raise

        result = DirectUploadResult()
        try:
            for s in staged:
                res = await self._store(s, owner_token=token or "", owner=owner, persist=False)
                if res.deduped:
                    result.deduped.append(res.existing or "")
                else:
                    result.files.append(res.saved_as or "")
        finally:
            # déjà déplacés ou supprimés pour ceux qui ont abouti
            self._discard(staged)
            if staged:
                self.deduper.log.flush()
        return result

    @staticmethod
    def _discard(staged: Iterable[StagedFile]) -> None:
        for s in staged:
            s.path.unlink(missing_ok=True)

    # ----------------- dédup + allocation + finalisation -----------------
    async def _store(
        self,
        staged: StagedFile,
        *,
        owner_token: str,
        owner: str,
        persist: bool = True,
    ) -> FinalizeResult:
        async with self.deduper.claim(staged.sha256):
            if self.deduper.lookup(staged.sha256) is not None:
                existing = self.deduper.record_duplicate(
                    owner_token=owner_token,
                    owner_name=owner,
                    original_name=staged.original_name,
                    content_hash=staged.sha256,
                    staged=staged.path,
                    persist=persist,
                )
                return FinalizeResult(sha256=staged.sha256, deduped=True, existing=existing)

            try:
                reservation = await run_in_threadpool(
                    self.allocator.reserve, owner, staged.is_video, staged.ext
                )
                final = await run_in_threadpool(self.allocator.finalize, reservation, staged.path)
            except OSError as e:
                raise StorageIOError("Could not store file") from e
            saved_name = self.deduper.record_new(
                owner_token=owner_token,
                owner_name=owner,
                original_name=staged.original_name,
                saved_name=final.name,
                content_hash=staged.sha256,
                persist=persist,
            )
        log.info("stored %s as %s (%s bytes)", staged.original_name, saved_name, staged.size)
        return FinalizeResult(saved_as=saved_name, sha256=staged.sha256)
