# ingest/assembler.py
# Fusion des chunks dans l'ordre des index + sha256 en une seule passe.
from __future__ import annotations
import hashlib
from pathlib import Path
from typing import List

from starlette.concurrency import run_in_threadpool

from adapters.storage.base import IntegrityError, StorageIOError
from adapters.storage.local import ensure_dirs, private_name
from app.core.logging import get_logger
from ingest.manifest import ManifestStore
from ingest.models import AssembledFile
from ingest.receiver import chunk_path

log = get_logger(__name__)

MERGE_PREFIX = "merge"


class Assembler:
    def __init__(
        self,
        chunk_dir: Path,
        tmp_dir: Path,
        manifests: ManifestStore,
        *,
        block_size: int = 1024 * 1024,
    ) -> None:
        self.chunk_dir = Path(chunk_dir)
        self.tmp_dir = Path(tmp_dir)
        self.manifests = manifests
        self.block_size = block_size
        ensure_dirs(self.chunk_dir, self.tmp_dir)

    def check(self, upload_id: str, total_chunks: int) -> List[int]:
        """Indices manquants ou vides (liste vide = prêt à fusionner)."""
        defective: List[int] = []
        for i in range(total_chunks):
            try:
                if chunk_path(self.chunk_dir, upload_id, i).stat().st_size == 0:
                    defective.append(i)
            except FileNotFoundError:
                defective.append(i)
        return defective

    def _merge(self, upload_id: str, total_chunks: int, out_path: Path) -> AssembledFile:
        hasher = hashlib.sha256()
        size = 0
        with out_path.open("wb") as out:
            for i in range(total_chunks):
                with chunk_path(self.chunk_dir, upload_id, i).open("rb") as part:
                    while True:
                        block = part.read(self.block_size)
                        if not block:
                            break
                        # mêmes octets vers le fichier et vers le hash : jamais de relecture
                        out.write(block)
                        hasher.update(block)
                        size += len(block)
        return AssembledFile(path=out_path, sha256=hasher.hexdigest(), size=size)

    async def assemble(self, upload_id: str, total_chunks: int, ext: str = "") -> AssembledFile:
        """
        Vérifie puis fusionne. Chunks et manifest ne sont supprimés qu'après succès ;
        en cas d'échec la sortie partielle est retirée et tout reste en place pour un nouvel essai.
        """
        defective = self.check(upload_id, total_chunks)
        if defective:
            log.warning("assembly refused, defective chunks %s", defective)
            raise IntegrityError(defective)

        out_path = self.tmp_dir / private_name(MERGE_PREFIX, ext)
        try:
            assembled = await run_in_threadpool(self._merge, upload_id, total_chunks, out_path)
        except OSError as e:
            out_path.unlink(missing_ok=True)
            log.error("merge failed: %s", e)
            raise StorageIOError("Assembly failed") from e

        for i in range(total_chunks):
            chunk_path(self.chunk_dir, upload_id, i).unlink(missing_ok=True)
        self.manifests.delete(upload_id)
        log.info("assembled %s chunks (%s bytes) sha256=%s", total_chunks, assembled.size, assembled.sha256)
        return assembled
