# ingest/manifest.py
# Manifests d'upload : un JSON par uploadId, remplacé atomiquement à chaque mise à jour.
from __future__ import annotations
import re
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from adapters.storage.base import InvalidRequest
from adapters.storage.local import ensure_dirs, read_json, write_json_atomic
from app.core.logging import get_logger
from ingest.models import UploadManifest, utcnow

log = get_logger(__name__)

# uploadId sert de composant de nom de fichier : pas de séparateur, pas de fichier caché
_UPLOAD_ID_RX = re.compile(r"[A-Za-z0-9_\-][A-Za-z0-9_.\-]{0,127}")


def validate_upload_id(upload_id: Optional[str]) -> str:
    value = (upload_id or "").strip()
    if not _UPLOAD_ID_RX.fullmatch(value):
        raise InvalidRequest("Invalid uploadId", field="uploadId")
    return value


class ManifestStore:
    """
    Stockage durable des manifests.
    Toute écriture passe par write_json_atomic (fichier privé + os.replace) :
    un lecteur concurrent lit l'ancien enregistrement ou le nouveau, jamais un état partiel.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        ensure_dirs(self.root)

    def path_for(self, upload_id: str) -> Path:
        return self.root / f"{validate_upload_id(upload_id)}.json"

    def get(self, upload_id: str) -> Optional[UploadManifest]:
        path = self.path_for(upload_id)
        raw = read_json(path)
        if raw is None:
            return None
        try:
            return UploadManifest.model_validate(raw)
        except ValidationError as e:
            # enregistrement corrompu -> considéré absent, le service reste debout
            log.warning("corrupt manifest %s ignored: %s", path.name, e.error_count())
            return None

    def save(self, manifest: UploadManifest) -> UploadManifest:
        manifest.last_modified = utcnow()
        write_json_atomic(self.path_for(manifest.upload_id), manifest.to_wire())
        return manifest

    def create(
        self,
        upload_id: str,
        total_chunks: int,
        *,
        filename: Optional[str] = None,
        owner_token: Optional[str] = None,
        is_video: bool = False,
    ) -> UploadManifest:
        manifest = UploadManifest(
            upload_id=validate_upload_id(upload_id),
            total_chunks=total_chunks,
            filename=filename,
            owner_token=owner_token,
            is_video=is_video,
        )
        return self.save(manifest)

    def update(self, manifest: UploadManifest) -> UploadManifest:
        return self.save(manifest)

    def delete(self, upload_id: str) -> bool:
        path = self.path_for(upload_id)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False

    def record_chunk(
        self,
        upload_id: str,
        index: int,
        total_chunks: int,
        *,
        filename: Optional[str] = None,
        owner_token: Optional[str] = None,
        is_video: bool = False,
    ) -> UploadManifest:
        """
        Lecture-modification-écriture marquant `index` comme reçu.
        Pas de point de suspension ici : dans la boucle d'événements, deux requêtes ne peuvent pas s'entrelacer.
        Le premier totalChunks enregistré fait foi.
        """
        manifest = self.get(upload_id)
        if manifest is None:
            manifest = UploadManifest(
                upload_id=validate_upload_id(upload_id),
                total_chunks=total_chunks,
                filename=filename,
                owner_token=owner_token,
                is_video=is_video,
            )
        if not 0 <= index < manifest.total_chunks:
            raise InvalidRequest(
                f"index {index} out of range for totalChunks={manifest.total_chunks}", field="index"
            )
        if index not in manifest.received:
            manifest.received = sorted({*manifest.received, index})
        # métadonnées manquantes complétées, jamais écrasées
        manifest.filename = manifest.filename or filename
        manifest.owner_token = manifest.owner_token or owner_token
        manifest.is_video = manifest.is_video or is_video
        return self.save(manifest)

    def status(self, upload_id: str) -> List[int]:
        """Requête de reprise : indices déjà reçus (liste vide si aucun manifest)."""
        manifest = self.get(upload_id)
        return list(manifest.received) if manifest else []
