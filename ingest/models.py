# ingest/models.py
from __future__ import annotations
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional
from dataclasses import dataclass
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    """Base : noms Python en snake_case, noms JSON en camelCase (compatibles avec les fichiers existants)."""
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class UploadManifest(WireModel):
    upload_id: str = Field(alias="uploadId")
    total_chunks: int = Field(alias="totalChunks", gt=0)
    received: List[int] = Field(default_factory=list)
    filename: Optional[str] = None
    owner_token: Optional[str] = Field(default=None, alias="ownerToken")
    is_video: bool = Field(default=False, alias="isVideo")
    last_modified: datetime = Field(default_factory=utcnow, alias="lastModified")

    @model_validator(mode="after")
    def _normalize_received(self) -> "UploadManifest":
        # ensemble trié, sans doublon ni valeur hors bornes
        self.received = sorted({i for i in self.received if 0 <= i < self.total_chunks})
        return self

    @property
    def complete(self) -> bool:
        return len(self.received) == self.total_chunks


class UploadLogEntry(WireModel):
    owner_token: str = Field(alias="authKey")
    owner_name: str = Field(alias="fullName")
    original_name: Optional[str] = Field(default=None, alias="originalName")
    saved_name: str = Field(alias="savedName")
    timestamp: datetime = Field(default_factory=utcnow)
    content_hash: str = Field(alias="hash")
    deduped: bool = False


# ----------------------- requêtes / réponses -----------------------

class ChunkAck(BaseModel):
    ok: bool = True
    upload_id: str = Field(serialization_alias="uploadId")
    index: int
    received: int               # nombre d'indices reçus jusqu'ici
    complete: bool = False
    result: Optional[dict] = None   # rempli si auto_finalize a déclenché l'assemblage


class UploadStatus(BaseModel):
    received: List[int] = Field(default_factory=list)


class FinalizeRequest(WireModel):
    upload_id: str = Field(alias="uploadId")
    total_chunks: int = Field(alias="totalChunks")
    filename: str
    owner_token: str = Field(alias="authKey")
    is_video: bool = Field(default=False, alias="isVideo")

    @field_validator("upload_id", "filename", "owner_token")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("must not be empty")
        return v


class FinalizeResult(BaseModel):
    success: bool = True
    saved_as: Optional[str] = None
    sha256: str
    deduped: bool = False
    existing: Optional[str] = None

    def to_response(self) -> dict:
        if self.deduped:
            return {"success": True, "deduped": True, "existing": self.existing, "sha256": self.sha256}
        return {"success": True, "savedAs": self.saved_as, "sha256": self.sha256}


class DirectUploadResult(BaseModel):
    success: bool = True
    files: List[str] = Field(default_factory=list)
    deduped: List[str] = Field(default_factory=list)


# ----------------------- objets internes -----------------------

@dataclass(frozen=True)
class AssembledFile:
    path: Path
    sha256: str
    size: int


@dataclass(frozen=True)
class StagedFile:
    """Fichier complet posé en zone temporaire, haché, prêt pour dédup/allocation."""
    path: Path
    sha256: str
    size: int
    original_name: str
    ext: str
    is_video: bool
