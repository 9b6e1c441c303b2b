# adapters/storage/base.py
# Taxonomie des erreurs d'ingestion : chaque erreur porte son code HTTP et les détails
# nécessaires au client pour réessayer précisément.
from __future__ import annotations
from typing import Any, Dict, List, Optional, Sequence


class IngestError(Exception):
    """Racine des erreurs remontées par le cœur d'ingestion."""
    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message}
        if self.retryable:
            body["retryable"] = True
        body.update(self.details)
        return body


class Unauthorized(IngestError):
    """Token absent ou inconnu (rejeté avant toute écriture)."""
    status_code = 403


class InvalidRequest(IngestError):
    """Champs manquants ou mal formés (index, total, nom, uploadId)."""
    status_code = 400


class StorageIOError(IngestError):
    """Écriture/renommage impossible ; l'opération peut être rejouée."""
    status_code = 503
    retryable = True


class IntegrityError(IngestError):
    """Chunks manquants ou vides au moment de l'assemblage."""
    status_code = 409

    def __init__(self, indices: Sequence[int], message: Optional[str] = None) -> None:
        self.indices: List[int] = sorted(indices)
        super().__init__(message or "Missing or empty chunks", indices=self.indices)


class UploadNotFound(IngestError):
    """Ni manifest ni chunk pour cet uploadId (jamais reçu, déjà finalisé ailleurs, ou expiré)."""
    status_code = 404


class Contention(IngestError):
    """Marqueur de réservation déjà tenu (interne, jamais exposé au client)."""
    status_code = 409


class AllocationExhausted(IngestError):
    """Plus aucun numéro de série disponible dans la borne de sondage."""
    status_code = 507
