# ingest/dedupe.py
# Déduplication globale par hash de contenu (tous propriétaires confondus).
from __future__ import annotations
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from app.core.logging import get_logger
from ingest.ledger import HashIndex, UploadLog
from ingest.locks import KeyedLocks
from ingest.models import UploadLogEntry

log = get_logger(__name__)


class HashDeduper:
    """
    Politique : la clé est le hash seul. Deux propriétaires envoyant les mêmes octets
    partagent un seul fichier stocké ; l'attribution reste dans le journal.
    """

    def __init__(self, index: HashIndex, upload_log: UploadLog) -> None:
        self.index = index
        self.log = upload_log
        self._claims = KeyedLocks()

    @asynccontextmanager
    async def claim(self, content_hash: str) -> AsyncIterator[None]:
        """Sérialise lookup -> allocation -> enregistrement pour un même hash dans ce processus."""
        async with self._claims.hold(content_hash):
            yield

    def lookup(self, content_hash: str) -> Optional[str]:
        return self.index.get(content_hash)

    def record_duplicate(
        self,
        *,
        owner_token: str,
        owner_name: str,
        original_name: Optional[str],
        content_hash: str,
        staged: Optional[Path] = None,
        persist: bool = True,
    ) -> str:
        """Hit : les octets en attente sont jetés, on journalise un doublon pointant vers l'existant."""
        existing = self.index.get(content_hash)
        if existing is None:
            raise KeyError(content_hash)
        if staged is not None:
            Path(staged).unlink(missing_ok=True)
        self.log.append(
            UploadLogEntry(
                owner_token=owner_token,
                owner_name=owner_name,
                original_name=original_name,
                saved_name=existing,
                content_hash=content_hash,
                deduped=True,
            ),
            persist=persist,
        )
        log.info("dedupe hit %s -> %s", content_hash[:12], existing)
        return existing

    def record_new(
        self,
        *,
        owner_token: str,
        owner_name: str,
        original_name: Optional[str],
        saved_name: str,
        content_hash: str,
        persist: bool = True,
    ) -> str:
        self.index.add(content_hash, saved_name)
        self.log.append(
            UploadLogEntry(
                owner_token=owner_token,
                owner_name=owner_name,
                original_name=original_name,
                saved_name=saved_name,
                content_hash=content_hash,
                deduped=False,
            ),
            persist=persist,
        )
        return saved_name
