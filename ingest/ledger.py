# ingest/ledger.py
# Journal des uploads (append-only, réécrit atomiquement) + index hash -> nom stocké reconstruit au démarrage.
from __future__ import annotations
import os
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from pydantic import ValidationError

from adapters.storage.local import read_json, write_json_atomic
from app.core.logging import get_logger
from ingest.models import UploadLogEntry

log = get_logger(__name__)


class UploadLog:
    """
    Liste durable d'UploadLogEntry. Lue une fois au démarrage ; jamais d'entrée modifiée ni retirée.
    Les éléments du disque sont réécrits tels quels (clés inconnues et entrées illisibles comprises) ;
    seules les entrées valides alimentent l'index.
    """

    def __init__(self, path: Path, clock: Callable[[], float] = time.time) -> None:
        self.path = Path(path)
        self.clock = clock
        self._raw: List[Any] = []
        self._entries: List[UploadLogEntry] = []

    def _set_aside(self, reason: str) -> Path:
        aside = self.path.with_name(f"{self.path.name}.corrupt-{int(self.clock())}")
        os.replace(self.path, aside)
        log.error("upload log %s %s, moved to %s, starting empty", self.path, reason, aside.name)
        return aside

    def load(self) -> int:
        self._raw, self._entries = [], []
        raw = read_json(self.path)
        if raw is None:
            if self.path.exists():
                self._set_aside("is unreadable")
            return 0
        if not isinstance(raw, list):
            self._set_aside("is not a list")
            return 0
        skipped = 0
        for item in raw:
            self._raw.append(item)
            try:
                self._entries.append(UploadLogEntry.model_validate(item))
            except ValidationError:
                skipped += 1
        if skipped:
            log.warning("upload log: %d unreadable entries kept on disk but not indexed", skipped)
        return len(self._entries)

    def append(self, *entries: UploadLogEntry, persist: bool = True) -> None:
        self._entries.extend(entries)
        self._raw.extend(e.to_wire() for e in entries)
        if persist:
            self.flush()

    def flush(self) -> None:
        write_json_atomic(self.path, self._raw)

    def __iter__(self) -> Iterator[UploadLogEntry]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)


class HashIndex:
    """content_hash -> saved_name ; le premier écrivain gagne."""

    def __init__(self) -> None:
        self._index: Dict[str, str] = {}

    @classmethod
    def from_log(cls, entries: Iterable[UploadLogEntry]) -> "HashIndex":
        idx = cls()
        for e in entries:
            idx.add(e.content_hash, e.saved_name)
        return idx

    def get(self, content_hash: str) -> Optional[str]:
        return self._index.get(content_hash)

    def add(self, content_hash: str, saved_name: str) -> str:
        """Enregistre si absent ; retourne le nom qui fait foi."""
        return self._index.setdefault(content_hash, saved_name)

    def __contains__(self, content_hash: object) -> bool:
        return content_hash in self._index

    def __len__(self) -> int:
        return len(self._index)
