# adapters/auth/owners.py
# Annuaire token -> propriétaire, chargé depuis un CSV (AuthKey,FullName) et rechargé à chaud.
from __future__ import annotations
import asyncio
from pathlib import Path
from typing import Dict, Optional, Protocol

import pandas as pd

from app.core.logging import get_logger

log = get_logger(__name__)


class OwnerLookup(Protocol):
    def lookup(self, token: str) -> Optional[str]: ...


def load_owners_csv(path: Path) -> Dict[str, str]:
    df = pd.read_csv(path, dtype=str, keep_default_na=False)
    if "AuthKey" not in df.columns:
        raise ValueError(f"{path}: missing AuthKey column")
    names = df["FullName"] if "FullName" in df.columns else pd.Series([""] * len(df), dtype=str)
    owners: Dict[str, str] = {}
    for key, name in zip(df["AuthKey"], names):
        key = str(key).strip()
        if key:
            owners[key] = str(name).strip()
    return owners


class OwnerDirectory:
    """
    Source externe de vérité pour les tokens.
    - fichier absent au démarrage -> annuaire vide
    - rechargement en échec -> on garde la carte précédente
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._owners: Dict[str, str] = {}
        self._mtime: Optional[float] = None

    def lookup(self, token: str) -> Optional[str]:
        return self._owners.get(token) or None

    def __len__(self) -> int:
        return len(self._owners)

    def load(self) -> int:
        try:
            self._mtime = self.path.stat().st_mtime
        except FileNotFoundError:
            log.warning("owners file %s not found, no token will be accepted", self.path)
            self._owners = {}
            self._mtime = None
            return 0
        self._owners = load_owners_csv(self.path)
        return len(self._owners)

    def reload_if_changed(self) -> bool:
        try:
            mtime = self.path.stat().st_mtime
        except FileNotFoundError:
            return False
        if mtime == self._mtime:
            return False
        try:
            count = self.load()
        except Exception:
            # garde la carte précédente ; on retentera au prochain changement
            self._mtime = mtime
            log.exception("Auth reload failed")
            return False
        log.info("Auth reloaded (%d owners)", count)
        return True

    async def watch(self, interval: float = 2.0) -> None:
        """Boucle de surveillance (équivalent watchFile) lancée dans le lifespan."""
        while True:
            await asyncio.sleep(interval)
            try:
                self.reload_if_changed()
            except OSError:
                log.exception("Auth watch failed")
