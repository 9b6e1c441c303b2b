# ingest/janitor.py
# Balayage périodique : verrous abandonnés, chunks/manifests expirés, fusions orphelines.
from __future__ import annotations
import asyncio
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

from starlette.concurrency import run_in_threadpool

from adapters.storage.local import age_seconds, rmrf
from app.core.logging import get_logger
from ingest.allocator import LEGACY_SUFFIX, LOCK_SUFFIX
from ingest.receiver import CHUNK_SEPARATOR

log = get_logger(__name__)


@dataclass
class SweepReport:
    started_at: float
    removed: Dict[str, int] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.removed.values())


class Janitor:
    def __init__(
        self,
        *,
        upload_dir: Path,
        chunk_dir: Path,
        manifest_dir: Path,
        tmp_dir: Path,
        lock_ttl: float = 10 * 60,
        tmp_ttl: float = 48 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.upload_dir = Path(upload_dir)
        self.chunk_dir = Path(chunk_dir)
        self.manifest_dir = Path(manifest_dir)
        self.tmp_dir = Path(tmp_dir)
        self.lock_ttl = lock_ttl
        self.tmp_ttl = tmp_ttl
        self.clock = clock
        self.last_report: Optional[SweepReport] = None

    # ----------------- catégories -----------------
    def _expired(self, directory: Path, ttl: float, now: float, keep: Callable[[os.DirEntry], bool]) -> List[Path]:
        out: List[Path] = []
        if not directory.exists():
            return out
        with os.scandir(directory) as it:
            for entry in it:
                if keep(entry):
                    continue
                age = age_seconds(Path(entry.path), now)
                if age is not None and age > ttl:
                    out.append(Path(entry.path))
        return out

    def sweep_locks(self, now: float) -> int:
        def keep(entry: os.DirEntry) -> bool:
            if entry.is_dir(follow_symlinks=False) and entry.name.endswith("." + LOCK_SUFFIX):
                return False
            if entry.is_file(follow_symlinks=False) and entry.name.endswith("." + LEGACY_SUFFIX):
                return False
            return True
        return sum(rmrf(p) for p in self._expired(self.upload_dir, self.lock_ttl, now, keep))

    def _live_uploads(self, now: float) -> Set[str]:
        """uploadIds dont le manifest est encore frais : leurs chunks restent, même anciens."""
        live: Set[str] = set()
        if not self.manifest_dir.exists():
            return live
        for p in self.manifest_dir.glob("*.json"):
            age = age_seconds(p, now)
            if age is not None and age <= self.tmp_ttl:
                live.add(p.stem)
        return live

    def sweep_chunks(self, now: float) -> int:
        # chunks définitifs et fichiers .inflight.* laissés par une requête interrompue
        live = self._live_uploads(now)

        def keep(entry: os.DirEntry) -> bool:
            upload_id, sep, _ = entry.name.rpartition(CHUNK_SEPARATOR)
            return bool(sep) and upload_id in live
        return sum(rmrf(p) for p in self._expired(self.chunk_dir, self.tmp_ttl, now, keep))

    def sweep_manifests(self, now: float) -> int:
        def keep(entry: os.DirEntry) -> bool:
            return not (entry.name.endswith(".json") or entry.name.endswith(".tmp"))
        return sum(rmrf(p) for p in self._expired(self.manifest_dir, self.tmp_ttl, now, keep))

    def sweep_tmp(self, now: float) -> int:
        # sorties de fusion partielles + fichiers d'upload direct jamais finalisés
        return sum(rmrf(p) for p in self._expired(self.tmp_dir, self.tmp_ttl, now, lambda e: False))

    # ----------------- passe complète -----------------
    def sweep_once(self) -> SweepReport:
        """Chaque catégorie est indépendante : l'échec de l'une n'empêche pas les autres."""
        now = self.clock()
        report = SweepReport(started_at=now)
        categories = {
            "locks": self.sweep_locks,
            "chunks": self.sweep_chunks,
            "manifests": self.sweep_manifests,
            "tmp": self.sweep_tmp,
        }
        for name, sweep in categories.items():
            try:
                report.removed[name] = sweep(now)
            except Exception as e:
                report.removed[name] = 0
                report.errors[name] = str(e)
                log.exception("cleanup %s failed", name)
        if report.total:
            log.info("cleanup removed %s", report.removed)
        self.last_report = report
        return report

    async def run(self, interval: float, *, run_on_boot: bool = True) -> None:
        """Boucle de fond lancée dans le lifespan ; ne lève jamais (hors annulation)."""
        if run_on_boot:
            await self._safe_sweep()
        while True:
            await asyncio.sleep(interval)
            await self._safe_sweep()

    async def _safe_sweep(self) -> None:
        try:
            await run_in_threadpool(self.sweep_once)
        except Exception:
            log.exception("cleanup failed")
