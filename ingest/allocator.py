# ingest/allocator.py
# Allocation de noms <owner>_<IMG|VID>-<NNNN><ext> par réservation via dossier-verrou.
#   - le numéro est unique quelle que soit l'extension : Name_IMG-0026.* n'existe qu'une fois
#   - os.mkdir est atomique : sûr entre processus indépendants partageant le même volume
from __future__ import annotations
import os
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional, Set

from adapters.storage.base import AllocationExhausted, Contention, StorageIOError
from adapters.storage.local import age_seconds, ensure_dirs, rmrf, sanitize_filename
from app.core.logging import get_logger

log = get_logger(__name__)

LOCK_SUFFIX = "lock"
LEGACY_SUFFIX = "serial"   # ancien placeholder fichier, ignoré et balayé par le janitor
CONTROL_SUFFIXES = frozenset({LOCK_SUFFIX, LEGACY_SUFFIX})


def media_prefix(is_video: bool) -> str:
    return "VID" if is_video else "IMG"


@dataclass(frozen=True)
class Reservation:
    final_path: Path
    lock_dir: Path
    serial: int

    @property
    def saved_name(self) -> str:
        return self.final_path.name


class SerialAllocator:
    def __init__(
        self,
        base_dir: Path,
        *,
        lock_ttl: float = 10 * 60,
        max_candidates: int = 1_000_000,
        width: int = 4,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.base_dir = Path(base_dir)
        self.lock_ttl = lock_ttl
        self.max_candidates = max_candidates
        self.width = width
        self.clock = clock
        ensure_dirs(self.base_dir)

    def serial_base(self, owner: str, prefix: str, n: int) -> str:
        return f"{sanitize_filename(owner)}_{prefix}-{n:0{self.width}d}"

    def _listdir(self) -> list[str]:
        try:
            return os.listdir(self.base_dir)
        except FileNotFoundError:
            return []

    def is_used(self, base: str, names: Optional[Iterable[str]] = None) -> bool:
        """Vrai si `base` ou `base.<ext>` existe (ext hors fichiers de contrôle .lock/.serial)."""
        for name in (self._listdir() if names is None else names):
            if name == base:
                return True
            if not name.startswith(base + "."):
                continue
            if name[len(base) + 1:].lower() in CONTROL_SUFFIXES:
                continue
            return True
        return False

    def used_serials(self, owner: str, prefix: str, names: Iterable[str]) -> Set[int]:
        """Numéros déjà pris pour (owner, prefix), lus en une passe sur un listing."""
        stem = f"{sanitize_filename(owner)}_{prefix}-"
        used: Set[int] = set()
        for name in names:
            if not name.startswith(stem):
                continue
            rest = name[len(stem):]
            digits = len(rest) - len(rest.lstrip("0123456789"))
            if not digits:
                continue
            serial, tail = rest[:digits], rest[digits:]
            if tail and (not tail.startswith(".") or tail[1:].lower() in CONTROL_SUFFIXES):
                continue
            n = int(serial)
            # même écriture que serial_base, sinon ce n'est pas ce numéro
            if serial == f"{n:0{self.width}d}":
                used.add(n)
        return used

    # ----------------- verrou -----------------
    def _acquire(self, lock_dir: Path) -> None:
        try:
            os.mkdir(lock_dir)
        except FileExistsError:
            raise Contention(f"{lock_dir.name} held")

    def _reclaim_if_stale(self, lock_dir: Path) -> bool:
        age = age_seconds(lock_dir, self.clock())
        if age is None or age <= self.lock_ttl:
            return False
        removed = rmrf(lock_dir)
        if removed:
            log.info("removed stale lock %s (%.0fs old)", lock_dir.name, age)
        return removed

    def _try_lock(self, lock_dir: Path) -> bool:
        try:
            self._acquire(lock_dir)
            return True
        except Contention:
            pass
        # marqueur abandonné -> on le récupère et on retente ce même numéro une fois
        if not self._reclaim_if_stale(lock_dir):
            log.debug("[reserve] locked: %s", lock_dir.name)
            return False
        try:
            self._acquire(lock_dir)
            return True
        except Contention:
            log.debug("[reserve] lost reclaimed lock: %s", lock_dir.name)
            return False

    def release(self, reservation: Reservation) -> None:
        rmrf(reservation.lock_dir)

    # ----------------- allocation -----------------
    def reserve(self, owner: str, is_video: bool, ext: str = "") -> Reservation:
        prefix = media_prefix(is_video)
        # instantané pour sauter vite les numéros déjà pris ; la re-vérification après verrou relit le disque
        used = self.used_serials(owner, prefix, self._listdir())
        for n in range(self.max_candidates):
            if n in used:
                continue
            base = self.serial_base(owner, prefix, n)
            lock_dir = self.base_dir / f"{base}.{LOCK_SUFFIX}"
            if not self._try_lock(lock_dir):
                continue
            if self.is_used(base):
                rmrf(lock_dir)
                log.debug("[reserve] race used, unlock: %s", base)
                continue
            final_path = self.base_dir / f"{base}{ext}"
            log.debug("[reserve] OK: %s -> %s", base, final_path.name)
            return Reservation(final_path=final_path, lock_dir=lock_dir, serial=n)
        raise AllocationExhausted(f"Could not allocate unique serial for {prefix}")

    def finalize(self, reservation: Reservation, src: Path) -> Path:
        """
        Déplace le fichier prêt vers le chemin réservé (copie + suppression si le rename
        traverse deux volumes). Le verrou est toujours libéré, succès ou échec.
        """
        final = reservation.final_path
        try:
            try:
                os.replace(src, final)
            except OSError as e:
                log.debug("rename failed (%s), copying instead", e)
                try:
                    shutil.copyfile(src, final)
                except OSError as copy_err:
                    final.unlink(missing_ok=True)
                    raise StorageIOError("Could not store file") from copy_err
                Path(src).unlink(missing_ok=True)
        finally:
            self.release(reservation)
        return final
