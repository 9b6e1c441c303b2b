# adapters/storage/local.py
# Utilitaires disque local : noms sûrs, écriture JSON atomique, suppression récursive tolérante,
# et écriture d'un flux avec hachage au passage.
from __future__ import annotations

import os
import re
import json
import shutil
import hashlib
from uuid import uuid4
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Tuple

from app.core.logging import get_logger

log = get_logger(__name__)

# ----------------------- utilitaires -----------------------
def sanitize_filename(name: str) -> str:
    name = Path(name or "file").name
    # remplace séparateurs et espaces multiples
    name = re.sub(r'[\\/:*?"<>|\s]+', "_", name).strip("._")
    return name or "file"


def normalize_ext(name: str) -> str:
    # garantit un suffixe en lowercase avec le point
    ext = Path(name or "").suffix.lower()
    # une extension exotique ne doit jamais réintroduire de séparateur
    if not re.fullmatch(r"\.[0-9a-z_\-]{1,16}", ext):
        return ""
    return ext


def ensure_dirs(*dirs: Path) -> None:
    for d in dirs:
        Path(d).mkdir(parents=True, exist_ok=True)


def write_json_atomic(path: Path, obj: Any) -> None:
    """
    Écrit `obj` dans un fichier temporaire privé du même dossier puis remplace
    la cible d'un seul coup : un lecteur voit l'ancien contenu ou le nouveau, jamais un mélange.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.{uuid4().hex}.tmp")
    try:
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(obj, f, ensure_ascii=False, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def read_json(path: Path) -> Optional[Any]:
    """Lit un JSON ; fichier absent ou illisible -> None (enregistrement considéré absent)."""
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        log.warning("unreadable json %s: %s", path, e)
        return None


def rmrf(path: Path) -> bool:
    """Supprime fichier ou dossier ; True si quelque chose a été retiré."""
    path = Path(path)
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
        return True
    except FileNotFoundError:
        return False


def age_seconds(path: Path, now: float) -> Optional[float]:
    """Âge (mtime) d'une entrée, None si elle a disparu entre-temps."""
    try:
        return now - Path(path).stat().st_mtime
    except FileNotFoundError:
        return None


def private_name(prefix: str, ext: str = "") -> str:
    return f".{prefix}.{uuid4().hex}{ext}"


async def stream_to_file(
    read: Callable[[int], Awaitable[bytes]],
    target: Path,
    *,
    block_size: int = 1024 * 1024,
) -> Tuple[int, str]:
    """
    Copie un flux asynchrone (ex. UploadFile.read) vers `target` en calculant le sha256
    au passage. Retourne (taille, sha256). En cas d'échec le fichier partiel est retiré.
    """
    sha256 = hashlib.sha256()
    size = 0
    try:
        with Path(target).open("wb") as out:
            while True:
                chunk = await read(block_size)
                if not chunk:
                    break
                out.write(chunk)
                size += len(chunk)
                sha256.update(chunk)
    except BaseException:
        Path(target).unlink(missing_ok=True)
        raise
    return size, sha256.hexdigest()
