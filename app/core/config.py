# app/core/config.py
# Core → config (YAML + env + cache)
from __future__ import annotations
import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Tuple

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Pydantic models (typage fort + auto-doc)
# ---------------------------------------------------------------------------

class AppCfg(BaseModel):
    """Configuration de l'application"""
    name: str = "media-ingest"
    env: str = "dev"
    host: str = "127.0.0.1"
    port: int = 3000
    log_level: str = "INFO"

class StorageCfg(BaseModel):
    """Emplacements disque : fichiers finaux, temporaires, chunks, manifests, journal"""
    upload_dir: Path = Path("./data/uploads")
    tmp_dir: Path = Path("./data/uploads/tmp")            # fusions + uploads directs en cours
    chunk_dir: Path = Path("./data/uploads/tmp_chunks")   # chunks reçus
    manifest_dir: Path = Path("./data/manifests")
    log_file: Path = Path("./data/upload_log.json")

    def directories(self) -> Tuple[Path, ...]:
        """Dossiers à créer au démarrage (le journal vit dans le dossier parent de log_file)."""
        return (self.upload_dir, self.tmp_dir, self.chunk_dir, self.manifest_dir, self.log_file.parent)

class AuthCfg(BaseModel):
    """Source externe token -> propriétaire (CSV AuthKey,FullName)"""
    users_file: Path = Path("./data/users.csv")
    poll_seconds: float = 2.0

class IngestCfg(BaseModel):
    """Paramètres du pipeline d'ingestion"""
    lock_ttl_seconds: float = Field(10 * 60, gt=0)       # marqueur de réservation abandonné
    tmp_ttl_seconds: float = Field(48 * 60 * 60, gt=0)   # chunks / manifests / fusions orphelines
    max_candidates: int = Field(1_000_000, gt=0)
    serial_width: int = Field(4, ge=1)
    reservation_logging: bool = False
    auto_finalize: bool = False
    read_block_size: int = Field(1024 * 1024, gt=0)
    video_extensions: List[str] = Field(default_factory=lambda: [
        ".mp4", ".mov", ".avi", ".mkv", ".webm", ".flv", ".ogv"
    ])

    @field_validator("video_extensions")
    @classmethod
    def _dotted_lower(cls, v: List[str]) -> List[str]:
        # "MP4" ou ".mp4" -> ".mp4"
        return [e if e.startswith(".") else "." + e for e in (x.strip().lower() for x in v) if e.strip(".")]

class JanitorCfg(BaseModel):
    """Balayage périodique des états temporaires"""
    enabled: bool = True
    interval_seconds: float = 60 * 60
    run_on_boot: bool = True

class Settings(BaseModel):
    """Configuration générale de l'application"""
    app: AppCfg = AppCfg()
    storage: StorageCfg = StorageCfg()
    auth: AuthCfg = AuthCfg()
    ingest: IngestCfg = IngestCfg()
    janitor: JanitorCfg = JanitorCfg()


# ---------------------------------------------------------------------------
# YAML loader + interpolation ${VAR:default}
# ---------------------------------------------------------------------------

# Pattern pour l'expansion des variables d'environnement
_env_pattern = re.compile(r"\$\{([A-Z0-9_]+)(?::([^}]*))?\}")

def _interpolate_env(value: Any) -> Any:
    """Interpole les variables d'environnement dans les chaînes de caractères."""
    if isinstance(value, str):
        def repl(match: re.Match[str]) -> str:
            var, default = match.group(1), match.group(2) or ""
            return os.getenv(var, default)
        return _env_pattern.sub(repl, value)
    if isinstance(value, dict):
        return {k: _interpolate_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate_env(v) for v in value]
    return value

def _load_yaml(path: Path) -> Dict[str, Any]:
    """Charge un fichier YAML et retourne un dictionnaire."""
    if not os.path.exists(path):
        return {}
    with path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    return raw

def load_settings(cfg_path: Path) -> Settings:
    """Lit un fichier de configuration précis (utilisé aussi par les tests)."""
    data = _interpolate_env(_load_yaml(cfg_path))
    try:
        return Settings(**data)
    except ValidationError as exc:
        # Affiche l'erreur proprement dès le boot
        raise RuntimeError(f"Invalid configuration in {cfg_path}:\n{exc}")

# ---------------------------------------------------------------------------
# Public factory (cache)
# ---------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Charge .env puis settings.yaml, effectue l'interpolation et valide (renvoie les paramètres de configuration)."""
    load_dotenv(override=True)
    cfg_path = Path(os.getenv("MEDIA_INGEST_CONFIG", "config/settings.yaml"))
    return load_settings(cfg_path)

# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
__all__ = [
"Settings",
"get_settings",
"load_settings",
]
