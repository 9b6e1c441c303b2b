# app/core/resources.py
# Ressources du processus (branchement centralisé) : construites une fois au démarrage,
# posées sur app.state et consommées par les routes via Depends.

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from adapters.auth.owners import OwnerDirectory
from adapters.storage.local import ensure_dirs
from app.core.config import Settings
from ingest.janitor import Janitor
from ingest.service import IngestService


@dataclass
class Resources:
    settings: Settings
    owners: OwnerDirectory
    ingest: IngestService
    janitor: Janitor


def build_resources(settings: Settings, owners: Optional[OwnerDirectory] = None) -> Resources:
    """Instancie l'annuaire, le service d'ingestion (journal relu, index reconstruit) et le janitor."""
    st, ing = settings.storage, settings.ingest
    ensure_dirs(*st.directories())
    if owners is None:
        owners = OwnerDirectory(settings.auth.users_file)
        owners.load()
    service = IngestService.from_settings(settings, owners)
    janitor = Janitor(
        upload_dir=st.upload_dir,
        chunk_dir=st.chunk_dir,
        manifest_dir=st.manifest_dir,
        tmp_dir=st.tmp_dir,
        lock_ttl=ing.lock_ttl_seconds,
        tmp_ttl=ing.tmp_ttl_seconds,
    )
    return Resources(settings=settings, owners=owners, ingest=service, janitor=janitor)


def get_resources(request: Request) -> Resources:
    return request.app.state.resources


def get_ingest(request: Request) -> IngestService:
    return request.app.state.resources.ingest
