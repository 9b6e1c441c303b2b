# routes/uploads.py
from __future__ import annotations
import json
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import ValidationError

from adapters.storage.base import InvalidRequest
from app.core.logging import get_logger
from app.core.resources import get_ingest
from ingest.models import FinalizeRequest
from ingest.service import IngestService

router = APIRouter(tags=["uploads"])
logger = get_logger(__name__)


# POST /upload-chunk (multipart) : authKey, uploadId, index, totalChunks, filename, isVideo + chunk
@router.post("/upload-chunk")
async def upload_chunk(request: Request, ingest: IngestService = Depends(get_ingest)):
    form = await request.form()
    try:
        # multi_items() garde l'ordre d'arrivée des parts
        ack = await ingest.submit_chunk(form.multi_items())
    finally:
        await form.close()
    return ack.model_dump(by_alias=True, exclude_none=True)


# GET /upload-status?hash=<uploadId> : le client historique envoie l'uploadId sous le nom "hash"
@router.get("/upload-status")
async def upload_status(
    hash: Optional[str] = Query(None),
    uploadId: Optional[str] = Query(None),
    ingest: IngestService = Depends(get_ingest),
):
    upload_id = uploadId or hash
    if not upload_id:
        raise InvalidRequest("Missing id", field="hash")
    return ingest.status(upload_id).model_dump()


async def _read_manifest_payload(request: Request) -> dict:
    ctype = (request.headers.get("content-type") or "").lower()
    if ctype.startswith("application/json"):
        try:
            payload = await request.json()
        except ValueError:
            raise InvalidRequest("Invalid manifest JSON")
        # accepte {"manifest": {...}} comme le corps nu
        if isinstance(payload, dict) and isinstance(payload.get("manifest"), dict):
            payload = payload["manifest"]
    else:
        form = await request.form()
        raw = form.get("manifest")
        await form.close()
        if not isinstance(raw, str):
            raise InvalidRequest("Missing manifest fields")
        try:
            payload = json.loads(raw)
        except ValueError:
            raise InvalidRequest("Invalid manifest JSON")
    if not isinstance(payload, dict):
        raise InvalidRequest("Invalid manifest JSON")
    return payload


# POST /upload-manifest : assemblage -> hash -> dédup globale -> réservation -> finalisation -> journal
@router.post("/upload-manifest")
async def upload_manifest(request: Request, ingest: IngestService = Depends(get_ingest)):
    payload = await _read_manifest_payload(request)
    try:
        req = FinalizeRequest.model_validate(payload)
    except ValidationError as e:
        fields = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
        raise InvalidRequest("Missing manifest fields", fields=fields)
    result = await ingest.finalize(req)
    return result.to_response()


# POST /upload (multipart) : authKey + un ou plusieurs fichiers entiers
@router.post("/upload")
async def upload_direct(request: Request, ingest: IngestService = Depends(get_ingest)):
    form = await request.form()
    try:
        result = await ingest.direct_upload(form.multi_items())
    finally:
        await form.close()
    logger.info("direct upload: %d stored, %d deduped", len(result.files), len(result.deduped))
    return result.model_dump()
