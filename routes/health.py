# routes/health.py
from fastapi import APIRouter, Depends, Request
from app.core.logging import get_logger
from app.core.resources import Resources, get_resources

logger = get_logger(__name__)

router = APIRouter(tags=["health"])

@router.get("/healthz")
async def health_check(request: Request, res: Resources = Depends(get_resources)):
    status = request.app.state.status.snapshot()
    report = res.janitor.last_report
    return {
        "ok": True,
        **status,
        "owners": len(res.owners),
        "last_sweep": None if report is None else {"removed": report.removed, "errors": report.errors},
    }


@router.post("/auth-check") # POST : /auth-check, JSON ou formulaire avec "authKey"
async def auth_check(request: Request, res: Resources = Depends(get_resources)):
    ctype = (request.headers.get("content-type") or "").lower()
    key = ""
    try:
        if ctype.startswith("application/json"):
            body = await request.json()
            if isinstance(body, dict):
                key = str(body.get("authKey") or "").strip()
        else:
            form = await request.form()
            key = str(form.get("authKey") or "").strip()
            await form.close()
    except ValueError:
        return {"valid": False}
    full_name = res.ingest.check_token(key)
    if full_name:
        return {"valid": True, "fullName": full_name}
    return {"valid": False}
