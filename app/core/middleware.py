# app/core/middleware.py
from __future__ import annotations
import logging
import time
from typing import Callable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from .logging import get_logger, new_request_id, request_id_var, upload_id_var


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Une ligne d'accès par requête : méthode, chemin, statut, durée.
    Les refus (4xx) sortent en WARNING, les pannes (5xx) en ERROR ; le contexte
    upload est remis à zéro pour ne pas déborder d'une requête à l'autre.
    """

    def __init__(self, app, header_name: str = "X-Request-Id") -> None: # type: ignore[no-untyped-def]
        super().__init__(app)
        self.header_name = header_name
        self.log = get_logger("ingest.access")

    @staticmethod
    def _level(status: int) -> int:
        if status >= 500:
            return logging.ERROR
        if status >= 400:
            return logging.WARNING
        return logging.INFO

    async def dispatch(self, request: Request, call_next: Callable): # type: ignore[override]
        rid = request.headers.get(self.header_name) or new_request_id()
        rid_token = request_id_var.set(rid)
        up_token = upload_id_var.set("-")
        start = time.perf_counter()
        status = 500
        try:
            response: Response = await call_next(request)
            status = response.status_code
            response.headers[self.header_name] = rid
            return response
        finally:
            elapsed_ms = (time.perf_counter() - start) * 1000
            self.log.log(self._level(status), "%s %s -> %s (%.1f ms)",
                         request.method, request.url.path, status, elapsed_ms)
            upload_id_var.reset(up_token)
            request_id_var.reset(rid_token)
