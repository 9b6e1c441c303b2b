# app/core/logging.py
# Logs texte ; chaque ligne porte la requête HTTP et l'upload concernés (req=… up=…)

from __future__ import annotations
import logging
import logging.config
import contextvars
from typing import Optional
import uuid


request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="-")
upload_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("upload_id", default="-")

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | req=%(request_id)s up=%(upload_id)s | %(message)s"


class IngestContextFilter(logging.Filter):
    """Pose request_id / upload_id sur chaque record (valeur '-' hors requête : boot, janitor)."""

    def filter(self, record: logging.LogRecord) -> bool: # type: ignore[override]
        record.request_id = getattr(record, "request_id", None) or request_id_var.get()
        record.upload_id = getattr(record, "upload_id", None) or upload_id_var.get()
        return True


def setup_logging(level: str = "INFO", *, reservation_logging: bool = False) -> None:
    """
    Un seul handler console. L'accès HTTP est journalisé par RequestContextMiddleware,
    donc uvicorn.access est réduit aux avertissements.
    `reservation_logging` (RES_LOG=1) ouvre les traces pas-à-pas de l'allocateur.
    """
    level = level.upper()
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {"ingest_ctx": {"()": IngestContextFilter}},
            "formatters": {"std": {"format": LOG_FORMAT}},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "std",
                    "filters": ["ingest_ctx"],
                },
            },
            "root": {"level": level, "handlers": ["console"]},
            "loggers": {
                "uvicorn": {"level": level},
                "uvicorn.error": {"level": level},
                "uvicorn.access": {"level": "WARNING"},
                "multipart": {"level": "WARNING"},
                "ingest.allocator": {"level": "DEBUG" if reservation_logging else level},
            },
        }
    )


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name)


def new_request_id() -> str:
    return uuid.uuid4().hex


def bind_upload(upload_id: str) -> contextvars.Token:
    """Rattache les logs suivants de la requête courante à cet upload."""
    return upload_id_var.set(upload_id)
