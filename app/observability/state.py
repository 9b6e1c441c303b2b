# app/observability/state.py
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from time import monotonic
from datetime import datetime, timezone
import os, uuid


class Phase(str, Enum):
    STARTING="STARTING"; RUNNING="RUNNING"; STOPPING="STOPPING"
    STOPPED="STOPPED"


@dataclass
class ServiceStatus:
    """État du processus exposé par /healthz (une instance par application)."""
    boot_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    phase: Phase = Phase.STARTING
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    pid: int = field(default_factory=os.getpid)
    t0: float = field(default_factory=monotonic, repr=False)

    @property
    def uptime_s(self) -> float:
        return monotonic() - self.t0

    def snapshot(self) -> dict:
        return {
            "boot_id": self.boot_id,
            "phase": self.phase.value,
            "started_at": self.started_at,
            "pid": self.pid,
            "uptime_s": round(self.uptime_s, 3),
        }
